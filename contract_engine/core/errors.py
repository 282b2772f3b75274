"""
Structured error taxonomy for the contract engine.

Every engine exception maps to a stable error code so that stub-server
responses, CLI output and logs can be triaged the same way.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorCategory(str, Enum):
    """High-level error categories."""
    PARSE = "PARSE"
    MATCH = "MATCH"
    VERIFY = "VERIFY"
    CONFIG = "CONFIG"
    AUTH = "AUTH"
    SYSTEM = "SYSTEM"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ContractErrorCode(str, Enum):
    """
    Structured error codes.

    Format: {CATEGORY}_{SPECIFIC_CODE}
    """

    # Contract parsing (PARSE_xxx)
    PARSE_INVALID_STRUCTURE = "PARSE_001"
    PARSE_MISSING_BLOCK = "PARSE_002"
    PARSE_INVALID_METHOD = "PARSE_003"
    PARSE_INVALID_REGEX = "PARSE_004"
    PARSE_INVALID_JSONPATH = "PARSE_005"
    PARSE_UNRESOLVED_SIDE = "PARSE_006"
    PARSE_UNKNOWN_MATCHER = "PARSE_007"
    PARSE_DUPLICATE_NAME = "PARSE_008"

    # Request matching (MATCH_xxx)
    MATCH_NO_CONTRACT = "MATCH_001"
    MATCH_PATH_NOT_FOUND = "MATCH_002"
    MATCH_AMBIGUOUS = "MATCH_003"
    MATCH_UNRESOLVABLE_VALUE = "MATCH_004"
    MATCH_TIMEOUT = "MATCH_005"

    # Producer verification (VERIFY_xxx)
    VERIFY_ASSERTION_FAILED = "VERIFY_001"
    VERIFY_HOOK_NOT_FOUND = "VERIFY_002"

    # Configuration (CONFIG_xxx)
    CONFIG_CONTRACTS_NOT_FOUND = "CONFIG_001"
    CONFIG_UNKNOWN_ARTIFACT = "CONFIG_002"

    # Authentication (AUTH_xxx)
    AUTH_ADMIN_DISABLED = "AUTH_001"
    AUTH_INVALID_TOKEN = "AUTH_002"


class ContractErrorDetail(BaseModel):
    """Actionable error information attached to every engine exception."""
    code: ContractErrorCode
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str
    details: Optional[str] = None
    path: Optional[str] = None
    source: Optional[str] = None
    context: Dict[str, Any] = {}

    @property
    def category(self) -> ErrorCategory:
        return ErrorCategory(self.code.name.split("_")[0])

    def to_issue(self) -> Dict[str, Any]:
        """Convert to an issue entry of a problem response."""
        issue: Dict[str, Any] = {
            "severity": self.severity.value,
            "code": self.code.value,
            "diagnostics": f"[{self.code.value}] {self.message}",
        }
        if self.details:
            issue["diagnostics"] += f" - {self.details}"
        if self.path:
            issue["expression"] = [self.path]
        return issue

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "error_code": self.code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.path:
            result["path"] = self.path
        if self.source:
            result["source"] = self.source
        if self.context:
            result["context"] = self.context
        return result
