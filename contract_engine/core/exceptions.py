from __future__ import annotations

from typing import Any, List, Optional, Sequence

from .errors import ContractErrorCode, ContractErrorDetail, ErrorSeverity


class ContractEngineError(Exception):
    code = ContractErrorCode.PARSE_INVALID_STRUCTURE

    def to_error_detail(self) -> ContractErrorDetail:
        return ContractErrorDetail(code=self.code, message=str(self))


class ParseError(ContractEngineError):
    def __init__(
        self,
        detail: str,
        source: Optional[str] = None,
        errors: Sequence[str] | None = None,
        code: ContractErrorCode = ContractErrorCode.PARSE_INVALID_STRUCTURE,
    ):
        prefix = f"{source}: " if source else ""
        super().__init__(f"{prefix}{detail}")
        self.detail = detail
        self.source = source
        self.errors = list(errors or [])
        self.code = code

    def to_error_detail(self) -> ContractErrorDetail:
        return ContractErrorDetail(
            code=self.code,
            message=self.detail,
            details="; ".join(self.errors) or None,
            source=self.source,
        )


class PathNotFoundError(ContractEngineError):
    code = ContractErrorCode.MATCH_PATH_NOT_FOUND

    def __init__(self, json_path: str):
        super().__init__(f"JSONPath {json_path} not found in payload")
        self.json_path = json_path

    def to_error_detail(self) -> ContractErrorDetail:
        return ContractErrorDetail(code=self.code, message=str(self), path=self.json_path)


class UnresolvableValueError(ContractEngineError):
    code = ContractErrorCode.MATCH_UNRESOLVABLE_VALUE


class AmbiguousMatchError(ContractEngineError):
    code = ContractErrorCode.MATCH_AMBIGUOUS

    def __init__(self, names: List[str]):
        super().__init__(f"Unprioritized contracts overlap for the same request: {', '.join(names)}")
        self.names = names


class FieldFailure:
    """One violated expectation of a producer response."""

    def __init__(
        self,
        target: str,
        path: str,
        expected: Any,
        actual: Any,
        message: str = "",
        code: ContractErrorCode = ContractErrorCode.VERIFY_ASSERTION_FAILED,
    ) -> None:
        self.target = target
        self.path = path
        self.expected = expected
        self.actual = actual
        self.message = message
        self.code = code

    def __str__(self) -> str:
        text = f"{self.target} {self.path}: expected {self.expected!r}, actual {self.actual!r}"
        if self.message:
            text += f" ({self.message})"
        return text

    def __repr__(self) -> str:
        return f"FieldFailure({self})"


class ContractAssertionError(ContractEngineError, AssertionError):
    code = ContractErrorCode.VERIFY_ASSERTION_FAILED

    def __init__(self, contract: str, failures: List[FieldFailure]):
        lines = "\n".join(f"  - {f}" for f in failures)
        super().__init__(f"Contract '{contract}' violated by producer response:\n{lines}")
        self.contract = contract
        self.failures = failures

    def to_error_detail(self) -> ContractErrorDetail:
        return ContractErrorDetail(
            code=self.code,
            message=f"Contract '{self.contract}' violated",
            details="; ".join(str(f) for f in self.failures),
            context={"failures": [{"path": f.path, "code": f.code.value} for f in self.failures]},
        )


class UnknownArtifactError(ContractEngineError, KeyError):
    code = ContractErrorCode.CONFIG_UNKNOWN_ARTIFACT

    def __init__(self, artifact_id: str):
        super().__init__(f"No stub server running for artifact '{artifact_id}'")
        self.artifact_id = artifact_id

    def __str__(self) -> str:
        return f"No stub server running for artifact '{self.artifact_id}'"


class UnauthorizedError(ContractEngineError):
    code = ContractErrorCode.AUTH_INVALID_TOKEN

    def __init__(self, detail: str, disabled: bool = False):
        super().__init__(detail)
        self.detail = detail
        self.disabled = disabled
        if disabled:
            self.code = ContractErrorCode.AUTH_ADMIN_DISABLED

    def to_error_detail(self) -> ContractErrorDetail:
        return ContractErrorDetail(code=self.code, severity=ErrorSeverity.WARNING, message=self.detail)
