from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProblemIssue(BaseModel):
    severity: str = "error"
    code: str
    diagnostics: Optional[str] = None
    expression: Optional[List[str]] = None


class ProblemDetails(BaseModel):
    """RFC 7807 problem response used for every engine error."""
    type: str = Field("about:blank", description="URI identifying the problem type")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    issues: List[ProblemIssue] = Field(default_factory=list)


class ContractSummary(BaseModel):
    name: str
    group: str
    method: str
    priority: Optional[int] = Field(None, description="Lower wins; unset sorts last")
    description: str = ""
    source: Optional[str] = None
    declarationIndex: int
    async_: bool = Field(False, alias="async")

    model_config = {"populate_by_name": True}


class ReloadResult(BaseModel):
    sources: List[str]
    count: int
    groups: List[str]


class HealthStatus(BaseModel):
    status: str = "ok"
    contracts: int = 0
    groups: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
