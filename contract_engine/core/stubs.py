"""
Stub generation.

Compiles contracts into a request matcher that answers with the first
contract (in priority order) accepting the request, and exports the same
contracts as a WireMock-compatible mapping document.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from .errors import ContractErrorCode, ContractErrorDetail, ErrorSeverity
from .exceptions import PathNotFoundError
from .matchers import as_text, concrete, covered_parts, is_covered, render_body, select
from .metrics import metrics
from .model import (
    TEMPLATE_PLACEHOLDER,
    AnyValue,
    Contract,
    ContractSet,
    FromRequest,
    Literal,
    NoMatch,
    Regex,
    Role,
    StubRequest,
    StubResponse,
    Template,
    ValueSpec,
    format_path,
    iter_leaves,
)
from .registry import ContractRegistry

logger = logging.getLogger(__name__)

NO_MATCH_HEADER = "X-Contract-Match"
MAPPING_NAMESPACE = uuid.UUID("6f1c3e52-8a0d-4c8e-9a53-2b1f4f0e7d10")


def render_response(contract: Contract, request: StubRequest) -> StubResponse:
    """Response of ``contract`` with request-derived values substituted."""
    spec = contract.response
    headers = {name: as_text(concrete(vs, Role.CONSUMER, request.body)) for name, vs in spec.headers.items()}
    body = render_body(spec.body, Role.CONSUMER, request.body)
    return StubResponse(status=spec.status, headers=headers, body=body, contract=contract.name)


def no_match_response(result: NoMatch, request: StubRequest) -> StubResponse:
    detail = ContractErrorDetail(
        code=ContractErrorCode.MATCH_NO_CONTRACT,
        severity=ErrorSeverity.WARNING,
        message=f"{result.reason}: {request.method} {request.path}",
    )
    body = {
        "type": "https://contract-engine.dev/problems/no-contract-matched",
        "title": "No Contract Matched",
        "error": result.reason,
        "status": 404,
        "detail": detail.message,
        "issues": [detail.to_issue()],
        "nearMisses": [{"contract": name, "reason": reason} for name, reason in result.near_misses],
    }
    return StubResponse(
        status=404,
        headers={"Content-Type": "application/problem+json", NO_MATCH_HEADER: "none"},
        body=body,
    )


class CompiledStubs:
    """Runtime request matcher over an immutable registry."""

    def __init__(self, registry: ContractRegistry) -> None:
        self.registry = registry

    def match(self, request: StubRequest, group: Optional[str] = None) -> Union[StubResponse, NoMatch]:
        remaining = self.registry.candidates(request, group)
        for contract in remaining:
            try:
                response = render_response(contract, request)
            except PathNotFoundError as e:
                logger.info(
                    "Response template could not be resolved, trying next contract",
                    extra={"contract": contract.name, "json_path": e.json_path},
                )
                continue
            self.registry.check_overlap(contract, remaining)
            return response
        return NoMatch(near_misses=tuple(self.registry.explain(request, group)))

    def handle(self, request: StubRequest, group: Optional[str] = None) -> StubResponse:
        with metrics.time_match():
            result = self.match(request, group)
        if isinstance(result, NoMatch):
            logger.info("No contract matched", extra={"method": request.method, "path": request.path})
            metrics.record_stub_request("no_match")
            metrics.record_error(ContractErrorCode.MATCH_NO_CONTRACT.value)
            return no_match_response(result, request)
        logger.debug("Contract matched", extra={"contract": result.contract, "path": request.path})
        metrics.record_stub_request("matched", result.contract)
        return result

    def to_mappings(self) -> Dict[str, Any]:
        return {"mappings": [to_mapping(c) for c in self.registry.contracts()]}


class StubGenerator:
    def __init__(self, strict: bool = False) -> None:
        self.strict = strict

    def compile(self, contracts: Union[ContractSet, ContractRegistry, List[Contract]]) -> CompiledStubs:
        if isinstance(contracts, ContractRegistry):
            return CompiledStubs(contracts)
        return CompiledStubs(ContractRegistry.single(contracts, strict=self.strict))


# WireMock mapping export

def _value_pattern(spec: ValueSpec) -> Dict[str, Any]:
    selected = select(spec, Role.CONSUMER)
    if isinstance(selected, Literal):
        return {"equalTo": as_text(selected.value)}
    if isinstance(selected, Regex):
        return {"matches": selected.pattern}
    return {"matches": ".*"}


def _json_path_pattern(path: str, spec: ValueSpec) -> Dict[str, Any]:
    selected = select(spec, Role.CONSUMER)
    if isinstance(selected, AnyValue):
        return {"matchesJsonPath": path}
    return {"matchesJsonPath": {"expression": path, **_value_pattern(selected)}}


def _handlebars(spec: ValueSpec) -> Any:
    selected = select(spec, Role.CONSUMER)
    if isinstance(selected, FromRequest):
        return "{{jsonPath request.body '%s'}}" % selected.json_path
    if isinstance(selected, Template):
        return TEMPLATE_PLACEHOLDER.sub(lambda m: "{{jsonPath request.body '%s'}}" % m.group(1), selected.text)
    return concrete(selected, Role.CONSUMER)


def _mapping_body(tree: Any) -> Any:
    if isinstance(tree, dict):
        return {k: _mapping_body(v) for k, v in tree.items()}
    if isinstance(tree, list):
        return [_mapping_body(v) for v in tree]
    if tree is None:
        return None
    return _handlebars(tree)


def _uses_templates(contract: Contract) -> bool:
    specs = list(contract.response.headers.values()) + [s for _, s in iter_leaves(contract.response.body)]
    return any(isinstance(select(s, Role.CONSUMER), (FromRequest, Template)) for s in specs)


def to_mapping(contract: Contract) -> Dict[str, Any]:
    req = contract.request
    request: Dict[str, Any] = {"method": req.method.value}
    url = select(req.url, Role.CONSUMER)
    if isinstance(url, Regex):
        request["urlPathPattern"] = url.pattern
    else:
        request["urlPath"] = as_text(concrete(url, Role.CONSUMER))
    if req.query:
        request["queryParameters"] = {k: _value_pattern(v) for k, v in req.query.items()}
    if req.headers:
        request["headers"] = {k: _value_pattern(v) for k, v in req.headers.items()}

    patterns: List[Dict[str, Any]] = []
    if isinstance(req.body, (dict, list)):
        covered = covered_parts(req.body, req.matchers)
        for parts, spec in iter_leaves(req.body):
            if not is_covered(parts, covered):
                patterns.append(_json_path_pattern(format_path(parts), spec))
    elif req.body is not None:
        patterns.append(_value_pattern(req.body))
    for m in req.matchers:
        patterns.append(_json_path_pattern(m.path, m.spec))
    if patterns:
        request["bodyPatterns"] = patterns

    resp = contract.response
    response: Dict[str, Any] = {"status": resp.status}
    if resp.headers:
        response["headers"] = {k: _handlebars(v) for k, v in resp.headers.items()}
    if isinstance(resp.body, (dict, list)):
        response["jsonBody"] = _mapping_body(resp.body)
    elif resp.body is not None:
        response["body"] = as_text(_handlebars(resp.body))
    if _uses_templates(contract):
        response["transformers"] = ["response-template"]

    mapping: Dict[str, Any] = {
        "id": str(uuid.uuid5(MAPPING_NAMESPACE, f"{contract.source}:{contract.name}")),
        "name": contract.name,
        "request": request,
        "response": response,
        "metadata": {"contract": contract.name, "declarationIndex": contract.index, "async": contract.is_async},
    }
    if contract.priority is not None:
        mapping["priority"] = contract.priority
    return mapping
