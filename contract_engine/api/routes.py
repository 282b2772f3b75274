from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .. import __version__
from ..core.errors import ContractErrorCode
from ..core.exceptions import AmbiguousMatchError
from ..core.matchers import as_text
from ..core.metrics import metrics
from ..core.model import HttpMethod, StubRequest, StubResponse
from ..core.schemas import ContractSummary, HealthStatus, ProblemDetails, ProblemIssue, ReloadResult
from .deps import EngineState, admin_auth, get_engine

logger = logging.getLogger(__name__)

GROUP_HEADER = "x-contract-group"

admin_router = APIRouter(prefix="/__admin", tags=["administration"])
stub_router = APIRouter(tags=["stubs"])


def problem_response(status_code: int, title: str, detail: str, code: Optional[str] = None) -> JSONResponse:
    problem = ProblemDetails(
        type=f"https://contract-engine.dev/problems/{title.lower().replace(' ', '-')}",
        title=title,
        status=status_code,
        detail=detail,
        issues=[ProblemIssue(code=code, diagnostics=detail)] if code else [],
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        headers={"Content-Type": "application/problem+json"},
    )


@admin_router.get("/health", summary="Health Check", response_model=HealthStatus)
def health(engine: EngineState = Depends(get_engine)) -> HealthStatus:
    registry = engine.registry
    return HealthStatus(
        status="ok",
        contracts=len(registry),
        groups=registry.groups,
        details={"service": engine.settings.SERVICE_NAME, "version": __version__, "strict": registry.strict},
    )


@admin_router.get("/contracts", summary="Loaded contracts in evaluation order")
def list_contracts(engine: EngineState = Depends(get_engine)) -> List[Dict[str, Any]]:
    registry = engine.registry
    summaries = []
    for group in registry.groups:
        for c in registry.contracts(group):
            summaries.append(
                ContractSummary(
                    name=c.name,
                    group=group,
                    method=c.request.method.value,
                    priority=c.priority,
                    description=c.description,
                    source=c.source,
                    declarationIndex=c.index,
                    async_=c.is_async,
                ).model_dump(by_alias=True)
            )
    return summaries


@admin_router.get("/mappings", summary="WireMock mappings for the loaded contracts")
def mappings(engine: EngineState = Depends(get_engine)) -> Dict[str, Any]:
    return engine.stubs.to_mappings()


@admin_router.get("/metrics", summary="Prometheus metrics")
def prometheus_metrics() -> Response:
    return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)


@admin_router.post(
    "/contracts/reload",
    summary="Reload contracts from CONTRACTS_PATH",
    response_model=ReloadResult,
    dependencies=[Depends(admin_auth)],
)
def reload_contracts(engine: EngineState = Depends(get_engine)) -> ReloadResult:
    if not engine.can_reload:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ProblemDetails(
                title="Reload Unavailable",
                status=409,
                detail="Stubs were started from in-memory contracts",
            ).model_dump(exclude_none=True),
        )
    registry = engine.reload()
    return ReloadResult(sources=registry.sources, count=len(registry), groups=registry.groups)


async def to_stub_request(request: Request) -> StubRequest:
    raw = await request.body()
    text = raw.decode("utf-8", errors="replace") if raw else None
    body: Any = None
    if text:
        try:
            body = json.loads(text)
        except ValueError:
            body = None
    return StubRequest(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        headers=dict(request.headers),
        body=body,
        raw_body=text,
    )


def to_response(result: StubResponse, method: str) -> Response:
    if result.body is None or method == "HEAD":
        return Response(status_code=result.status, headers=result.headers)
    if isinstance(result.body, (dict, list)):
        return JSONResponse(content=result.body, status_code=result.status, headers=result.headers)
    return Response(content=as_text(result.body), status_code=result.status, headers=result.headers)


@stub_router.api_route(
    "/{path:path}",
    methods=[m.value for m in HttpMethod],
    include_in_schema=False,
)
async def serve_stub(path: str, request: Request, engine: EngineState = Depends(get_engine)) -> Response:
    stub_request = await to_stub_request(request)
    group = request.headers.get(GROUP_HEADER)
    if group is not None and group not in engine.registry.groups:
        return problem_response(404, "Unknown Contract Group", f"No contracts loaded for group '{group}'")

    stubs = engine.stubs
    try:
        result = await asyncio.wait_for(
            run_in_threadpool(stubs.handle, stub_request, group),
            timeout=engine.settings.STUB_REQUEST_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("Stub matching timed out", extra={"method": stub_request.method, "path": stub_request.path})
        metrics.record_stub_request("timeout")
        return problem_response(504, "Stub Timeout", "Matching exceeded the per-request timeout", ContractErrorCode.MATCH_TIMEOUT.value)
    except AmbiguousMatchError as e:
        metrics.record_stub_request("ambiguous")
        metrics.record_error(e.code.value)
        return problem_response(409, "Ambiguous Contracts", str(e), e.code.value)
    return to_response(result, stub_request.method)
