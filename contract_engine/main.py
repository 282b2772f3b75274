from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api.deps import EngineState
from .api.routes import admin_router, stub_router
from .config import Settings, get_settings
from .core.contract_loader import ContractLoader
from .core.exceptions import ContractEngineError, ParseError, UnauthorizedError
from .core.metrics import metrics
from .core.registry import ContractRegistry
from .core.schemas import ProblemDetails, ProblemIssue
from .logging_setup import setup_logging


def _problem(exc: ContractEngineError, status_code: int, title: str) -> JSONResponse:
    detail = exc.to_error_detail()
    problem = ProblemDetails(
        type=f"https://contract-engine.dev/problems/{title.lower().replace(' ', '-')}",
        title=title,
        status=status_code,
        detail=str(exc),
        issues=[ProblemIssue(**detail.to_issue())],
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        headers={"Content-Type": "application/problem+json"},
    )


def create_app(
    registry: Optional[ContractRegistry] = None,
    settings: Optional[Settings] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the stub server. Contracts load from CONTRACTS_PATH unless ``registry`` is given."""
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger(__name__)

    loader = None
    if registry is None:
        loader = ContractLoader(settings)
        registry = loader.load()
    logger.info("Stub server ready", extra={"contracts": len(registry), "groups": registry.groups})

    app = FastAPI(
        title="Contract Engine Stub Server",
        description="""
        ## Consumer-driven contract stubs

        Every request outside `/__admin` is matched against the loaded contracts
        in priority order and answered with the first matching contract's response.
        Requests no contract accepts get a 404 problem response carrying the
        `X-Contract-Match: none` header.

        ### Administration:
        Reloading contracts requires the `X-Admin-Token` header.
        """,
        version=__version__,
    )
    app.state.engine = EngineState(registry, settings, loader)

    @app.exception_handler(ParseError)
    async def parse_error_handler(request: Request, exc: ParseError):
        logger.error("Contract load failed", extra={"error": exc.to_error_detail().to_dict()})
        metrics.record_error(exc.code.value)
        return _problem(exc, 500, "Contract Parse Error")

    @app.exception_handler(UnauthorizedError)
    async def unauthorized_handler(request: Request, exc: UnauthorizedError):
        return _problem(exc, 403 if exc.disabled else 401, "Unauthorized")

    @app.exception_handler(ContractEngineError)
    async def engine_error_handler(request: Request, exc: ContractEngineError):
        metrics.record_error(exc.code.value)
        return _problem(exc, 500, "Contract Engine Error")

    # admin routes first, the stub catch-all takes everything else
    app.include_router(admin_router)
    app.include_router(stub_router)
    return app
