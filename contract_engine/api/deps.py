from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Header, Request

from ..config import Settings
from ..core.contract_loader import ContractLoader
from ..core.exceptions import UnauthorizedError
from ..core.registry import ContractRegistry
from ..core.stubs import CompiledStubs, StubGenerator

logger = logging.getLogger(__name__)


class EngineState:
    """Serving state; reload builds new stubs and swaps the reference."""

    def __init__(self, registry: ContractRegistry, settings: Settings, loader: Optional[ContractLoader] = None) -> None:
        self.settings = settings
        self.loader = loader
        self.stubs: CompiledStubs = StubGenerator(strict=settings.STRICT_MATCHING).compile(registry)
        if loader is not None:
            # SIGHUP reloads land here too
            loader.on_reload = self.swap

    @property
    def registry(self) -> ContractRegistry:
        return self.stubs.registry

    @property
    def can_reload(self) -> bool:
        return self.loader is not None

    def swap(self, registry: ContractRegistry) -> None:
        self.stubs = CompiledStubs(registry)
        logger.info("Stubs recompiled", extra={"count": len(registry)})

    def reload(self) -> ContractRegistry:
        assert self.loader is not None
        registry = self.loader.load()
        self.swap(registry)
        return registry

    @property
    def sources(self) -> List[str]:
        return self.registry.sources


def get_engine(request: Request) -> EngineState:
    return request.app.state.engine


def admin_auth(request: Request, x_admin_token: str | None = Header(default=None)) -> None:
    settings: Settings = request.app.state.engine.settings
    if not settings.ADMIN_TOKEN:
        raise UnauthorizedError("Admin functions disabled", disabled=True)
    if x_admin_token != settings.ADMIN_TOKEN:
        raise UnauthorizedError("Invalid admin token")
