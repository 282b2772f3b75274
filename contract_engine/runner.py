"""
In-process stub runner.

Starts one stub server per artifact id on an ephemeral port so consumer
test harnesses can look the port up by artifact id instead of hard-coding
it.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import uvicorn

from .config import Settings, get_settings
from .core.exceptions import UnknownArtifactError
from .core.model import Contract, ContractSet
from .core.registry import ContractRegistry
from .main import create_app

logger = logging.getLogger(__name__)


@dataclass
class RunningStub:
    artifact_id: str
    host: str
    port: int
    server: uvicorn.Server
    thread: threading.Thread

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class StubRunner:
    def __init__(self, settings: Optional[Settings] = None, startup_timeout: float = 10.0) -> None:
        self.settings = settings or get_settings()
        self.startup_timeout = startup_timeout
        self._running: Dict[str, RunningStub] = {}
        self._lock = threading.Lock()

    def start(self, artifact_id: Optional[str], contracts: Union[ContractRegistry, ContractSet, List[Contract]]) -> int:
        """Serve ``contracts`` for ``artifact_id`` (STUB_ARTIFACT_ID when None) and return the bound port."""
        artifact_id = artifact_id or self.settings.STUB_ARTIFACT_ID
        with self._lock:
            if artifact_id in self._running:
                return self._running[artifact_id].port

            registry = contracts if isinstance(contracts, ContractRegistry) else ContractRegistry.single(
                contracts, group=artifact_id, strict=self.settings.STRICT_MATCHING
            )
            app = create_app(registry=registry, settings=self.settings, configure_logging=False)

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.settings.STUB_HOST, 0))
            port = sock.getsockname()[1]

            config = uvicorn.Config(app, log_config=None, lifespan="off", access_log=False)
            server = uvicorn.Server(config)
            thread = threading.Thread(
                target=server.run, kwargs={"sockets": [sock]}, name=f"stub-{artifact_id}", daemon=True
            )
            thread.start()

            deadline = time.monotonic() + self.startup_timeout
            while not server.started:
                if not thread.is_alive() or time.monotonic() > deadline:
                    server.should_exit = True
                    sock.close()
                    raise RuntimeError(f"Stub server for '{artifact_id}' failed to start")
                time.sleep(0.01)

            self._running[artifact_id] = RunningStub(artifact_id, self.settings.STUB_HOST, port, server, thread)
            logger.info("Stub server started", extra={"artifact_id": artifact_id, "port": port})
            return port

    def port_for(self, artifact_id: Optional[str] = None) -> int:
        artifact_id = artifact_id or self.settings.STUB_ARTIFACT_ID
        try:
            return self._running[artifact_id].port
        except KeyError:
            raise UnknownArtifactError(artifact_id) from None

    def url_for(self, artifact_id: Optional[str] = None) -> str:
        artifact_id = artifact_id or self.settings.STUB_ARTIFACT_ID
        try:
            return self._running[artifact_id].url
        except KeyError:
            raise UnknownArtifactError(artifact_id) from None

    @property
    def artifacts(self) -> List[str]:
        return sorted(self._running)

    def stop(self, artifact_id: str) -> None:
        with self._lock:
            stub = self._running.pop(artifact_id, None)
        if stub is None:
            raise UnknownArtifactError(artifact_id)
        stub.server.should_exit = True
        stub.thread.join(timeout=self.startup_timeout)
        logger.info("Stub server stopped", extra={"artifact_id": artifact_id, "port": stub.port})

    def stop_all(self) -> None:
        for artifact_id in self.artifacts:
            self.stop(artifact_id)

    def __enter__(self) -> "StubRunner":
        return self

    def __exit__(self, *exc) -> None:
        self.stop_all()
