import logging
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml
from fastapi import Body, FastAPI
from fastapi.testclient import TestClient

from contract_engine.config import Settings
from contract_engine.core.contract_loader import ContractLoader, parse_contract
from contract_engine.core.registry import ContractRegistry
from contract_engine.main import create_app

FIXTURES = Path(__file__).parent / "fixtures" / "contracts"


@pytest.fixture(autouse=True)
def restore_logging():
    # create_app and the CLI reconfigure the root logger
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture()
def settings() -> Settings:
    return Settings(CONTRACTS_PATH=str(FIXTURES), ADMIN_TOKEN="test-token", STRICT_MATCHING=False)


@pytest.fixture()
def registry(settings: Settings) -> ContractRegistry:
    return ContractLoader(settings, watch_signals=False).load()


@pytest.fixture()
def client(registry: ContractRegistry, settings: Settings) -> TestClient:
    app = create_app(registry=registry, settings=settings, configure_logging=False)
    return TestClient(app)


def write_contract(directory: Path, name: str, data: Any) -> Path:
    p = directory / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return p


def beer_request(name: str = "alice", age: Any = 25) -> Dict[str, Any]:
    return {
        "method": "POST",
        "url": "/check",
        "headers": {"Content-Type": "application/json"},
        "body": {"name": name, "age": age},
    }


def make_contract(name: str, index: int = 0, priority=None, request=None, response=None, **extra):
    raw: Dict[str, Any] = {
        "request": request or beer_request(),
        "response": response or {"status": 200, "body": {"contract": name}},
        **extra,
    }
    if priority is not None:
        raw["priority"] = priority
    return parse_contract(raw, name=name, index=index)


def beer_producer(drunk_status: str = "NOT_OK", josh_message: str = "There you go Josh!") -> FastAPI:
    """A small producer implementing the beer API the fixture contracts describe."""
    app = FastAPI()

    @app.post("/check")
    def check(person: Dict[str, Any] = Body(...)):
        if person.get("name") == "starbuxman":
            return {"message": josh_message, "status": "OK"}
        return {"message": f"You're drunk [{person.get('name')}]. Go home!", "status": drunk_status}

    @app.get("/stats")
    def stats(name: str):
        return {"name": name, "quantity": 7, "text": f"Dear {name} thanks for your interested in drinking beer"}

    return app


class BeerHooks:
    def __init__(self) -> None:
        self.calls = []

    def assertStatusNotOk(self, value):
        self.calls.append(value)
        assert value == "NOT_OK", f"status was {value}"
