import httpx
import pytest

from conftest import make_contract
from contract_engine.config import Settings
from contract_engine.core.exceptions import UnknownArtifactError
from contract_engine.core.registry import ContractRegistry
from contract_engine.runner import StubRunner


@pytest.fixture()
def runner(settings: Settings):
    with StubRunner(settings) as r:
        yield r


def test_port_discovery_by_artifact_id(runner: StubRunner, registry: ContractRegistry):
    port = runner.start("beer-api", registry)
    assert runner.port_for("beer-api") == port
    assert runner.url_for("beer-api") == f"http://127.0.0.1:{port}"

    r = httpx.post(f"{runner.url_for('beer-api')}/check", json={"name": "starbuxman", "age": 25})
    assert r.status_code == 200
    assert r.json()["message"] == "There you go Josh!"


def test_start_is_idempotent(runner: StubRunner, registry: ContractRegistry):
    assert runner.start("beer-api", registry) == runner.start("beer-api", registry)
    assert runner.artifacts == ["beer-api"]


def test_each_artifact_gets_its_own_port(runner: StubRunner, registry: ContractRegistry):
    ping = make_contract("ping", request={"method": "GET", "url": "/ping"}, response={"status": 200, "body": "pong"})
    beer_port = runner.start("beer-api", registry)
    ping_port = runner.start("ping-api", [ping])
    assert beer_port != ping_port
    assert httpx.get(f"http://127.0.0.1:{ping_port}/ping").text == "pong"
    assert httpx.get(f"http://127.0.0.1:{beer_port}/ping").status_code == 404


def test_unknown_artifact(runner: StubRunner):
    with pytest.raises(UnknownArtifactError) as exc:
        runner.port_for("nope")
    assert "nope" in str(exc.value)
    with pytest.raises(KeyError):
        runner.url_for("nope")


def test_stop_releases_artifact(runner: StubRunner, registry: ContractRegistry):
    runner.start("beer-api", registry)
    runner.stop("beer-api")
    assert runner.artifacts == []
    with pytest.raises(UnknownArtifactError):
        runner.port_for("beer-api")


def test_default_artifact_id(runner: StubRunner, settings: Settings):
    ping = make_contract("ping", request={"method": "GET", "url": "/ping"}, response={"status": 200, "body": "pong"})
    port = runner.start(None, [ping])
    assert runner.artifacts == [settings.STUB_ARTIFACT_ID]
    assert runner.port_for() == port
    assert httpx.get(f"{runner.url_for()}/ping").text == "pong"
