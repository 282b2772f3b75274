import json

from conftest import FIXTURES
from contract_engine.cli import main


def test_stubs_command_writes_mappings(tmp_path):
    out = tmp_path / "mappings.json"
    assert main(["stubs", str(FIXTURES), "-o", str(out)]) == 0
    mappings = json.loads(out.read_text(encoding="utf-8"))["mappings"]
    assert [m["name"] for m in mappings][:2] == ["should_grant_beer_to_josh", "should_reject_drunk_person"]


def test_generate_tests_command(tmp_path):
    assert main(["generate-tests", str(FIXTURES), "--base-class", "producer.base:BeerBase", "-d", str(tmp_path)]) == 0
    generated = sorted(p.name for p in tmp_path.iterdir())
    assert generated == ["test_beer_contracts.py", "test_stats_contracts.py"]
    source = (tmp_path / "test_beer_contracts.py").read_text(encoding="utf-8")
    compile(source, "test_beer_contracts.py", "exec")
    assert "from producer.base import BeerBase" in source


def test_parse_errors_exit_with_code_2(tmp_path, capsys):
    (tmp_path / "bad.yml").write_text("request: {method: GET}\nresponse: {status: 200}\n", encoding="utf-8")
    assert main(["stubs", str(tmp_path)]) == 2
    assert "validation failed" in capsys.readouterr().err
