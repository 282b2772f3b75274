import dataclasses

import pytest
import yaml

from conftest import FIXTURES, beer_request, write_contract
from contract_engine.config import Settings
from contract_engine.core.contract_loader import ContractLoader, parse_contract
from contract_engine.core.errors import ContractErrorCode
from contract_engine.core.exceptions import ParseError
from contract_engine.core.model import (
    AnyValue,
    Command,
    ConsumerProducer,
    FromRequest,
    HttpMethod,
    Literal,
    Regex,
    Template,
)


def _loader(path) -> ContractLoader:
    return ContractLoader(Settings(CONTRACTS_PATH=str(path)), watch_signals=False)


def test_fixture_contracts_load():
    registry = _loader(FIXTURES).load()
    assert registry.groups == ["beer", "stats"]
    assert len(registry) == 3
    names = [c.name for c in registry.contracts("beer")]
    assert names == ["should_grant_beer_to_josh", "should_reject_drunk_person"]


def test_parse_value_forms():
    contract = parse_contract(
        {
            "request": {
                "method": "post",
                "url": {"$consumer": {"$regex": "/users/[0-9]+"}, "$producer": "/users/12"},
                "body": {"id": {"$consumer": {"$predefined": "uuid"}, "$producer": "0b6e6f36-5c1a-4f43-9d5c-2f1d2a9c0e11"}},
            },
            "response": {
                "status": 201,
                "body": {
                    "id": {"$fromRequest": "$.id"},
                    "greeting": "Hi {{{ jsonpath this '$.id' }}}",
                    "created": {"$consumer": "2024-01-01", "$producer": {"$anyOf": "string"}},
                    "audit": {"$consumer": "ok", "$producer": {"$command": "assertAudit"}},
                },
            },
        },
        name="create_user",
    )
    assert contract.request.method is HttpMethod.POST
    assert contract.request.url == ConsumerProducer(consumer=Regex("/users/[0-9]+"), producer=Literal("/users/12"))
    assert isinstance(contract.request.body["id"].consumer, Regex)
    body = contract.response.body
    assert body["id"] == FromRequest("$.id")
    assert body["greeting"] == Template("Hi {{{ jsonpath this '$.id' }}}")
    assert body["created"].producer == AnyValue("string")
    assert body["audit"].producer == Command("assertAudit")


def test_body_matchers_parsed():
    raw = {
        "request": {
            **beer_request(),
            "matchers": {
                "body": [
                    {"path": "$.name", "type": "by_regex", "predefined": "only_alpha_unicode"},
                    {"path": "$.age", "type": "by_regex", "value": "[2-9][0-9]"},
                ]
            },
        },
        "response": {
            "status": 200,
            "body": {"status": "NOT_OK", "count": 3},
            "matchers": {
                "body": [
                    {"path": "$.status", "type": "by_command", "value": "assertStatusNotOk($it)"},
                    {"path": "$.count", "type": "by_type"},
                ]
            },
        },
    }
    contract = parse_contract(raw)
    assert [m.path for m in contract.request.matchers] == ["$.name", "$.age"]
    assert contract.request.matchers[1].spec == Regex("[2-9][0-9]")
    assert contract.response.matchers[0].spec == Command("assertStatusNotOk", "$.status")
    assert contract.response.matchers[1].spec == AnyValue("number")


def test_header_matchers_wrap_literals():
    raw = {
        "request": {
            **beer_request(),
            "matchers": {"headers": [{"key": "content-type", "regex": "application/json.*"}]},
        },
        "response": {"status": 200},
    }
    contract = parse_contract(raw)
    header = contract.request.headers["Content-Type"]
    assert header == ConsumerProducer(consumer=Regex("application/json.*"), producer=Literal("application/json"))


def test_query_string_in_url_and_wire_text():
    contract = parse_contract(
        {
            "request": {"method": "GET", "url": "/stats?name=marcin", "queryParameters": {"limit": 10}},
            "response": {"status": 200},
        }
    )
    assert contract.request.url == Literal("/stats")
    assert contract.request.query["name"] == Literal("marcin")
    assert contract.request.query["limit"] == Literal("10")


@pytest.mark.parametrize(
    "raw, code",
    [
        ({"response": {"status": 200}}, ContractErrorCode.PARSE_MISSING_BLOCK),
        ({"request": beer_request()}, ContractErrorCode.PARSE_MISSING_BLOCK),
        ({"request": {"url": "/x"}, "response": {"status": 200}}, ContractErrorCode.PARSE_MISSING_BLOCK),
        ({"request": {"method": "GET"}, "response": {"status": 200}}, ContractErrorCode.PARSE_MISSING_BLOCK),
        ({"request": {"method": "FETCH", "url": "/x"}, "response": {"status": 200}}, ContractErrorCode.PARSE_INVALID_METHOD),
        (
            {"request": {"method": "GET", "url": {"$regex": "/x/(["}}, "response": {"status": 200}},
            ContractErrorCode.PARSE_INVALID_REGEX,
        ),
        (
            {"request": {"method": "GET", "url": "/x"}, "response": {"status": 200, "body": {"a": {"$fromRequest": "$..["}}}},
            ContractErrorCode.PARSE_INVALID_JSONPATH,
        ),
        (
            {"request": {"method": "GET", "url": "/x"}, "response": {"status": 200, "body": {"a": {"$anyOf": "date"}}}},
            ContractErrorCode.PARSE_UNKNOWN_MATCHER,
        ),
    ],
)
def test_parse_errors(raw, code):
    with pytest.raises(ParseError) as exc:
        parse_contract(raw, source="bad.yaml")
    assert exc.value.code is code
    assert str(exc.value).startswith("bad.yaml: ")


def test_request_side_without_producer_value_is_rejected():
    raw = {
        "request": {"method": "GET", "url": {"$consumer": {"$regex": "/users/[0-9]+"}}},
        "response": {"status": 200},
    }
    with pytest.raises(ParseError) as exc:
        parse_contract(raw)
    assert exc.value.code is ContractErrorCode.PARSE_UNRESOLVED_SIDE


def test_response_side_without_consumer_value_is_rejected():
    raw = {
        "request": {"method": "GET", "url": "/x"},
        "response": {"status": 200, "body": {"id": {"$regex": "[0-9]+"}}},
    }
    with pytest.raises(ParseError) as exc:
        parse_contract(raw)
    assert exc.value.code is ContractErrorCode.PARSE_UNRESOLVED_SIDE
    assert "$.id" in str(exc.value)


def test_request_cannot_reference_request():
    raw = {
        "request": {"method": "GET", "url": "/x", "headers": {"X-Id": {"$fromRequest": "$.id"}}},
        "response": {"status": 200},
    }
    with pytest.raises(ParseError, match="only allowed in responses"):
        parse_contract(raw)


def test_command_matcher_needs_call_syntax():
    raw = {
        "request": {"method": "GET", "url": "/x"},
        "response": {
            "status": 200,
            "body": {"a": 1},
            "matchers": {"body": [{"path": "$.a", "type": "by_command", "value": "assertA"}]},
        },
    }
    with pytest.raises(ParseError, match=r"name\(\$it\)"):
        parse_contract(raw)


def test_priority_must_be_integer():
    with pytest.raises(ParseError, match="priority"):
        parse_contract({"priority": "high", "request": beer_request(), "response": {"status": 200}})


def test_schema_validation_failure(tmp_path):
    write_contract(tmp_path, "bad.yml", {"request": {"method": "GET", "url": "/x"}, "response": {"status": 42}})
    with pytest.raises(ParseError) as exc:
        _loader(tmp_path).load()
    assert "validation failed" in str(exc.value)
    assert exc.value.errors


def test_unreadable_yaml(tmp_path):
    (tmp_path / "broken.yml").write_text("request: [unclosed", encoding="utf-8")
    with pytest.raises(ParseError, match="unreadable"):
        _loader(tmp_path).load()


def test_empty_directory_is_an_error(tmp_path):
    with pytest.raises(ParseError) as exc:
        _loader(tmp_path).load()
    assert exc.value.code is ContractErrorCode.CONFIG_CONTRACTS_NOT_FOUND


def test_missing_file_is_an_error(tmp_path):
    with pytest.raises(ParseError) as exc:
        _loader(tmp_path / "nope.yml").load()
    assert exc.value.code is ContractErrorCode.CONFIG_CONTRACTS_NOT_FOUND


def test_multi_document_file_names_and_ignored(tmp_path):
    p = tmp_path / "orders.yml"
    docs = [
        {"request": {"method": "GET", "url": "/orders"}, "response": {"status": 200}},
        {"ignored": True, "request": {"method": "GET", "url": "/old"}, "response": {"status": 410}},
        {"name": "create", "request": {"method": "POST", "url": "/orders"}, "response": {"status": 201}},
    ]
    p.write_text(yaml.safe_dump_all(docs), encoding="utf-8")
    registry = _loader(p).load()
    assert registry.groups == ["orders"]
    contracts = registry.contracts("orders")
    assert [c.name for c in contracts] == ["orders_0", "create"]
    assert [c.index for c in contracts] == [0, 1]


def test_declaration_index_spans_files(tmp_path):
    write_contract(tmp_path, "a.yml", {"request": {"method": "GET", "url": "/a"}, "response": {"status": 200}})
    write_contract(tmp_path, "b.yml", {"request": {"method": "GET", "url": "/b"}, "response": {"status": 200}})
    registry = _loader(tmp_path).load()
    assert [(c.name, c.index) for c in registry.contracts()] == [("a", 0), ("b", 1)]
    assert registry.groups == [tmp_path.name]


def test_duplicate_names_in_group(tmp_path):
    write_contract(tmp_path, "api/one.yml", {"name": "same", "request": {"method": "GET", "url": "/a"}, "response": {"status": 200}})
    write_contract(tmp_path, "api/two.yml", {"name": "same", "request": {"method": "GET", "url": "/b"}, "response": {"status": 200}})
    with pytest.raises(ParseError) as exc:
        _loader(tmp_path).load()
    assert exc.value.code is ContractErrorCode.PARSE_DUPLICATE_NAME


def test_json_contracts(tmp_path):
    (tmp_path / "ping.json").write_text(
        '{"request": {"method": "GET", "url": "/ping"}, "response": {"status": 200, "body": "pong"}, "async": true}',
        encoding="utf-8",
    )
    contract = _loader(tmp_path).load().contracts()[0]
    assert contract.name == "ping"
    assert contract.is_async is True
    assert contract.response.body == Literal("pong")


def test_contracts_are_immutable():
    contract = parse_contract({"request": beer_request(), "response": {"status": 200}})
    with pytest.raises(dataclasses.FrozenInstanceError):
        contract.priority = 1
    with pytest.raises(TypeError):
        contract.request.headers["X-New"] = Literal("v")


def test_error_detail_carries_source():
    with pytest.raises(ParseError) as exc:
        parse_contract({"request": {"method": "GET"}, "response": {"status": 200}}, source="a.yml")
    detail = exc.value.to_error_detail()
    assert detail.source == "a.yml"
    assert detail.to_dict()["category"] == "PARSE"


def test_equality_matcher_needs_literal_example():
    raw = {
        "request": beer_request(),
        "response": {
            "status": 200,
            "body": {"name": {"$fromRequest": "$.name"}, "greeting": "Hi {{{ jsonpath this '$.name' }}}"},
            "matchers": {"body": [{"path": "$.name", "type": "by_equality"}]},
        },
    }
    with pytest.raises(ParseError, match="literal example"):
        parse_contract(raw)
    raw["response"]["matchers"]["body"] = [{"path": "$.greeting", "type": "by_equality"}]
    with pytest.raises(ParseError, match="literal example"):
        parse_contract(raw)


def test_type_matcher_over_dynamic_example_accepts_any_type():
    raw = {
        "request": beer_request(),
        "response": {
            "status": 200,
            "body": {"name": {"$fromRequest": "$.name"}},
            "matchers": {"body": [{"path": "$.name", "type": "by_type"}]},
        },
    }
    (matcher,) = parse_contract(raw).response.matchers
    assert matcher.spec == AnyValue("any")


def test_empty_body_containers_parse():
    raw = {
        "request": {**beer_request(), "body": {"name": "alice", "meta": {}}},
        "response": {"status": 200, "body": {"items": []}},
    }
    contract = parse_contract(raw)
    assert contract.request.body["meta"] == {}
    assert contract.response.body["items"] == []
