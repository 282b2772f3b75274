import json
import logging

from contract_engine.core.errors import ContractErrorCode, ContractErrorDetail, ErrorCategory
from contract_engine.logging_setup import JsonFormatter


def _format(msg, **extra) -> dict:
    record = logging.makeLogRecord({"name": "contract_engine.test", "levelname": "INFO", "msg": msg, **extra})
    return json.loads(JsonFormatter().format(record))


def test_extras_are_included():
    payload = _format("Contract matched", contract="josh", port=8080)
    assert payload["message"] == "Contract matched"
    assert payload["contract"] == "josh"
    assert payload["port"] == 8080


def test_credentials_are_redacted():
    payload = _format(
        "Request headers Authorization: Bearer abc.def.ghi",
        headers={"X-Admin-Token": "s3cret", "Accept": "application/json"},
    )
    assert "abc.def.ghi" not in payload["message"]
    assert payload["headers"]["X-Admin-Token"] == "[REDACTED]"
    assert payload["headers"]["Accept"] == "application/json"


def test_error_detail_category():
    detail = ContractErrorDetail(code=ContractErrorCode.MATCH_PATH_NOT_FOUND, message="missing", path="$.name")
    assert detail.category is ErrorCategory.MATCH
    issue = detail.to_issue()
    assert issue["code"] == "MATCH_002"
    assert issue["expression"] == ["$.name"]
