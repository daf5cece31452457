"""
Tests for the error contract and structured logging.
"""
import json
import logging

from entitlements.core.errors import (
    AppError,
    DefinitionNotFound,
    EmailAlreadyUsed,
    NoActiveQuota,
    NotFoundError,
    TransientStorageError,
    error_payload,
)
from entitlements.core.logging import (
    CorrelationIdFilter,
    JsonFormatter,
    PrettyFormatter,
    _safe_truncate,
    correlation_scope,
    get_correlation_id,
)


def _record(msg="hello", **extra):
    record = logging.LogRecord("entitlements.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_error_payload_shape():
    payload = error_payload("definition_not_found", "Quota x not found", "cid-1")
    assert payload == {
        "error": {"code": "definition_not_found", "message": "Quota x not found", "correlation_id": "cid-1"},
        "detail": "Quota x not found",
    }


def test_not_found_and_internal_are_distinct():
    """Unknown quota is a client error; a missing active quota is internal."""
    missing = DefinitionNotFound("Quota x not found")
    broken = NoActiveQuota("Account a1 has no quota")
    assert isinstance(missing, NotFoundError)
    assert isinstance(missing, LookupError)
    assert missing.status_code == 404
    assert broken.status_code == 500
    assert not isinstance(broken, NotFoundError)


def test_error_picks_up_correlation_id():
    with correlation_scope("req-42"):
        err = TransientStorageError("Storage unavailable")
    assert err.correlation_id == "req-42"
    assert err.to_payload()["error"]["code"] == "storage_unavailable"
    assert err.status_code == 503


def test_error_overrides():
    err = AppError("nope", code="custom", status_code=418)
    assert err.code == "custom"
    assert err.status_code == 418
    assert EmailAlreadyUsed().message == "This email has already been registered."


def test_correlation_scope_resets():
    assert get_correlation_id() is None
    with correlation_scope() as cid:
        assert get_correlation_id() == cid
    assert get_correlation_id() is None


def test_json_formatter_includes_structured_fields():
    record = _record(account_id="a1", quota="team_workspace", correlation_id="cid-9")
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "hello"
    assert payload["account_id"] == "a1"
    assert payload["quota"] == "team_workspace"
    assert payload["correlation_id"] == "cid-9"
    assert "feature" not in payload


def test_pretty_formatter_and_filter():
    record = _record(account_id="a1")
    with correlation_scope("cid-7"):
        CorrelationIdFilter().filter(record)
    line = PrettyFormatter().format(record)
    assert "[cid=cid-7]" in line
    assert "[account=a1]" in line
    assert line.endswith("hello")


def test_safe_truncate():
    assert _safe_truncate("x" * 10, limit=5) == "xxxxx...<truncated>"
    assert _safe_truncate(12) == "12"
