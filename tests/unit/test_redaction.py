"""
Secrets must never reach the logs.
"""
from dbrepair.monitoring.redaction import REDACTED, redact, structlog_redaction_processor


def test_sensitive_keys_are_redacted_recursively():
    event = {
        "event": "DB_CONNECT_FAILED",
        "password": "hunter2",
        "nested": {"api_key": "sk-123", "host": "db"},
        "items": [{"Authorization": "Bearer x"}],
    }

    out = redact(event)

    assert out["password"] == REDACTED
    assert out["nested"] == {"api_key": REDACTED, "host": "db"}
    assert out["items"] == [{"Authorization": REDACTED}]
    assert out["event"] == "DB_CONNECT_FAILED"


def test_presence_flags_are_kept():
    out = structlog_redaction_processor(None, "info", {"has_password": True, "user": "ops"})
    assert out == {"has_password": True, "user": "ops"}
