"""
Tests for delay parsing, timestamps, settings and log redaction.
"""

from datetime import datetime, timedelta, timezone

import pytest

from outboxctl.config import ConfigError, Settings, WorkerConfig, validate_config_value
from outboxctl.logging_config import redact_sensitive
from outboxctl.utils import backoff_delay, format_ts, loads_object, parse_delay_to_seconds, parse_ts


@pytest.mark.parametrize("text,seconds", [
    ("20s", 20), ("5m", 300), ("1h30m", 5400), ("2d3h", 183600), ("  2h  ", 7200),
])
def test_parse_delay(text, seconds):
    assert parse_delay_to_seconds(text) == seconds


@pytest.mark.parametrize("text", ["", "soon", "0s", "5x"])
def test_parse_delay_rejects(text):
    with pytest.raises(ValueError):
        parse_delay_to_seconds(text)


def test_timestamps_sort_as_strings():
    base = datetime(2030, 1, 1, 9, 59, 59, 999999, tzinfo=timezone.utc)
    later = base + timedelta(microseconds=1)
    assert format_ts(base) < format_ts(later)
    assert format_ts(later) == "2030-01-01T10:00:00.000000Z"
    assert parse_ts(format_ts(base)) == base


def test_naive_and_offset_times_are_normalised():
    assert format_ts(datetime(2030, 1, 1, 12)) == "2030-01-01T12:00:00.000000Z"
    assert parse_ts("2030-01-01T14:00:00+02:00") == datetime(2030, 1, 1, 12, tzinfo=timezone.utc)


def test_backoff_delay():
    assert [backoff_delay(5, n) for n in range(1, 5)] == [5, 10, 20, 40]
    assert backoff_delay(5, 0) == 5


def test_loads_object_tolerates_junk():
    assert loads_object(None) == {}
    assert loads_object("[1, 2]") == {}
    assert loads_object("{not json") == {}
    assert loads_object('{"a": 1}') == {"a": 1}


def test_settings_from_env():
    s = Settings.from_env({"SENDGRID_API_KEY": "SG.x", "DRY_RUN": "1", "LOG_LEVEL": "debug",
                           "OUTBOXCTL_DB": "/tmp/q.db"})
    assert s.sendgrid_api_key == "SG.x"
    assert s.dry_run is True
    assert s.log_level == "DEBUG"
    assert s.db_path == "/tmp/q.db"
    assert Settings.from_env({}).from_email == "no-reply@driverflow.app"


def test_worker_refuses_without_api_key():
    with pytest.raises(ConfigError):
        Settings.from_env({}).validate_for_worker()
    Settings.from_env({"DRY_RUN": "1"}).validate_for_worker()
    Settings.from_env({"SENDGRID_API_KEY": "SG.x"}).validate_for_worker()


def test_worker_config_from_mapping():
    cfg = WorkerConfig.from_mapping({"batch_size": "9", "unknown": "x"})
    assert cfg.batch_size == 9
    assert cfg.lease_timeout_seconds == 300.0

    with pytest.raises(ConfigError):
        WorkerConfig.from_mapping({"base_delay_seconds": "fast"})
    with pytest.raises(ConfigError):
        WorkerConfig.from_mapping({"batch_size": "0"})


def test_validate_config_value():
    validate_config_value("poll_interval_seconds", "0.5")
    with pytest.raises(ValueError):
        validate_config_value("bridge_batch_size", "1.5")
    with pytest.raises(ValueError):
        validate_config_value("lease_timeout_seconds", "-3")


def test_redact_sensitive_masks_nested_secrets():
    out = redact_sensitive(None, "info", {
        "event": "email_sent",
        "api_key": "SG.secret",
        "payload": {"email": "a@b.com", "token": "T1", "headers": [{"Authorization": "Bearer x"}]},
        "idempotency_key": "ev_1",
    })

    assert out["event"] == "email_sent"
    assert out["api_key"] == "[REDACTED]"
    assert out["payload"]["email"] == "a@b.com"
    assert out["payload"]["token"] == "[REDACTED]"
    assert out["payload"]["headers"] == [{"Authorization": "[REDACTED]"}]
    assert out["idempotency_key"] == "ev_1"
