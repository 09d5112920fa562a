"""
Pytest fixtures for the outbox pipeline tests.
"""

from datetime import datetime, timezone

import pytest
import structlog

from outboxctl.config import WorkerConfig
from outboxctl.db import connect_db, init_db
from outboxctl.handlers import HandlerRegistry


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def db_path(tmp_path):
    """Fresh database file with schema and default config."""
    path = str(tmp_path / "outbox.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def t0():
    """Fixed clock so run_at arithmetic can be asserted exactly."""
    return datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def cfg():
    return WorkerConfig(base_delay_seconds=1.0, batch_size=5, handler_timeout_seconds=5.0)


@pytest.fixture
def registry():
    """Registry whose handlers record the payloads they were called with."""
    calls = []
    reg = HandlerRegistry()
    reg.register("send_email", calls.append)
    reg.register("realtime_push", calls.append)
    reg.calls = calls
    return reg
