import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .utils import loads_object

# Job states
PENDING = "pending"
PROCESSING = "processing"
DONE = "done"
DEAD = "dead"  # DLQ

JOB_STATES = (PENDING, PROCESSING, DONE, DEAD)

# Outbox queue states
EVENT_PENDING = "pending"
EVENT_QUEUED = "queued"

# Effective status of an event queued without a job (no translator)
EVENT_DROPPED = "dropped"

CORRELATION_FIELDS = ("company_id", "driver_id", "request_id", "ticket_id")

# idempotency keys of bridged jobs; reserved for the bridge
EVENT_KEY_PREFIX = "ev_"


@dataclass
class OutboxEvent:
    id: int
    event_name: str
    created_at: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    queue_status: str = EVENT_PENDING
    queued_at: Optional[str] = None
    company_id: Optional[int] = None
    driver_id: Optional[int] = None
    request_id: Optional[int] = None
    ticket_id: Optional[int] = None
    audience_type: Optional[str] = None
    audience_id: Optional[int] = None
    event_key: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OutboxEvent":
        return cls(
            id=row["id"],
            event_name=row["event_name"],
            created_at=row["created_at"],
            metadata=loads_object(row["metadata"]),
            queue_status=row["queue_status"],
            queued_at=row["queued_at"],
            company_id=row["company_id"],
            driver_id=row["driver_id"],
            request_id=row["request_id"],
            ticket_id=row["ticket_id"],
            audience_type=row["audience_type"],
            audience_id=row["audience_id"],
            event_key=row["event_key"],
        )


@dataclass
class Job:
    id: int
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 5
    run_at: str = ""
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    source_event_id: Optional[int] = None
    created_at: str = ""
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            job_type=row["job_type"],
            payload=loads_object(row["payload_json"]),
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            run_at=row["run_at"],
            locked_by=row["locked_by"],
            locked_at=row["locked_at"],
            last_error=row["last_error"],
            idempotency_key=row["idempotency_key"],
            source_event_id=row["source_event_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class JobSpec:
    """What a translator wants enqueued for one outbox event."""
    job_type: str
    payload: Dict[str, Any]
    max_attempts: int = 5


@dataclass
class WorkerHeartbeat:
    worker_name: str
    last_seen: str
    status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WorkerHeartbeat":
        return cls(
            worker_name=row["worker_name"],
            last_seen=row["last_seen"],
            status=row["status"],
            metadata=loads_object(row["metadata"]),
        )
