import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .config import WorkerConfig, validate_config_value
from .db import write_transaction
from .models import (
    CORRELATION_FIELDS, DEAD, DONE, EVENT_DROPPED, EVENT_KEY_PREFIX, EVENT_PENDING, EVENT_QUEUED,
    JOB_STATES, PENDING, PROCESSING, Job, OutboxEvent,
)
from .utils import backoff_delay, dumps, format_ts, iso_from_seconds_from, now_iso, utcnow

logger = structlog.get_logger(__name__)

ERROR_MAX_LEN = 500


def is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_worker_config(conn) -> WorkerConfig:
    return WorkerConfig.from_mapping(get_config(conn))


# ---------- Outbox ----------
def insert_event(
    conn,
    event_name: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    audience_type: Optional[str] = None,
    audience_id: Optional[int] = None,
    event_key: Optional[str] = None,
    now: Optional[datetime] = None,
    **correlation: Optional[int],
) -> int:
    """
    Append an outbox event and return its id.

    Runs inside the caller's transaction: the producer commits the event together with
    the state change it describes.
    """
    if not event_name or not event_name.strip():
        raise ValueError("event_name cannot be empty.")
    unknown = set(correlation) - set(CORRELATION_FIELDS)
    if unknown:
        raise ValueError(f"Unknown correlation fields: {', '.join(sorted(unknown))}")

    cur = conn.execute(
        """INSERT INTO events_outbox
           (event_name, created_at, company_id, driver_id, request_id, ticket_id,
            audience_type, audience_id, event_key, metadata, queue_status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event_name.strip(),
            now_iso(now),
            *(correlation.get(f) for f in CORRELATION_FIELDS),
            audience_type,
            audience_id,
            event_key,
            dumps(metadata or {}),
            EVENT_PENDING,
        ),
    )
    return cur.lastrowid


def select_pending_events(conn, limit: int) -> List[OutboxEvent]:
    rows = conn.execute(
        "SELECT * FROM events_outbox WHERE queue_status=? ORDER BY id ASC LIMIT ?",
        (EVENT_PENDING, limit),
    ).fetchall()
    return [OutboxEvent.from_row(r) for r in rows]


def mark_events_queued(conn, event_ids: List[int], now: Optional[datetime] = None) -> int:
    if not event_ids:
        return 0
    placeholders = ",".join("?" for _ in event_ids)
    cur = conn.execute(
        f"""UPDATE events_outbox SET queue_status=?, queued_at=?
            WHERE queue_status=? AND id IN ({placeholders})""",
        (EVENT_QUEUED, now_iso(now), EVENT_PENDING, *event_ids),
    )
    return cur.rowcount


def get_event(conn, event_id: int) -> Optional[OutboxEvent]:
    row = conn.execute("SELECT * FROM events_outbox WHERE id=?", (event_id,)).fetchone()
    return OutboxEvent.from_row(row) if row else None


def list_events(conn, limit: int = 50, queue_status: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Recent outbox events with their effective status.

    The effective status is the resulting job's status when one exists, 'pending'
    while the event still waits for the bridge and 'dropped' when the bridge queued it
    without creating a job.
    """
    where = "WHERE e.queue_status=?" if queue_status else ""
    params: tuple = (queue_status, limit) if queue_status else (limit,)
    rows = conn.execute(
        f"""SELECT e.id, e.event_name, e.created_at, e.queue_status, e.queued_at,
                   j.id AS job_id, j.job_type, j.status AS job_status
            FROM events_outbox e
            LEFT JOIN jobs_queue j ON j.source_event_id = e.id
            {where}
            ORDER BY e.id DESC
            LIMIT ?""",
        params,
    ).fetchall()

    out = []
    for r in rows:
        item = dict(r)
        if r["job_status"]:
            item["effective_status"] = r["job_status"]
        elif r["queue_status"] == EVENT_PENDING:
            item["effective_status"] = EVENT_PENDING
        else:
            item["effective_status"] = EVENT_DROPPED
        out.append(item)
    return out


def event_counts(conn) -> Dict[str, int]:
    out = {}
    for s in (EVENT_PENDING, EVENT_QUEUED):
        out[s] = conn.execute(
            "SELECT COUNT(1) AS c FROM events_outbox WHERE queue_status=?",
            (s,),
        ).fetchone()["c"]
    return out


# ---------- Jobs: enqueue / claim / complete / retry ----------
def insert_job(
    conn,
    *,
    job_type: str,
    payload: Dict[str, Any],
    run_at: str,
    max_attempts: int,
    idempotency_key: Optional[str] = None,
    source_event_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Plain INSERT; transaction handling and IntegrityError are left to the caller."""
    ts = now_iso(now)
    cur = conn.execute(
        """INSERT INTO jobs_queue
           (job_type, payload_json, status, attempts, max_attempts, run_at,
            created_at, updated_at, idempotency_key, source_event_id)
           VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?, ?)""",
        (job_type, dumps(payload), PENDING, max_attempts, run_at, ts, ts,
         idempotency_key, source_event_id),
    )
    return cur.lastrowid


def enqueue_job(
    conn,
    job_type: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    run_at: Optional[datetime] = None,
    delay_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Enqueue a job directly, bypassing the outbox.

    Returns False (and creates nothing) when idempotency_key is already taken.
    """
    if not job_type or not job_type.strip():
        raise ValueError("job_type cannot be empty.")
    if run_at is not None and delay_seconds is not None:
        raise ValueError("Use either run_at or delay_seconds, not both.")
    if delay_seconds is not None and delay_seconds <= 0:
        raise ValueError("delay must be > 0 seconds")
    if idempotency_key and idempotency_key.startswith(EVENT_KEY_PREFIX):
        raise ValueError(
            f"Idempotency keys starting with {EVENT_KEY_PREFIX!r} are reserved for bridged events."
        )

    if max_attempts is None:
        max_attempts = load_worker_config(conn).max_attempts_default
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")

    if delay_seconds is not None:
        next_at = iso_from_seconds_from(now, delay_seconds)
    elif run_at is not None:
        next_at = format_ts(run_at)
    else:
        next_at = now_iso(now)

    try:
        with conn:
            insert_job(
                conn,
                job_type=job_type.strip(),
                payload=payload or {},
                run_at=next_at,
                max_attempts=max_attempts,
                idempotency_key=idempotency_key,
                now=now,
            )
    except sqlite3.IntegrityError as e:
        if is_unique_violation(e):
            logger.info("enqueue skipped, idempotency key exists",
                        job_type=job_type, idempotency_key=idempotency_key)
            return False
        raise
    return True


def claim_jobs(conn, worker_id: str, batch_size: int, now: Optional[datetime] = None) -> List[Job]:
    """
    Claim up to batch_size eligible jobs for worker_id.

    Select and update happen under one BEGIN IMMEDIATE transaction, so two workers can
    never both move the same pending row to processing.
    """
    ts = now_iso(now)
    with write_transaction(conn):
        rows = conn.execute(
            """SELECT id FROM jobs_queue
               WHERE status=? AND run_at <= ?
               ORDER BY id ASC
               LIMIT ?""",
            (PENDING, ts, batch_size),
        ).fetchall()
        ids = [r["id"] for r in rows]
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        conn.execute(
            f"""UPDATE jobs_queue
                SET status=?, locked_by=?, locked_at=?, updated_at=?
                WHERE status=? AND id IN ({placeholders})""",
            (PROCESSING, worker_id, ts, ts, PENDING, *ids),
        )

    claimed = conn.execute(
        f"""SELECT * FROM jobs_queue
            WHERE locked_by=? AND status=? AND id IN ({placeholders})
            ORDER BY id ASC""",
        (worker_id, PROCESSING, *ids),
    ).fetchall()
    return [Job.from_row(r) for r in claimed]


def mark_done(conn, job: Job, worker_id: str, now: Optional[datetime] = None) -> bool:
    """False when this worker no longer holds the lease."""
    with conn:
        cur = conn.execute(
            """UPDATE jobs_queue
               SET status=?, updated_at=?, locked_by=NULL, locked_at=NULL
               WHERE id=? AND status=? AND locked_by=?""",
            (DONE, now_iso(now), job.id, PROCESSING, worker_id),
        )
    return cur.rowcount == 1


def record_failure(
    conn,
    job: Job,
    worker_id: str,
    error: str,
    base_delay: float,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Count a failed attempt and either reschedule with backoff or move to the DLQ.

    Returns the job's new status, or None when the lease was lost meanwhile.
    """
    now = now or utcnow()
    attempts = job.attempts + 1
    error = (error or "")[:ERROR_MAX_LEN]

    if attempts >= job.max_attempts:
        status, next_at = DEAD, job.run_at
    else:
        status = PENDING
        next_at = format_ts(now + timedelta(seconds=backoff_delay(base_delay, attempts)))

    with conn:
        cur = conn.execute(
            """UPDATE jobs_queue
               SET status=?, attempts=?, last_error=?, run_at=?, updated_at=?,
                   locked_by=NULL, locked_at=NULL
               WHERE id=? AND status=? AND locked_by=?""",
            (status, attempts, error, next_at, format_ts(now), job.id, PROCESSING, worker_id),
        )
    if cur.rowcount != 1:
        return None
    return status


def mark_dead(conn, job: Job, worker_id: str, error: str, now: Optional[datetime] = None) -> bool:
    """Non-retryable failure: the job forfeits its remaining attempts."""
    with conn:
        cur = conn.execute(
            """UPDATE jobs_queue
               SET status=?, attempts=max_attempts, last_error=?, updated_at=?,
                   locked_by=NULL, locked_at=NULL
               WHERE id=? AND status=? AND locked_by=?""",
            (DEAD, (error or "")[:ERROR_MAX_LEN], now_iso(now), job.id, PROCESSING, worker_id),
        )
    return cur.rowcount == 1


def reclaim_stale_jobs(conn, lease_timeout: float, now: Optional[datetime] = None) -> int:
    """
    Release processing jobs whose lease is older than lease_timeout seconds.

    A lost lease counts as a failed attempt, so a job that keeps killing its worker
    still ends up dead instead of cycling forever.
    """
    now = now or utcnow()
    cutoff = format_ts(now - timedelta(seconds=lease_timeout))
    ts = format_ts(now)
    with write_transaction(conn):
        cur = conn.execute(
            """UPDATE jobs_queue
               SET attempts = attempts + 1,
                   status = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE ? END,
                   run_at = CASE WHEN attempts + 1 >= max_attempts THEN run_at ELSE ? END,
                   last_error = 'lease expired (held by ' || locked_by || ')',
                   locked_by = NULL, locked_at = NULL, updated_at = ?
               WHERE status=? AND locked_at < ?""",
            (DEAD, PENDING, ts, ts, PROCESSING, cutoff),
        )
    return cur.rowcount


# ---------- Queries ----------
def get_job(conn, job_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs_queue WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def get_job_for_event(conn, event_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs_queue WHERE source_event_id=?", (event_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, state: Optional[str] = None, limit: int = 100) -> List[Job]:
    if state:
        rows = conn.execute(
            "SELECT * FROM jobs_queue WHERE status=? ORDER BY id ASC LIMIT ?",
            (state, limit),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM jobs_queue ORDER BY id ASC LIMIT ?", (limit,)).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {}
    for s in JOB_STATES:
        out[s] = conn.execute(
            "SELECT COUNT(1) AS c FROM jobs_queue WHERE status=?",
            (s,),
        ).fetchone()["c"]
    return out


# ---------- DLQ ----------
def dlq_list(conn) -> Iterable[Job]:
    rows = conn.execute(
        "SELECT * FROM jobs_queue WHERE status=? ORDER BY updated_at DESC",
        (DEAD,),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def dlq_retry(conn, job_id: int, now: Optional[datetime] = None) -> bool:
    """Operator action: give a dead job a fresh retry budget."""
    ts = now_iso(now)
    try:
        with conn:
            res = conn.execute(
                """UPDATE jobs_queue
                   SET status=?, attempts=0, updated_at=?, run_at=?, last_error=NULL,
                       locked_by=NULL, locked_at=NULL
                   WHERE id=? AND status=?""",
                (PENDING, ts, ts, job_id, DEAD),
            )
        return res.rowcount == 1
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during DLQ retry: {e}")

