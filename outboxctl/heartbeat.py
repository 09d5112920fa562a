from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .config import WORKER_ROLE
from .models import WorkerHeartbeat
from .utils import dumps, ensure_utc, now_iso, parse_ts, utcnow

RUNNING = "running"
STOPPED = "stopped"

DEFAULT_FRESHNESS = 60.0


def beat(
    conn,
    worker_name: str = WORKER_ROLE,
    status: str = RUNNING,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
):
    """Upsert the liveness row for a worker role (one row per role, not per process)."""
    with conn:
        conn.execute(
            """INSERT INTO worker_heartbeat (worker_name, last_seen, status, metadata)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(worker_name) DO UPDATE SET
                   last_seen=excluded.last_seen,
                   status=excluded.status,
                   metadata=excluded.metadata""",
            (worker_name, now_iso(now), status, dumps(metadata or {})),
        )


def mark_stopped(
    conn,
    worker_name: str = WORKER_ROLE,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Record a clean shutdown, unless another process has beaten since our last beat.

    The row is shared by every process of the role; the last writer's metadata tells
    whose beat it holds. Returns True when the row now reads 'stopped'.
    """
    encoded = dumps(metadata or {})
    with conn:
        cur = conn.execute(
            """INSERT INTO worker_heartbeat (worker_name, last_seen, status, metadata)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(worker_name) DO UPDATE SET
                   last_seen=excluded.last_seen,
                   status=excluded.status
               WHERE worker_heartbeat.metadata=excluded.metadata""",
            (worker_name, now_iso(now), STOPPED, encoded),
        )
    return cur.rowcount > 0


def get_heartbeat(conn, worker_name: str = WORKER_ROLE) -> Optional[WorkerHeartbeat]:
    row = conn.execute(
        "SELECT * FROM worker_heartbeat WHERE worker_name=?", (worker_name,)
    ).fetchone()
    return WorkerHeartbeat.from_row(row) if row else None


@dataclass
class HealthStatus:
    worker_name: str
    healthy: bool
    last_seen: Optional[str] = None
    age_seconds: Optional[float] = None
    status: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "worker_name": self.worker_name,
            "healthy": self.healthy,
            "last_seen": self.last_seen,
            "age_seconds": self.age_seconds,
            "status": self.status,
        }


def check_health(
    conn,
    worker_name: str = WORKER_ROLE,
    freshness_seconds: float = DEFAULT_FRESHNESS,
    now: Optional[datetime] = None,
) -> HealthStatus:
    """Healthy means a 'running' heartbeat no older than freshness_seconds."""
    hb = get_heartbeat(conn, worker_name)
    if hb is None:
        return HealthStatus(worker_name, healthy=False)

    age = (ensure_utc(now or utcnow()) - parse_ts(hb.last_seen)).total_seconds()
    return HealthStatus(
        worker_name,
        healthy=hb.status == RUNNING and age <= freshness_seconds,
        last_seen=hb.last_seen,
        age_seconds=round(age, 3),
        status=hb.status,
    )
