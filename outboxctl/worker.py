import os
import secrets
import signal
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from .bridge import TranslatorRegistry, bridge_outbox, default_translators
from .config import WORKER_ROLE, WorkerConfig
from .db import connect_db
from .handlers import HandlerRegistry, UnknownJobType
from .heartbeat import RUNNING, beat, mark_stopped
from .models import DEAD, DONE, Job
from .repository import (
    claim_jobs, load_worker_config, mark_dead, mark_done, reclaim_stale_jobs, record_failure,
)

logger = structlog.get_logger(__name__)

_stop = threading.Event()


class HandlerTimeout(Exception):
    pass


def setup_signal_handlers(stop: threading.Event = _stop):
    def _handler(signum, frame):
        logger.info("received signal, stopping workers", signum=signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread; the caller owns shutdown
            pass


def new_worker_id(index: int = 1) -> str:
    return f"worker_{os.getpid()}_{secrets.token_hex(4)}-{index}"


def run_with_timeout(fn: Callable[[Dict[str, Any]], Any], payload: Dict[str, Any],
                     timeout: float) -> Any:
    """
    Call fn(payload) on a daemon thread and wait at most `timeout` seconds.

    A handler that overruns is reported as HandlerTimeout; its thread is abandoned
    (Python threads cannot be killed) and the job goes through the retry path.
    """
    outcome: Dict[str, Any] = {}

    def target():
        try:
            outcome["value"] = fn(payload)
        except Exception as e:
            outcome["error"] = e

    t = threading.Thread(target=target, name="job-handler", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise HandlerTimeout(f"handler timed out after {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


def process_job(
    conn: sqlite3.Connection,
    job: Job,
    registry: HandlerRegistry,
    worker_id: str,
    base_delay: float,
    timeout: float,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Execute one claimed job and record its outcome in its own update.

    Returns the resulting status, or None when the lease was reclaimed meanwhile.
    """
    log = logger.bind(job_id=job.id, job_type=job.job_type, worker=worker_id)

    try:
        handler = registry.get(job.job_type)
    except UnknownJobType as e:
        mark_dead(conn, job, worker_id, str(e), now=now)
        log.error("job has no handler, moved to DLQ")
        return DEAD

    try:
        run_with_timeout(handler, job.payload, timeout)
    except Exception as e:
        error = str(e) or e.__class__.__name__
        status = record_failure(conn, job, worker_id, error, base_delay, now=now)
        if status is None:
            log.warning("job failed after its lease was reclaimed", error=error)
        elif status == DEAD:
            log.error("job failed, retries exhausted", attempts=job.attempts + 1,
                      max_attempts=job.max_attempts, error=error)
        else:
            log.warning("job failed, retry scheduled", attempts=job.attempts + 1,
                        max_attempts=job.max_attempts, error=error)
        return status

    if not mark_done(conn, job, worker_id, now=now):
        log.warning("job finished after its lease was reclaimed")
        return None
    log.info("job done")
    return DONE


@dataclass
class TickResult:
    bridged: int = 0
    claimed: int = 0
    done: int = 0
    retried: int = 0
    dead: int = 0


def run_once(
    conn: sqlite3.Connection,
    registry: HandlerRegistry,
    worker_id: str,
    cfg: WorkerConfig,
    translators: Optional[TranslatorRegistry] = None,
    now: Optional[datetime] = None,
) -> TickResult:
    """One poll tick: bridge a batch, then claim and execute a batch."""
    tick = TickResult()

    try:
        tick.bridged = bridge_outbox(conn, translators, cfg.bridge_batch_size, now=now).created
    except sqlite3.OperationalError as e:
        # rolled back as a whole; the events are still pending
        logger.warning("bridge pass failed, retrying next tick", error=str(e), worker=worker_id)
    except Exception:
        # a bad event must not stop job execution
        logger.exception("bridge pass failed, batch left pending", worker=worker_id)

    try:
        jobs = claim_jobs(conn, worker_id, cfg.batch_size, now=now)
    except sqlite3.OperationalError as e:
        logger.warning("claim failed, retrying next tick", error=str(e), worker=worker_id)
        return tick

    tick.claimed = len(jobs)
    for job in jobs:
        try:
            status = process_job(conn, job, registry, worker_id, cfg.base_delay_seconds,
                                 cfg.handler_timeout_seconds, now=now)
        except sqlite3.Error as e:
            # outcome not recorded; the lease sweeper hands the job out again
            logger.error("could not record job outcome", job_id=job.id, error=str(e),
                         worker=worker_id)
            continue
        if status == DONE:
            tick.done += 1
        elif status == DEAD:
            tick.dead += 1
        elif status is not None:
            tick.retried += 1
    return tick


def worker_loop(
    name: str,
    registry: HandlerRegistry,
    db_path: Optional[str] = None,
    translators: Optional[TranslatorRegistry] = None,
    stop: threading.Event = _stop,
):
    conn = connect_db(db_path)
    try:
        cfg = load_worker_config(conn)
    except Exception as e:
        logger.warning("could not load config, using defaults", worker=name, error=str(e))
        cfg = WorkerConfig()
    translators = translators or default_translators()

    logger.info("worker started", worker=name, batch_size=cfg.batch_size,
                poll_interval=cfg.poll_interval_seconds)
    try:
        while not stop.is_set():
            try:
                tick = run_once(conn, registry, name, cfg, translators)
            except Exception:
                logger.exception("worker loop failure", worker=name)
                stop.wait(1)
                continue

            if tick.claimed < cfg.batch_size:
                stop.wait(cfg.poll_interval_seconds)
    finally:
        conn.close()
        logger.info("worker stopped", worker=name)


class RecurringTask(threading.Thread):
    """Runs fn(conn) now and then every `interval` seconds until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[sqlite3.Connection], Any],
                 db_path: Optional[str] = None, stop: threading.Event = _stop):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.fn = fn
        self.db_path = db_path
        self.stop = stop

    def run(self):
        conn = connect_db(self.db_path)
        try:
            while True:
                try:
                    self.fn(conn)
                except Exception:
                    logger.exception("recurring task failed", task=self.name)
                if self.stop.wait(self.interval):
                    break
        finally:
            conn.close()


def sweep_stale_leases(conn: sqlite3.Connection, lease_timeout: float,
                       now: Optional[datetime] = None) -> int:
    reclaimed = reclaim_stale_jobs(conn, lease_timeout, now=now)
    if reclaimed:
        logger.warning("reclaimed jobs with expired leases", count=reclaimed,
                       lease_timeout=lease_timeout)
    return reclaimed


def start_workers(
    count: int,
    registry: HandlerRegistry,
    db_path: Optional[str] = None,
    translators: Optional[TranslatorRegistry] = None,
    stop: threading.Event = _stop,
):
    """Start worker threads plus heartbeat and lease sweeper; blocks until stopped."""
    setup_signal_handlers(stop)

    conn = connect_db(db_path)
    try:
        cfg = load_worker_config(conn)
    finally:
        conn.close()

    names = [new_worker_id(i + 1) for i in range(count)]
    metadata = {"pid": os.getpid(), "workers": names}

    tasks: List[threading.Thread] = [
        RecurringTask(
            "heartbeat", cfg.heartbeat_interval_seconds,
            lambda c: beat(c, WORKER_ROLE, RUNNING, metadata), db_path, stop,
        ),
        RecurringTask(
            "lease-sweeper", cfg.sweep_interval_seconds,
            lambda c: sweep_stale_leases(c, cfg.lease_timeout_seconds), db_path, stop,
        ),
    ]
    threads = [
        threading.Thread(target=worker_loop, args=(name, registry, db_path, translators, stop),
                         name=name, daemon=True)
        for name in names
    ]
    for t in tasks + threads:
        t.start()
        logger.info("started thread", thread=t.name)

    try:
        while any(t.is_alive() for t in threads):
            if stop.wait(0.5):
                break
    finally:
        stop.set()
        for t in threads + tasks:
            t.join()
        conn = connect_db(db_path)
        try:
            if not mark_stopped(conn, WORKER_ROLE, metadata):
                logger.info("another worker process owns the heartbeat, leaving it running")
        finally:
            conn.close()
        logger.info("all workers stopped")
