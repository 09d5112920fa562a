"""
Tests for claiming, executing and recording job outcomes.
"""

import threading
from datetime import timedelta

import pytest

from outboxctl.bridge import EventTranslator, TranslatorRegistry
from outboxctl.config import WorkerConfig
from outboxctl.db import connect_db
from outboxctl.handlers import HandlerRegistry
from outboxctl.heartbeat import get_heartbeat
from outboxctl.repository import (
    claim_jobs, enqueue_job, get_event, get_job, insert_event, list_jobs, mark_done, set_config,
)
from outboxctl.utils import format_ts, parse_ts
from outboxctl.worker import (
    HandlerTimeout, process_job, run_once, run_with_timeout, start_workers, sweep_stale_leases,
    worker_loop,
)


def _failing_registry(message="SMTP down"):
    def fail(payload):
        raise RuntimeError(message)

    reg = HandlerRegistry()
    reg.register("send_email", fail)
    return reg


def test_successful_job_is_done(conn, registry, t0):
    enqueue_job(conn, "send_email", {"email": "a@b.com"}, now=t0)

    [job] = claim_jobs(conn, "w1", 5, now=t0)
    assert job.status == "processing"
    assert job.locked_by == "w1"
    assert job.locked_at == format_ts(t0)

    assert process_job(conn, job, registry, "w1", 1.0, 5.0, now=t0) == "done"
    done = get_job(conn, job.id)
    assert done.status == "done"
    assert done.locked_by is None and done.locked_at is None
    assert registry.calls == [{"email": "a@b.com"}]


def test_retries_until_dead(conn, t0):
    reg = _failing_registry()
    enqueue_job(conn, "send_email", {"email": "a@b.com"}, max_attempts=3, now=t0)

    # attempt 1
    [job] = claim_jobs(conn, "w1", 5, now=t0)
    assert process_job(conn, job, reg, "w1", 1.0, 5.0, now=t0) == "pending"
    job = get_job(conn, job.id)
    assert job.attempts == 1
    assert job.status == "pending"
    assert job.run_at == format_ts(t0 + timedelta(seconds=1))
    assert job.last_error == "SMTP down"
    assert job.locked_by is None

    # not eligible before run_at
    assert claim_jobs(conn, "w1", 5, now=t0) == []

    # attempt 2
    t1 = t0 + timedelta(seconds=1)
    [job] = claim_jobs(conn, "w1", 5, now=t1)
    assert process_job(conn, job, reg, "w1", 1.0, 5.0, now=t1) == "pending"
    job = get_job(conn, job.id)
    assert job.attempts == 2
    assert job.run_at == format_ts(t1 + timedelta(seconds=2))

    # attempt 3
    t2 = t1 + timedelta(seconds=2)
    [job] = claim_jobs(conn, "w1", 5, now=t2)
    assert process_job(conn, job, reg, "w1", 1.0, 5.0, now=t2) == "dead"
    job = get_job(conn, job.id)
    assert job.attempts == 3
    assert job.status == "dead"
    assert job.last_error == "SMTP down"


def test_backoff_doubles_per_attempt(conn, t0):
    reg = _failing_registry()
    enqueue_job(conn, "send_email", {}, max_attempts=6, now=t0)

    now = t0
    gaps = []
    for _ in range(5):
        [job] = claim_jobs(conn, "w1", 5, now=now)
        process_job(conn, job, reg, "w1", 1.0, 5.0, now=now)
        run_at = parse_ts(get_job(conn, job.id).run_at)
        gaps.append((run_at - now).total_seconds())
        now = run_at

    assert gaps == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_dead_job_is_never_picked_up_again(conn, t0):
    reg = _failing_registry()
    enqueue_job(conn, "send_email", {}, max_attempts=1, now=t0)
    [job] = claim_jobs(conn, "w1", 5, now=t0)
    assert process_job(conn, job, reg, "w1", 1.0, 5.0, now=t0) == "dead"

    later = t0 + timedelta(days=30)
    assert sweep_stale_leases(conn, 1, now=later) == 0
    assert claim_jobs(conn, "w2", 5, now=later) == []
    assert get_job(conn, job.id).status == "dead"


def test_only_one_of_two_claims_gets_the_job(conn, db_path, t0):
    enqueue_job(conn, "send_email", {}, now=t0)
    other = connect_db(db_path)
    try:
        first = claim_jobs(conn, "w1", 5, now=t0)
        second = claim_jobs(other, "w2", 5, now=t0)
    finally:
        other.close()

    assert len(first) == 1
    assert second == []


def test_concurrent_claims_are_disjoint(db_path, t0):
    setup = connect_db(db_path)
    for i in range(40):
        enqueue_job(setup, "send_email", {"n": i}, now=t0)
    setup.close()

    claimed = {}
    errors = []

    def claimer(name):
        c = connect_db(db_path)
        mine = []
        try:
            while True:
                batch = claim_jobs(c, name, 3, now=t0)
                if not batch:
                    break
                mine.extend(j.id for j in batch)
        except Exception as e:  # surfaced below
            errors.append(e)
        finally:
            c.close()
        claimed[name] = mine

    threads = [threading.Thread(target=claimer, args=(f"w{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    all_ids = [i for ids in claimed.values() for i in ids]
    assert len(all_ids) == len(set(all_ids)) == 40


def test_claim_respects_batch_size_and_order(conn, t0):
    for i in range(4):
        enqueue_job(conn, "send_email", {"n": i}, now=t0)

    batch = claim_jobs(conn, "w1", 3, now=t0)

    assert [j.payload["n"] for j in batch] == [0, 1, 2]


def test_unknown_job_type_goes_straight_to_dlq(conn, registry, t0):
    enqueue_job(conn, "fax_document", {}, max_attempts=4, now=t0)
    [job] = claim_jobs(conn, "w1", 5, now=t0)

    assert process_job(conn, job, registry, "w1", 1.0, 5.0, now=t0) == "dead"
    dead = get_job(conn, job.id)
    assert dead.attempts == 4
    assert "Unknown handler fax_document" in dead.last_error


def test_one_failure_does_not_touch_other_jobs(conn, t0):
    def picky(payload):
        if payload.get("bad"):
            raise ValueError("malformed payload")

    reg = HandlerRegistry()
    reg.register("send_email", picky)
    enqueue_job(conn, "send_email", {"bad": True}, now=t0)
    enqueue_job(conn, "send_email", {"bad": False}, now=t0)

    tick = run_once(conn, reg, "w1", WorkerConfig(base_delay_seconds=1.0), now=t0)

    assert (tick.claimed, tick.done, tick.retried) == (2, 1, 1)
    statuses = {j.payload["bad"]: j.status for j in list_jobs(conn)}
    assert statuses == {True: "pending", False: "done"}


def test_run_once_bridges_then_executes(conn, registry, t0):
    with conn:
        insert_event(conn, "verification_email", {"email": "a@b.com", "token": "T1"}, now=t0)

    tick = run_once(conn, registry, "w1", WorkerConfig(), now=t0)

    assert tick.bridged == 1
    assert tick.done == 1
    assert registry.calls[0]["token"] == "T1"


def test_handler_timeout_feeds_retry_path(conn, t0):
    release = threading.Event()

    def hang(payload):
        release.wait(5)

    reg = HandlerRegistry()
    reg.register("send_email", hang)
    enqueue_job(conn, "send_email", {}, now=t0)
    [job] = claim_jobs(conn, "w1", 5, now=t0)

    try:
        status = process_job(conn, job, reg, "w1", 1.0, 0.05, now=t0)
    finally:
        release.set()

    assert status == "pending"
    job = get_job(conn, job.id)
    assert job.attempts == 1
    assert "timed out" in job.last_error


def test_run_with_timeout_passes_through_result_and_errors():
    assert run_with_timeout(lambda p: p["x"] * 2, {"x": 21}, 1.0) == 42
    with pytest.raises(KeyError):
        run_with_timeout(lambda p: p["missing"], {}, 1.0)
    with pytest.raises(HandlerTimeout):
        gate = threading.Event()
        try:
            run_with_timeout(lambda p: gate.wait(5), {}, 0.05)
        finally:
            gate.set()


def test_sweeper_reclaims_expired_lease(conn, t0):
    enqueue_job(conn, "send_email", {}, max_attempts=3, now=t0)
    [job] = claim_jobs(conn, "crashed-worker", 5, now=t0)

    assert sweep_stale_leases(conn, 300, now=t0 + timedelta(seconds=299)) == 0
    assert sweep_stale_leases(conn, 300, now=t0 + timedelta(seconds=301)) == 1

    job = get_job(conn, job.id)
    assert job.status == "pending"
    assert job.attempts == 1
    assert job.locked_by is None and job.locked_at is None
    assert "lease expired" in job.last_error


def test_sweeper_kills_job_on_last_attempt(conn, t0):
    enqueue_job(conn, "send_email", {}, max_attempts=1, now=t0)
    claim_jobs(conn, "crashed-worker", 5, now=t0)

    sweep_stale_leases(conn, 10, now=t0 + timedelta(minutes=5))

    [job] = list_jobs(conn)
    assert job.status == "dead"
    assert job.attempts == 1


def test_late_finish_after_reclaim_is_ignored(conn, registry, t0):
    enqueue_job(conn, "send_email", {}, now=t0)
    [job] = claim_jobs(conn, "slow-worker", 5, now=t0)
    sweep_stale_leases(conn, 60, now=t0 + timedelta(minutes=2))
    [again] = claim_jobs(conn, "fresh-worker", 5, now=t0 + timedelta(minutes=2))

    assert mark_done(conn, job, "slow-worker") is False
    assert process_job(conn, job, registry, "slow-worker", 1.0, 5.0) is None
    assert get_job(conn, job.id).locked_by == "fresh-worker"
    assert again.id == job.id


def test_worker_loop_runs_until_stopped(db_path, conn):
    set_config(conn, "poll_interval_seconds", "0.05")
    enqueue_job(conn, "send_email", {"email": "a@b.com"})
    stop = threading.Event()

    reg = HandlerRegistry()
    reg.register("send_email", lambda payload: stop.set())

    t = threading.Thread(target=worker_loop, args=("w-loop", reg, db_path, None, stop))
    t.start()
    t.join(10)

    assert not t.is_alive()
    [job] = list_jobs(conn)
    assert job.status == "done"


def test_start_workers_beats_and_marks_stopped(db_path, conn):
    set_config(conn, "poll_interval_seconds", "0.05")
    for i in range(3):
        enqueue_job(conn, "send_email", {"n": i})
    stop = threading.Event()
    seen = []

    def handler(payload):
        seen.append(payload["n"])
        if len(seen) == 3:
            stop.set()

    reg = HandlerRegistry()
    reg.register("send_email", handler)

    t = threading.Thread(target=start_workers, args=(2, reg, db_path, None, stop))
    t.start()
    t.join(15)

    assert not t.is_alive()
    assert sorted(seen) == [0, 1, 2]
    hb = get_heartbeat(conn)
    assert hb.status == "stopped"
    assert len(hb.metadata["workers"]) == 2


def test_failing_bridge_does_not_block_claimed_jobs(conn, registry, t0):
    class BadMetadata(EventTranslator):
        event_names = ("driver_applied",)

        def translate(self, event):
            raise ValueError("bad metadata")

    translators = TranslatorRegistry()
    translators.register(BadMetadata())
    with conn:
        event_id = insert_event(conn, "driver_applied", {"driver_id": 4}, now=t0)
    enqueue_job(conn, "send_email", {"email": "a@b.com"}, now=t0)

    tick = run_once(conn, registry, "w1", WorkerConfig(), translators, now=t0)

    assert tick.bridged == 0
    assert (tick.claimed, tick.done) == (1, 1)
    assert registry.calls == [{"email": "a@b.com"}]
    assert get_event(conn, event_id).queue_status == "pending"
