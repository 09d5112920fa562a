"""
Outbox bridge.

Moves committed outbox events into the job queue. One invocation handles one batch
inside a single BEGIN IMMEDIATE transaction:

1. select the oldest pending events
2. mark them queued
3. translate each event into at most one job and insert it

Each job carries source_event_id = event id under a UNIQUE constraint, so running the
bridge again (or from several workers at once) never creates a second job for the
same event.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional

import structlog

from .db import write_transaction
from .models import EVENT_KEY_PREFIX, JobSpec, OutboxEvent
from .repository import (
    get_job_for_event, insert_job, is_unique_violation, mark_events_queued, select_pending_events,
)
from .utils import now_iso

logger = structlog.get_logger(__name__)

DEFAULT_BRIDGE_BATCH = 50
BRIDGED_MAX_ATTEMPTS = 5


def idempotency_key_for(event_id: int) -> str:
    return f"{EVENT_KEY_PREFIX}{event_id}"


class EventTranslator:
    """Turns an outbox event into a job spec, or None to leave it unexecuted."""

    event_names: Iterable[str] = ()

    def translate(self, event: OutboxEvent) -> Optional[JobSpec]:
        raise NotImplementedError


class EmailTranslator(EventTranslator):
    event_names = ("verification_email", "recovery_email")

    def translate(self, event: OutboxEvent) -> Optional[JobSpec]:
        payload = dict(event.metadata)
        payload["event_name"] = event.event_name
        payload["email"] = event.metadata.get("email")
        return JobSpec("send_email", payload, BRIDGED_MAX_ATTEMPTS)


class RealtimeTranslator(EventTranslator):
    event_names = (
        "rating_created",
        "invoice_paid",
        "driver_applied",
        "request_created",
        "match_confirmed",
        "request_cancelled",
    )

    def translate(self, event: OutboxEvent) -> Optional[JobSpec]:
        return JobSpec(
            "realtime_push",
            {
                "event_id": event.id,
                "event_key": event.event_key or event.event_name,
                "audience_type": event.audience_type,
                "audience_id": event.audience_id,
                "data": event.metadata,
            },
            BRIDGED_MAX_ATTEMPTS,
        )


class TranslatorRegistry:
    def __init__(self):
        self._by_name: Dict[str, EventTranslator] = {}

    def register(self, translator: EventTranslator) -> EventTranslator:
        for name in translator.event_names:
            if name in self._by_name:
                raise ValueError(f"Event {name!r} already has a translator")
            self._by_name[name] = translator
        return translator

    def translate(self, event: OutboxEvent) -> Optional[JobSpec]:
        translator = self._by_name.get(event.event_name)
        if translator is None:
            return None
        return translator.translate(event)

    def event_names(self):
        return sorted(self._by_name)


def default_translators() -> TranslatorRegistry:
    registry = TranslatorRegistry()
    registry.register(EmailTranslator())
    registry.register(RealtimeTranslator())
    return registry


@dataclass
class BridgeResult:
    selected: int = 0
    created: int = 0
    duplicates: int = 0
    dropped: int = 0


def bridge_outbox(
    conn: sqlite3.Connection,
    registry: Optional[TranslatorRegistry] = None,
    batch_size: int = DEFAULT_BRIDGE_BATCH,
    now: Optional[datetime] = None,
) -> BridgeResult:
    """
    Bridge one batch of pending outbox events into jobs.

    Any error other than finding the event already bridged rolls the whole batch back;
    the events stay pending for the next pass.
    """
    registry = registry or default_translators()
    result = BridgeResult()
    ts = now_iso(now)

    with write_transaction(conn):
        events = select_pending_events(conn, batch_size)
        if not events:
            return result
        result.selected = len(events)

        # Marked before translation; a crash before commit leaves them pending.
        mark_events_queued(conn, [e.id for e in events], now=now)

        for event in events:
            spec = registry.translate(event)
            if spec is None:
                result.dropped += 1
                logger.debug("outbox event has no job mapping", event_id=event.id,
                             event_name=event.event_name)
                continue
            try:
                insert_job(
                    conn,
                    job_type=spec.job_type,
                    payload=spec.payload,
                    run_at=ts,
                    max_attempts=spec.max_attempts,
                    idempotency_key=idempotency_key_for(event.id),
                    source_event_id=event.id,
                    now=now,
                )
                result.created += 1
            except sqlite3.IntegrityError as e:
                # only a job already carrying this event means it was bridged before;
                # any other key collision would lose the event
                if not is_unique_violation(e) or get_job_for_event(conn, event.id) is None:
                    raise
                result.duplicates += 1
                logger.warning("duplicate bridge attempt", event_id=event.id,
                               event_name=event.event_name)

    logger.info("bridged outbox batch", selected=result.selected, created=result.created,
                duplicates=result.duplicates, dropped=result.dropped)
    return result
