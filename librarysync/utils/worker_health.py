"""Helper utilities for the worker liveness heartbeat."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from librarysync.db import joined_scope, upsert
from librarysync.models import WorkerHeartbeat
from librarysync.utils.time import utcnow

HEARTBEAT_ID = "worker"
STALE_TIMEOUT_SECONDS = 30.0

STATUS_OK = "OK"
STATUS_STALE = "STALE"
STATUS_MISSING = "MISSING"


def record_worker_heartbeat(
    *, now: datetime | None = None, session: Session | None = None
) -> datetime:
    """Overwrite the single heartbeat row with ``now``."""

    timestamp = now or utcnow()
    table = WorkerHeartbeat.__table__
    with joined_scope(session) as active:
        stmt = upsert(active, table).values(id=HEARTBEAT_ID, updated_at=timestamp)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id], set_={"updated_at": timestamp}
        )
        active.execute(stmt)
    return timestamp


def read_worker_heartbeat(*, session: Session | None = None) -> datetime | None:
    with joined_scope(session) as active:
        return active.execute(
            select(WorkerHeartbeat.updated_at).where(WorkerHeartbeat.id == HEARTBEAT_ID)
        ).scalar_one_or_none()


def resolve_status(
    last_seen: datetime | None,
    *,
    now: datetime | None = None,
    stale_after: float = STALE_TIMEOUT_SECONDS,
) -> str:
    """Classify a heartbeat as ``OK``, ``STALE`` or ``MISSING``."""

    if last_seen is None:
        return STATUS_MISSING
    reference = now or utcnow()
    if (reference - last_seen).total_seconds() > stale_after:
        return STATUS_STALE
    return STATUS_OK
