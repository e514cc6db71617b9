"""Collaborator interface: enqueue sync work and read job/state/heartbeat views."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from librarysync.db import joined_scope, session_scope
from librarysync.models import OAuthToken, User
from librarysync.schemas.jobs import (
    JobType,
    dump_payload,
    parse_job_type,
    parse_payload,
    resource_key,
)
from librarysync.services.sync_state import SyncStateTracker
from librarysync.utils import worker_health
from librarysync.utils.time import utcnow
from librarysync.workers import persistence
from librarysync.workers.persistence import JobDTO


def enqueue_sync(
    user_id: str,
    job_type: str | JobType,
    payload: Mapping[str, Any] | None = None,
    *,
    tracker: SyncStateTracker | None = None,
    now: datetime | None = None,
    session: Session | None = None,
) -> int:
    """Validate ``payload``, insert the job and flag its resource ``queued``.

    Both rows are written in one transaction so the status view reflects the
    pending work as soon as the job exists.
    """

    resolved_type = parse_job_type(job_type)
    typed = parse_payload(resolved_type, payload)
    state_tracker = tracker or SyncStateTracker()
    with joined_scope(session) as active:
        job = persistence.enqueue(
            user_id, resolved_type.value, dump_payload(typed), now=now, session=active
        )
        state_tracker.mark_queued(user_id, resource_key(resolved_type, typed), session=active)
        return job.id


def enqueue_if_absent(
    user_id: str,
    job_type: JobType,
    payload: Mapping[str, Any] | None = None,
    *,
    also_blocked_by: tuple[JobType, ...] = (),
    tracker: SyncStateTracker | None = None,
    now: datetime | None = None,
    session: Session | None = None,
) -> int | None:
    """Enqueue unless an outstanding job of the same (or a blocking) type exists."""

    blocking = [job_type.value, *(extra.value for extra in also_blocked_by)]
    with joined_scope(session) as active:
        if persistence.has_outstanding(user_id, blocking, session=active):
            return None
        return enqueue_sync(
            user_id, job_type, payload, tracker=tracker, now=now, session=active
        )


def list_sync_users(*, session: Session | None = None) -> list[str]:
    """Users with a stored credential that have not been deleted."""

    with joined_scope(session) as active:
        return list(
            active.execute(
                select(User.id)
                .join(OAuthToken, OAuthToken.user_id == User.id)
                .where(User.deleted_at.is_(None))
                .order_by(User.id)
            ).scalars()
        )


def list_jobs(user_id: str, *, limit: int = 50) -> list[JobDTO]:
    return persistence.list_jobs(user_id, limit=limit)


def get_sync_states(user_id: str) -> list[dict[str, Any]]:
    tracker = SyncStateTracker()
    with session_scope() as session:
        return [asdict(state) for state in tracker.list_for_user(user_id, session=session)]


def get_worker_health(
    *, now: datetime | None = None, stale_after_s: float = worker_health.STALE_TIMEOUT_SECONDS
) -> dict[str, Any]:
    last_seen = worker_health.read_worker_heartbeat()
    return {
        "status": worker_health.resolve_status(
            last_seen, now=now or utcnow(), stale_after=stale_after_s
        ),
        "last_heartbeat": last_seen.isoformat() if last_seen else None,
        "stale_after_ms": int(stale_after_s * 1000),
    }


__all__ = [
    "enqueue_if_absent",
    "enqueue_sync",
    "get_sync_states",
    "get_worker_health",
    "list_jobs",
    "list_sync_users",
]
