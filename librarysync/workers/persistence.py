"""Persistence helpers for the durable ``jobs`` queue.

Delivery is at-least-once: a job is claimed by a single conditional
``UPDATE ... RETURNING`` so concurrent claimers can never take the same row,
and every other transition is guarded on the job's current status.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, aliased

from librarysync.db import joined_scope, session_scope
from librarysync.logging import get_logger
from librarysync.logging_events import log_event
from librarysync.models import Job, JobStatus
from librarysync.utils.time import utcnow

logger = get_logger(__name__)

OUTSTANDING_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)
DEFAULT_LEASE_SECONDS = 600.0


@dataclass(slots=True)
class JobDTO:
    id: int
    user_id: str
    type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    run_after: datetime
    created_at: datetime
    updated_at: datetime
    lease_expires_at: datetime | None = None
    retry_count: int = 0


def _to_dto(record: Job) -> JobDTO:
    return JobDTO(
        id=int(record.id),
        user_id=str(record.user_id),
        type=str(record.type),
        payload=dict(record.payload or {}),
        status=str(record.status),
        attempts=int(record.attempts or 0),
        run_after=record.run_after,
        created_at=record.created_at,
        updated_at=record.updated_at,
        lease_expires_at=record.lease_expires_at,
        retry_count=int(record.retry_count or 0),
    )


def _claimable(model: Any, timestamp: datetime) -> Any:
    return or_(
        and_(model.status == JobStatus.QUEUED.value, model.run_after <= timestamp),
        and_(
            model.status == JobStatus.RUNNING.value,
            model.lease_expires_at.is_not(None),
            model.lease_expires_at <= timestamp,
        ),
    )


def _emit_job_event(job: JobDTO, status: str, **extra: Any) -> None:
    payload: dict[str, Any] = {
        "component": "queue.persistence",
        "job_id": job.id,
        "job_type": job.type,
        "user_id": job.user_id,
        "status": status,
        "attempts": job.attempts,
    }
    payload.update({key: value for key, value in extra.items() if value is not None})
    log_event(logger, "queue.job", **payload)


def enqueue(
    user_id: str,
    job_type: str,
    payload: Mapping[str, Any] | None = None,
    *,
    run_after: datetime | None = None,
    now: datetime | None = None,
    session: Session | None = None,
) -> JobDTO:
    """Insert a new ``queued`` job and return it."""

    timestamp = now or utcnow()
    with joined_scope(session) as active:
        record = Job(
            user_id=user_id,
            type=job_type,
            payload=dict(payload or {}),
            status=JobStatus.QUEUED.value,
            attempts=0,
            retry_count=0,
            run_after=run_after or timestamp,
            created_at=timestamp,
            updated_at=timestamp,
        )
        active.add(record)
        active.flush()
        dto = _to_dto(record)
    _emit_job_event(dto, "enqueued")
    return dto


def claim(
    now: datetime | None = None, *, lease_s: float = DEFAULT_LEASE_SECONDS
) -> JobDTO | None:
    """Atomically move the oldest eligible job to ``running`` under a lease.

    Eligible means ``queued`` and due, or ``running`` with an expired lease
    (its worker stopped before reporting an outcome). The candidate lookup and
    the transition happen in one statement; the session issues nothing before
    it so SQLite can retry a busy write lock against a fresh snapshot.
    """

    timestamp = now or utcnow()
    expires_at = timestamp + timedelta(seconds=max(0.0, float(lease_s)))
    eligible = aliased(Job)
    candidate = (
        select(eligible.id)
        .where(_claimable(eligible, timestamp))
        .order_by(eligible.created_at, eligible.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(Job)
        .where(Job.id == candidate, _claimable(Job, timestamp))
        .values(
            status=JobStatus.RUNNING.value,
            attempts=Job.attempts + 1,
            lease_expires_at=expires_at,
            updated_at=timestamp,
        )
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    with session_scope() as session:
        record = session.execute(stmt).scalars().first()
        if record is None:
            return None
        dto = _to_dto(record)
    _emit_job_event(dto, "claimed", lease_expires_at=expires_at.isoformat())
    return dto


def complete(job_id: int, *, now: datetime | None = None) -> bool:
    timestamp = now or utcnow()
    with session_scope() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
            .values(status=JobStatus.DONE.value, lease_expires_at=None, updated_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


def reschedule(
    job_id: int,
    *,
    not_before: datetime,
    payload: Mapping[str, Any] | None = None,
    retry: bool = False,
    now: datetime | None = None,
) -> bool:
    """Return a running job to ``queued`` with a deferred not-before timestamp.

    ``payload`` replaces the stored payload when given (continuations); it is
    left untouched otherwise (backoff). ``retry`` counts the reschedule as one
    more consecutive failed attempt; any other reschedule resets that count.
    """

    values: dict[str, Any] = {
        "status": JobStatus.QUEUED.value,
        "run_after": not_before,
        "lease_expires_at": None,
        "retry_count": Job.retry_count + 1 if retry else 0,
        "updated_at": now or utcnow(),
    }
    if payload is not None:
        values["payload"] = dict(payload)
    with session_scope() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


def fail(job_id: int, *, reason: str, now: datetime | None = None) -> bool:
    """Mark a job ``error`` terminally, recording ``reason`` in its payload."""

    timestamp = now or utcnow()
    with session_scope() as session:
        record = session.get(Job, job_id)
        if record is None or record.status not in OUTSTANDING_STATUSES:
            return False
        annotated = dict(record.payload or {})
        annotated["error"] = reason
        record.payload = annotated
        record.status = JobStatus.ERROR.value
        record.lease_expires_at = None
        record.updated_at = timestamp
        dto = _to_dto(record)
    _emit_job_event(dto, "failed")
    return True


def supersede(
    job_ids: Iterable[int],
    *,
    annotation: Mapping[str, Any],
    now: datetime | None = None,
    session: Session | None = None,
) -> int:
    """Retire still-queued jobs as ``done`` with ``annotation`` merged into the payload."""

    timestamp = now or utcnow()
    retired = 0
    with joined_scope(session) as active:
        for job_id in job_ids:
            record = active.get(Job, job_id)
            if record is None or record.status != JobStatus.QUEUED.value:
                continue
            payload = dict(record.payload or {})
            payload.update(annotation)
            record.payload = payload
            record.status = JobStatus.DONE.value
            record.updated_at = timestamp
            retired += 1
        active.flush()
    return retired


def list_outstanding(
    user_id: str,
    job_types: Iterable[str],
    *,
    session: Session | None = None,
) -> list[JobDTO]:
    types = list(job_types)
    with joined_scope(session) as active:
        records = (
            active.execute(
                select(Job)
                .where(
                    Job.user_id == user_id,
                    Job.type.in_(types),
                    Job.status.in_(OUTSTANDING_STATUSES),
                )
                .order_by(Job.created_at, Job.id)
            )
            .scalars()
            .all()
        )
        return [_to_dto(record) for record in records]


def has_outstanding(
    user_id: str,
    job_types: Iterable[str],
    *,
    session: Session | None = None,
) -> bool:
    types = list(job_types)
    with joined_scope(session) as active:
        found = active.execute(
            select(Job.id)
            .where(
                Job.user_id == user_id,
                Job.type.in_(types),
                Job.status.in_(OUTSTANDING_STATUSES),
            )
            .limit(1)
        ).first()
        return found is not None


def get_job(job_id: int) -> JobDTO | None:
    with session_scope() as session:
        record = session.get(Job, job_id)
        return _to_dto(record) if record is not None else None


def list_jobs(user_id: str, *, limit: int = 50) -> list[JobDTO]:
    with session_scope() as session:
        records = (
            session.execute(
                select(Job)
                .where(Job.user_id == user_id)
                .order_by(Job.created_at.desc(), Job.id.desc())
                .limit(max(1, int(limit)))
            )
            .scalars()
            .all()
        )
        return [_to_dto(record) for record in records]


async def claim_async(
    now: datetime | None = None, *, lease_s: float = DEFAULT_LEASE_SECONDS
) -> JobDTO | None:
    return await asyncio.to_thread(claim, now, lease_s=lease_s)


async def complete_async(job_id: int, *, now: datetime | None = None) -> bool:
    return await asyncio.to_thread(complete, job_id, now=now)


async def reschedule_async(
    job_id: int,
    *,
    not_before: datetime,
    payload: Mapping[str, Any] | None = None,
    retry: bool = False,
    now: datetime | None = None,
) -> bool:
    return await asyncio.to_thread(
        reschedule, job_id, not_before=not_before, payload=payload, retry=retry, now=now
    )


async def fail_async(job_id: int, *, reason: str, now: datetime | None = None) -> bool:
    return await asyncio.to_thread(fail, job_id, reason=reason, now=now)


__all__ = [
    "JobDTO",
    "DEFAULT_LEASE_SECONDS",
    "OUTSTANDING_STATUSES",
    "claim",
    "claim_async",
    "complete",
    "complete_async",
    "enqueue",
    "fail",
    "fail_async",
    "get_job",
    "has_outstanding",
    "list_jobs",
    "list_outstanding",
    "reschedule",
    "reschedule_async",
    "supersede",
]
