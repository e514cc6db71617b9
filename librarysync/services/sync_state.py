"""Per (user, resource) progress and health records."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from librarysync.db import joined_scope, upsert
from librarysync.errors import sanitize_error_message
from librarysync.models import SyncState, SyncStatus
from librarysync.utils.time import utcnow

_MIN_BACKOFF = timedelta(seconds=1)


@dataclass(slots=True, frozen=True)
class SyncStateDTO:
    user_id: str
    resource: str
    status: str
    cursor_offset: int | None
    cursor_limit: int | None
    cursor_key: str | None
    last_successful_at: datetime | None
    retry_after_at: datetime | None
    failure_count: int
    last_error_code: str | None
    updated_at: datetime


def _to_dto(record: SyncState) -> SyncStateDTO:
    return SyncStateDTO(
        user_id=record.user_id,
        resource=record.resource,
        status=record.status,
        cursor_offset=record.cursor_offset,
        cursor_limit=record.cursor_limit,
        cursor_key=record.cursor_key,
        last_successful_at=record.last_successful_at,
        retry_after_at=record.retry_after_at,
        failure_count=int(record.failure_count or 0),
        last_error_code=record.last_error_code,
        updated_at=record.updated_at,
    )


class SyncStateTracker:
    """Writes SyncState rows with last-writer-wins upserts.

    Every mutator accepts an optional ``session`` so progress can be committed
    in the same transaction as the page it describes.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def _write(
        self,
        user_id: str,
        resource: str,
        values: dict[str, Any],
        *,
        session: Session | None,
        increment_failures: bool = False,
    ) -> None:
        table = SyncState.__table__
        now = self._clock()
        values = {**values, "updated_at": now}
        with joined_scope(session) as active:
            insert_values = {
                "user_id": user_id,
                "resource": resource,
                "failure_count": 1 if increment_failures else 0,
                **values,
            }
            update_values = dict(values)
            if increment_failures:
                update_values["failure_count"] = table.c.failure_count + 1
            stmt = upsert(active, table).values(**insert_values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.user_id, table.c.resource],
                set_=update_values,
            )
            active.execute(stmt)

    def mark_queued(self, user_id: str, resource: str, *, session: Session | None = None) -> None:
        self._write(
            user_id,
            resource,
            {"status": SyncStatus.QUEUED.value, "retry_after_at": None, "last_error_code": None},
            session=session,
        )

    def mark_running(self, user_id: str, resource: str, *, session: Session | None = None) -> None:
        self._write(
            user_id,
            resource,
            {"status": SyncStatus.RUNNING.value, "retry_after_at": None},
            session=session,
        )

    def mark_progress(
        self,
        user_id: str,
        resource: str,
        *,
        offset: int | None = None,
        limit: int | None = None,
        key: str | None = None,
        session: Session | None = None,
    ) -> None:
        self._write(
            user_id,
            resource,
            self._success_values(SyncStatus.RUNNING, offset=offset, limit=limit, key=key),
            session=session,
        )

    def mark_idle(
        self,
        user_id: str,
        resource: str,
        *,
        offset: int | None = None,
        limit: int | None = None,
        key: str | None = None,
        session: Session | None = None,
    ) -> None:
        self._write(
            user_id,
            resource,
            self._success_values(SyncStatus.IDLE, offset=offset, limit=limit, key=key),
            session=session,
        )

    def mark_error(
        self, user_id: str, resource: str, code: str, *, session: Session | None = None
    ) -> None:
        self._write(
            user_id,
            resource,
            {
                "status": SyncStatus.ERROR.value,
                "retry_after_at": None,
                "last_error_code": sanitize_error_message(code),
            },
            session=session,
            increment_failures=True,
        )

    def mark_backoff(
        self,
        user_id: str,
        resource: str,
        retry_at: datetime,
        code: str,
        *,
        session: Session | None = None,
    ) -> datetime:
        """Record a deferred retry; ``retry_at`` is pushed into the future if needed."""

        earliest = self._clock() + _MIN_BACKOFF
        effective = max(retry_at, earliest)
        self._write(
            user_id,
            resource,
            {
                "status": SyncStatus.BACKOFF.value,
                "retry_after_at": effective,
                "last_error_code": sanitize_error_message(code),
            },
            session=session,
            increment_failures=True,
        )
        return effective

    def _success_values(
        self,
        status: SyncStatus,
        *,
        offset: int | None,
        limit: int | None,
        key: str | None,
    ) -> dict[str, Any]:
        return {
            "status": status.value,
            "cursor_offset": offset,
            "cursor_limit": limit,
            "cursor_key": key,
            "last_successful_at": self._clock(),
            "retry_after_at": None,
            "failure_count": 0,
            "last_error_code": None,
        }

    def get(
        self, user_id: str, resource: str, *, session: Session | None = None
    ) -> SyncStateDTO | None:
        with joined_scope(session) as active:
            record = active.get(SyncState, (user_id, resource))
            return _to_dto(record) if record is not None else None

    def list_for_user(
        self, user_id: str, *, session: Session | None = None
    ) -> list[SyncStateDTO]:
        with joined_scope(session) as active:
            records = (
                active.execute(
                    select(SyncState)
                    .where(SyncState.user_id == user_id)
                    .order_by(SyncState.resource)
                )
                .scalars()
                .all()
            )
            return [_to_dto(record) for record in records]

    async def mark_running_async(self, user_id: str, resource: str) -> None:
        await asyncio.to_thread(self.mark_running, user_id, resource)

    async def mark_queued_async(self, user_id: str, resource: str) -> None:
        await asyncio.to_thread(self.mark_queued, user_id, resource)

    async def get_async(self, user_id: str, resource: str) -> SyncStateDTO | None:
        return await asyncio.to_thread(self.get, user_id, resource)


__all__ = ["SyncStateDTO", "SyncStateTracker"]
