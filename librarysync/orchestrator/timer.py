"""Periodic seeding of recurring sync jobs."""

from __future__ import annotations

import asyncio

from librarysync.logging import get_logger
from librarysync.orchestrator import events as orchestrator_events
from librarysync.orchestrator.context import SyncContext
from librarysync.schemas.jobs import JobType, PlaylistsPayload, TracksPayload, dump_payload
from librarysync.services.sync_service import enqueue_if_absent, list_sync_users


class RecurringSyncTimer:
    """Ensures every user with a credential has one incremental-tracks and one
    playlists job outstanding."""

    def __init__(self, context: SyncContext) -> None:
        self._ctx = context
        self._logger = get_logger(__name__)

    async def trigger(self) -> list[int]:
        return await asyncio.to_thread(self._seed_all)

    def _seed_all(self) -> list[int]:
        config = self._ctx.config
        now = self._ctx.clock()
        tracks_payload = dump_payload(
            TracksPayload(
                offset=0, limit=config.page_limit, max_pages_per_run=config.max_pages_per_run
            )
        )
        playlists_payload = dump_payload(
            PlaylistsPayload(
                offset=0, limit=config.page_limit, max_pages_per_run=config.max_pages_per_run
            )
        )
        seeded: list[int] = []
        for user_id in list_sync_users():
            for job_type, payload, blockers in (
                (JobType.TRACKS_INCREMENTAL, tracks_payload, (JobType.TRACKS_INITIAL,)),
                (JobType.PLAYLISTS, playlists_payload, ()),
            ):
                job_id = enqueue_if_absent(
                    user_id,
                    job_type,
                    payload,
                    also_blocked_by=blockers,
                    tracker=self._ctx.tracker,
                    now=now,
                )
                if job_id is None:
                    continue
                seeded.append(job_id)
                orchestrator_events.emit_seed_event(
                    self._logger, user_id=user_id, job_type=job_type.value, job_id=job_id
                )
        return seeded


__all__ = ["RecurringSyncTimer"]
