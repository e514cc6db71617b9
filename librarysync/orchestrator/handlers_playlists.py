"""Playlist list and playlist membership sync algorithms."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from urllib.parse import quote
from uuid import uuid4

from librarysync.logging import get_logger
from librarysync.logging_events import log_event
from librarysync.orchestrator.context import SyncContext
from librarysync.orchestrator.handlers import SyncOutcome, fetch_json, in_transaction, page_items
from librarysync.schemas.jobs import (
    JobType,
    PlaylistItemsPayload,
    PlaylistsPayload,
    dump_payload,
    resource_key,
)
from librarysync.services.catalog_store import (
    PlaylistRecord,
    parse_playlist_items,
    parse_playlists,
)
from librarysync.workers.persistence import JobDTO

logger = get_logger(__name__)

_LOG_COMPONENT = "sync.playlists"
PLAYLISTS_RESOURCE = "playlists"
PLAYLISTS_PATH = "/me/playlists"


def playlist_items_path(playlist_id: str) -> str:
    return f"/playlists/{quote(playlist_id, safe='')}/tracks"


def _schedule_item_syncs(
    ctx: SyncContext,
    session: Any,
    user_id: str,
    playlists: Sequence[PlaylistRecord],
    *,
    now: datetime,
) -> int:
    """Queue an items run for every playlist whose snapshot moved.

    A queued run for an older snapshot of the same playlist is retired with a
    ``supersededBy`` note; a run already outstanding for the current snapshot
    is left alone.
    """

    reconciled = ctx.store.reconciled_snapshots(session, [p.id for p in playlists])
    outstanding = ctx.queue.list_outstanding(
        user_id, [JobType.PLAYLIST_ITEMS.value], session=session
    )
    scheduled = 0
    for playlist in playlists:
        if playlist.id in reconciled and reconciled[playlist.id] == playlist.snapshot_id:
            continue
        pending = [job for job in outstanding if job.payload.get("playlistId") == playlist.id]
        if any(job.payload.get("snapshotId") == playlist.snapshot_id for job in pending):
            continue
        stale = [job.id for job in pending if job.status == "queued"]
        if stale:
            ctx.queue.supersede(
                stale,
                annotation={"supersededBy": playlist.snapshot_id},
                now=now,
                session=session,
            )
        payload = PlaylistItemsPayload(
            playlist_id=playlist.id,
            snapshot_id=playlist.snapshot_id,
            offset=0,
            limit=ctx.config.playlist_items_page_limit,
            max_pages_per_run=ctx.config.max_pages_per_run,
            run_id=uuid4().hex,
        )
        ctx.queue.enqueue(
            user_id,
            JobType.PLAYLIST_ITEMS.value,
            dump_payload(payload),
            now=now,
            session=session,
        )
        ctx.tracker.mark_queued(
            user_id, resource_key(JobType.PLAYLIST_ITEMS, payload), session=session
        )
        scheduled += 1
    return scheduled


async def sync_playlists(
    job: JobDTO, payload: PlaylistsPayload, ctx: SyncContext
) -> SyncOutcome:
    user_id = job.user_id
    offset = payload.offset
    limit = payload.limit
    written = 0
    scheduled = 0
    pages = 0
    while pages < payload.max_pages_per_run:
        data = await fetch_json(ctx, user_id, PLAYLISTS_PATH, {"offset": offset, "limit": limit})
        items = page_items(data)
        if not items:
            await in_transaction(
                lambda session: ctx.tracker.mark_idle(
                    user_id, PLAYLISTS_RESOURCE, offset=offset, limit=limit, session=session
                )
            )
            log_event(
                logger,
                "sync.playlists_complete",
                component=_LOG_COMPONENT,
                user_id=user_id,
                written=written,
                items_jobs=scheduled,
            )
            return SyncOutcome.finished(written=written, offset=offset)

        records = parse_playlists(items)
        next_offset = offset + len(items)
        now = ctx.clock()

        def _work(session: Any) -> tuple[int, int]:
            count = ctx.store.upsert_playlists(session, user_id, records, now=now)
            queued = _schedule_item_syncs(ctx, session, user_id, records, now=now)
            ctx.tracker.mark_progress(
                user_id, PLAYLISTS_RESOURCE, offset=next_offset, limit=limit, session=session
            )
            return count, queued

        count, queued = await in_transaction(_work)
        written += count
        scheduled += queued
        offset = next_offset
        pages += 1

    return SyncOutcome.resume(
        payload.model_copy(update={"offset": offset}), written=written, offset=offset
    )


async def sync_playlist_items(
    job: JobDTO, payload: PlaylistItemsPayload, ctx: SyncContext
) -> SyncOutcome:
    """Rescan one playlist under ``run_id``; the final empty page prunes older runs."""

    user_id = job.user_id
    playlist_id = payload.playlist_id
    resource = resource_key(JobType.PLAYLIST_ITEMS, payload)
    offset = payload.offset
    limit = payload.limit
    written = 0
    pages = 0
    while pages < payload.max_pages_per_run:
        data = await fetch_json(
            ctx, user_id, playlist_items_path(playlist_id), {"offset": offset, "limit": limit}
        )
        items = page_items(data)
        now = ctx.clock()
        if not items:
            def _finish(session: Any) -> int:
                removed = ctx.store.prune_playlist_items(session, playlist_id, payload.run_id)
                ctx.store.mark_playlist_reconciled(
                    session, playlist_id, payload.snapshot_id, now=now
                )
                ctx.tracker.mark_idle(
                    user_id, resource, offset=offset, limit=limit, session=session
                )
                return removed

            removed = await in_transaction(_finish)
            log_event(
                logger,
                "sync.playlist_items_reconciled",
                component=_LOG_COMPONENT,
                user_id=user_id,
                playlist_id=playlist_id,
                run_id=payload.run_id,
                removed=removed,
            )
            return SyncOutcome.finished(written=written, offset=offset)

        records = parse_playlist_items(
            items, playlist_id=playlist_id, snapshot_id=payload.snapshot_id, offset=offset
        )
        next_offset = offset + len(items)

        def _work(session: Any) -> int:
            count = ctx.store.upsert_playlist_items(
                session,
                records,
                snapshot_id=payload.snapshot_id,
                run_id=payload.run_id,
                now=now,
            )
            ctx.tracker.mark_progress(
                user_id, resource, offset=next_offset, limit=limit, session=session
            )
            return count

        written += await in_transaction(_work)
        offset = next_offset
        pages += 1

    return SyncOutcome.resume(
        payload.model_copy(update={"offset": offset}), written=written, offset=offset
    )


__all__ = ["playlist_items_path", "sync_playlist_items", "sync_playlists"]
