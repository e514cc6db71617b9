"""Sync algorithms for the user's saved tracks, plus the shared page helpers.

Every algorithm follows the same loop: fetch a page at the cursor, stop with
``done`` on an empty page, otherwise write the page in one transaction
(together with the SyncState progress row), advance the cursor and return a
continuation once the page budget is spent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from librarysync.db import session_scope
from librarysync.errors import RetryableError, UnauthorizedError
from librarysync.logging import get_logger
from librarysync.logging_events import log_event
from librarysync.orchestrator.context import SyncContext
from librarysync.schemas.jobs import JobPayload, JobType, TracksPayload
from librarysync.services.catalog_store import SavedTrackEntry, parse_saved_tracks
from librarysync.utils.time import from_epoch_ms, to_epoch_ms
from librarysync.workers.persistence import JobDTO

logger = get_logger(__name__)

_LOG_COMPONENT = "sync.tracks"
TRACKS_RESOURCE = "tracks"
SAVED_TRACKS_PATH = "/me/tracks"


@dataclass(slots=True, frozen=True)
class SyncOutcome:
    """Result of one algorithm invocation.

    ``next_payload`` is set only for continuations and replaces the job's
    stored payload when it is requeued.
    """

    done: bool
    written: int = 0
    next_payload: JobPayload | None = None
    next_offset: int | None = None
    next_cursor: str | None = None

    @classmethod
    def finished(
        cls, *, written: int, offset: int | None = None, cursor: str | None = None
    ) -> SyncOutcome:
        return cls(done=True, written=written, next_offset=offset, next_cursor=cursor)

    @classmethod
    def resume(
        cls,
        payload: JobPayload,
        *,
        written: int,
        offset: int | None = None,
        cursor: str | None = None,
    ) -> SyncOutcome:
        return cls(
            done=False,
            written=written,
            next_payload=payload,
            next_offset=offset,
            next_cursor=cursor,
        )


JobHandler = Callable[[JobDTO, Any, SyncContext], Awaitable[SyncOutcome]]


async def fetch_json(
    ctx: SyncContext,
    user_id: str,
    path: str,
    params: Mapping[str, Any] | None = None,
) -> Mapping[str, Any]:
    """GET with the user's access credential, refreshing it once on a 401."""

    token = await ctx.tokens.get_access_token(user_id)
    try:
        payload = await ctx.client.get_json(path, access_token=token, params=params)
    except UnauthorizedError:
        ctx.tokens.invalidate(user_id)
        token = await ctx.tokens.get_access_token(user_id)
        payload = await ctx.client.get_json(path, access_token=token, params=params)
    if not isinstance(payload, Mapping):
        raise RetryableError(f"unexpected payload from {path}")
    return payload


def page_items(payload: Mapping[str, Any]) -> list[Any]:
    items = payload.get("items")
    return list(items) if isinstance(items, list) else []


async def in_transaction(work: Callable[[Any], Any]) -> Any:
    """Run ``work(session)`` inside one committed transaction on a worker thread."""

    def _run() -> Any:
        with session_scope() as session:
            return work(session)

    return await asyncio.to_thread(_run)


async def backfill_covers(
    ctx: SyncContext,
    candidates: Sequence[tuple[str, str]],
    *,
    progress: Callable[[Any], None] | None = None,
) -> int:
    """Fetch and cache images for ``(track_id, url)`` pairs; failures are skipped.

    ``progress`` runs in the transaction that stores the images.
    """

    if not candidates and progress is None:
        return 0

    async def _fetch(track_id: str, url: str) -> tuple[str, str, Any]:
        try:
            return track_id, url, await ctx.client.get_image(url)
        except Exception as exc:
            log_event(
                logger,
                "sync.cover_skipped",
                component="sync.covers",
                track_id=track_id,
                error=type(exc).__name__,
            )
            return track_id, url, None

    results = await asyncio.gather(*(_fetch(track_id, url) for track_id, url in candidates))
    fetched = [result for result in results if result[2] is not None]
    if not fetched and progress is None:
        return 0
    now = ctx.clock()

    def _store(session: Any) -> int:
        stored = 0
        for track_id, url, image in fetched:
            stored += ctx.store.store_cover(
                session,
                track_id,
                url=url,
                data=image.data,
                mime=image.content_type,
                now=now,
            )
        if progress is not None:
            progress(session)
        return stored

    return await in_transaction(_store)


def _write_saved_page(
    ctx: SyncContext,
    user_id: str,
    entries: Sequence[SavedTrackEntry],
    *,
    now: datetime,
    next_offset: int,
    limit: int,
) -> Callable[[Any], int]:
    def _work(session: Any) -> int:
        written = ctx.store.upsert_saved_tracks(session, user_id, entries, now=now)
        ctx.tracker.mark_progress(
            user_id, TRACKS_RESOURCE, offset=next_offset, limit=limit, session=session
        )
        return written

    return _work


async def _mark_tracks_idle(ctx: SyncContext, user_id: str, offset: int, limit: int) -> None:
    await asyncio.to_thread(
        ctx.tracker.mark_idle, user_id, TRACKS_RESOURCE, offset=offset, limit=limit
    )


async def _backfill_page_covers(ctx: SyncContext, track_ids: Sequence[str]) -> None:
    candidates = await in_transaction(
        lambda session: ctx.store.tracks_missing_cover(session, track_ids)
    )
    await backfill_covers(ctx, candidates)


async def sync_tracks_initial(
    job: JobDTO, payload: TracksPayload, ctx: SyncContext
) -> SyncOutcome:
    """Walk the full saved-tracks list by offset until an empty page."""

    user_id = job.user_id
    offset = payload.offset or 0
    limit = payload.limit
    written = 0
    pages = 0
    while pages < payload.max_pages_per_run:
        data = await fetch_json(
            ctx, user_id, SAVED_TRACKS_PATH, {"offset": offset, "limit": limit}
        )
        items = page_items(data)
        if not items:
            await _mark_tracks_idle(ctx, user_id, offset, limit)
            return SyncOutcome.finished(written=written, offset=offset)

        entries = parse_saved_tracks(items)
        next_offset = offset + len(items)
        written += await in_transaction(
            _write_saved_page(
                ctx, user_id, entries, now=ctx.clock(), next_offset=next_offset, limit=limit
            )
        )
        offset = next_offset
        pages += 1
        await _backfill_page_covers(ctx, [entry.track.id for entry in entries])

    return SyncOutcome.resume(
        payload.model_copy(update={"offset": offset}), written=written, offset=offset
    )


async def sync_tracks_incremental(
    job: JobDTO, payload: TracksPayload, ctx: SyncContext
) -> SyncOutcome:
    """Fetch newest-first pages until a page brings nothing newer than the watermark.

    The watermark is the newest known ``added_at`` when the run started; it is
    carried in the payload so continuations compare against the same value.
    A page with no entry newer than it counts as overlap and ends the run even
    if the upstream has more pages. An entry without ``added_at`` is stored as
    saved now, so it counts as new.  Entries that the upstream reorders behind
    an overlap page are picked up only by a later initial sync.
    """

    user_id = job.user_id
    offset = payload.offset or 0
    limit = payload.limit
    if payload.watermark_ms is not None:
        watermark: datetime | None = from_epoch_ms(payload.watermark_ms)
    else:
        watermark = await in_transaction(
            lambda session: ctx.store.newest_saved_added_at(session, user_id)
        )

    written = 0
    pages = 0
    while pages < payload.max_pages_per_run:
        data = await fetch_json(
            ctx, user_id, SAVED_TRACKS_PATH, {"offset": offset, "limit": limit}
        )
        items = page_items(data)
        if not items:
            await _mark_tracks_idle(ctx, user_id, offset, limit)
            return SyncOutcome.finished(written=written, offset=offset)

        entries = parse_saved_tracks(items)
        fresh = [
            entry
            for entry in entries
            if watermark is None or entry.added_at is None or entry.added_at > watermark
        ]
        next_offset = offset + len(items)
        written += await in_transaction(
            _write_saved_page(
                ctx, user_id, entries, now=ctx.clock(), next_offset=next_offset, limit=limit
            )
        )
        offset = next_offset
        pages += 1
        await _backfill_page_covers(ctx, [entry.track.id for entry in fresh])

        if watermark is not None and not fresh:
            log_event(
                logger,
                "sync.incremental_overlap",
                component=_LOG_COMPONENT,
                user_id=user_id,
                offset=offset,
                pages=pages,
            )
            await _mark_tracks_idle(ctx, user_id, offset, limit)
            return SyncOutcome.finished(written=written, offset=offset)

    update: dict[str, Any] = {"offset": offset}
    if watermark is not None:
        update["watermark_ms"] = to_epoch_ms(watermark)
    return SyncOutcome.resume(payload.model_copy(update=update), written=written, offset=offset)


def default_handlers() -> dict[JobType, JobHandler]:
    from librarysync.orchestrator.handlers_backfill import sync_covers, sync_track_metadata
    from librarysync.orchestrator.handlers_playlists import (
        sync_playlist_items,
        sync_playlists,
    )

    return {
        JobType.TRACKS_INITIAL: sync_tracks_initial,
        JobType.TRACKS_INCREMENTAL: sync_tracks_incremental,
        JobType.PLAYLISTS: sync_playlists,
        JobType.PLAYLIST_ITEMS: sync_playlist_items,
        JobType.TRACK_METADATA: sync_track_metadata,
        JobType.COVERS: sync_covers,
    }


__all__ = [
    "JobHandler",
    "SyncOutcome",
    "backfill_covers",
    "default_handlers",
    "fetch_json",
    "in_transaction",
    "page_items",
    "sync_tracks_incremental",
    "sync_tracks_initial",
]
