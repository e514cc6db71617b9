"""Cursor-driven enrichment: track metadata and cover images."""

from __future__ import annotations

from typing import Any

from librarysync.orchestrator.context import SyncContext
from librarysync.orchestrator.handlers import (
    SyncOutcome,
    backfill_covers,
    fetch_json,
    in_transaction,
)
from librarysync.schemas.jobs import BackfillPayload
from librarysync.services.catalog_store import parse_track
from librarysync.workers.persistence import JobDTO

METADATA_RESOURCE = "track_metadata"
COVERS_RESOURCE = "covers"
ARTIST_LOOKUP_LIMIT = 50


def _chunks(values: list[str], size: int) -> list[list[str]]:
    return [values[index : index + size] for index in range(0, len(values), size)]


async def sync_track_metadata(
    job: JobDTO, payload: BackfillPayload, ctx: SyncContext
) -> SyncOutcome:
    """Look up tracks lacking album data, and their artists lacking genres."""

    user_id = job.user_id
    cursor = payload.cursor
    limit = payload.limit
    written = 0
    batches = 0
    while batches < payload.max_batches:
        after = cursor
        track_ids: list[str] = await in_transaction(
            lambda session: ctx.store.metadata_candidates(
                session, user_id, after=after, limit=limit
            )
        )
        if not track_ids:
            await in_transaction(
                lambda session: ctx.tracker.mark_idle(
                    user_id, METADATA_RESOURCE, key=cursor, limit=limit, session=session
                )
            )
            return SyncOutcome.finished(written=written, cursor=cursor)

        data = await fetch_json(ctx, user_id, "/tracks", {"ids": ",".join(track_ids)})
        tracks = [
            track
            for track in (parse_track(raw) for raw in data.get("tracks") or [])
            if track is not None
        ]
        artist_ids = sorted({artist.id for track in tracks for artist in track.artists})

        lookup: list[str] = await in_transaction(
            lambda session: ctx.store.artists_missing_details(session, artist_ids)
        )
        artists: list[Any] = []
        for chunk in _chunks(lookup, ARTIST_LOOKUP_LIMIT):
            response = await fetch_json(ctx, user_id, "/artists", {"ids": ",".join(chunk)})
            artists.extend(item for item in response.get("artists") or [] if item)

        next_cursor = track_ids[-1]
        now = ctx.clock()

        def _work(session: Any) -> int:
            count = ctx.store.upsert_tracks(session, tracks, now=now)
            ctx.store.update_artist_details(session, artists, now=now)
            ctx.tracker.mark_progress(
                user_id, METADATA_RESOURCE, key=next_cursor, limit=limit, session=session
            )
            return count

        written += await in_transaction(_work)
        cursor = next_cursor
        batches += 1

    return SyncOutcome.resume(
        payload.model_copy(update={"cursor": cursor}), written=written, cursor=cursor
    )


async def sync_covers(job: JobDTO, payload: BackfillPayload, ctx: SyncContext) -> SyncOutcome:
    """Cache image bytes for tracks that have an image URL but no stored image."""

    user_id = job.user_id
    cursor = payload.cursor
    limit = payload.limit
    written = 0
    batches = 0
    while batches < payload.max_batches:
        after = cursor
        candidates: list[tuple[str, str]] = await in_transaction(
            lambda session: ctx.store.cover_candidates(session, user_id, after=after, limit=limit)
        )
        if not candidates:
            await in_transaction(
                lambda session: ctx.tracker.mark_idle(
                    user_id, COVERS_RESOURCE, key=cursor, limit=limit, session=session
                )
            )
            return SyncOutcome.finished(written=written, cursor=cursor)

        progress_key = candidates[-1][0]
        written += await backfill_covers(
            ctx,
            candidates,
            progress=lambda session: ctx.tracker.mark_progress(
                user_id, COVERS_RESOURCE, key=progress_key, limit=limit, session=session
            ),
        )
        cursor = progress_key
        batches += 1

    return SyncOutcome.resume(
        payload.model_copy(update={"cursor": cursor}), written=written, cursor=cursor
    )


__all__ = ["sync_covers", "sync_track_metadata"]
