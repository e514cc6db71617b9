from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from librarysync.db import session_scope
from librarysync.models import Track, UserSavedTrack
from librarysync.orchestrator.context import SyncContext
from librarysync.orchestrator.dispatcher import RESULT_CONTINUED, Dispatcher
from librarysync.schemas.jobs import JobType
from librarysync.services.sync_service import enqueue_sync
from librarysync.utils.time import to_epoch_ms
from librarysync.workers import persistence
from tests.support.factories import drain_queue, iso, table_rows
from tests.support.fake_spotify import FakeSpotify, make_track

BASE = datetime(2024, 1, 1)


def seed_saved(fake: FakeSpotify, count: int, *, start: int = 0) -> None:
    """Library of ``count`` tracks, newest first; track ``n`` was saved at minute ``n``."""

    for index in reversed(range(start, start + count)):
        fake.add_saved(make_track(f"t{index:04d}"), iso(BASE + timedelta(minutes=index)))


def prepend_saved(fake: FakeSpotify, count: int, *, start: int) -> None:
    newer = FakeSpotify()
    seed_saved(newer, count, start=start)
    fake.saved[0:0] = newer.saved
    fake.catalog.update(newer.catalog)


@pytest.mark.asyncio
async def test_initial_sync_pages_through_whole_library(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    seed_saved(fake_spotify, 120)
    job_id = enqueue_sync(user_id, JobType.TRACKS_INITIAL, {"limit": 50})

    results = await drain_queue(Dispatcher(sync_context), sync_context)

    assert results == ["done"]
    assert [call.url.params["offset"] for call in fake_spotify.api_calls("/me/tracks")] == [
        "0",
        "50",
        "100",
        "120",
    ]
    assert len(table_rows(UserSavedTrack)) == 120
    state = sync_context.tracker.get(user_id, "tracks")
    assert state.status == "idle"
    assert state.cursor_offset == 120
    assert state.failure_count == 0
    assert state.last_successful_at is not None
    assert persistence.get_job(job_id).status == "done"


@pytest.mark.asyncio
async def test_page_budget_yields_a_continuation(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    seed_saved(fake_spotify, 120)
    job_id = enqueue_sync(user_id, JobType.TRACKS_INITIAL, {"limit": 50, "maxPagesPerRun": 2})
    dispatcher = Dispatcher(sync_context)

    job = await persistence.claim_async()
    assert await dispatcher.dispatch(job) == RESULT_CONTINUED

    stored = persistence.get_job(job_id)
    assert stored.status == "queued"
    assert stored.payload == {"offset": 100, "limit": 50, "maxPagesPerRun": 2}
    state = sync_context.tracker.get(user_id, "tracks")
    assert state.status == "queued"
    assert state.cursor_offset == 100
    assert len(table_rows(UserSavedTrack)) == 100

    assert await drain_queue(dispatcher, sync_context) == ["done"]
    assert persistence.get_job(job_id).attempts == 2
    assert len(table_rows(UserSavedTrack)) == 120


@pytest.mark.asyncio
async def test_incremental_sync_stops_at_first_page_without_new_entries(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    seed_saved(fake_spotify, 120)
    enqueue_sync(user_id, JobType.TRACKS_INITIAL, {"limit": 50})
    await drain_queue(Dispatcher(sync_context), sync_context)
    prepend_saved(fake_spotify, 3, start=200)
    fake_spotify.requests.clear()

    enqueue_sync(user_id, JobType.TRACKS_INCREMENTAL, {"limit": 50})
    results = await drain_queue(Dispatcher(sync_context), sync_context)

    assert results == ["done"]
    assert [call.url.params["offset"] for call in fake_spotify.api_calls("/me/tracks")] == [
        "0",
        "50",
    ]
    saved = {row["track_id"]: row for row in table_rows(UserSavedTrack)}
    assert len(saved) == 123
    assert saved["t0202"]["added_at"] == BASE + timedelta(minutes=202)
    assert sync_context.tracker.get(user_id, "tracks").status == "idle"


@pytest.mark.asyncio
async def test_incremental_sync_treats_undated_entries_as_new(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    seed_saved(fake_spotify, 10)
    enqueue_sync(user_id, JobType.TRACKS_INITIAL, {"limit": 4})
    await drain_queue(Dispatcher(sync_context), sync_context)
    fake_spotify.saved[1]["added_at"] = None
    fake_spotify.requests.clear()

    enqueue_sync(user_id, JobType.TRACKS_INCREMENTAL, {"limit": 4})
    assert await drain_queue(Dispatcher(sync_context), sync_context) == ["done"]

    assert [call.url.params["offset"] for call in fake_spotify.api_calls("/me/tracks")] == [
        "0",
        "4",
    ]


@pytest.mark.asyncio
async def test_incremental_continuation_keeps_the_original_watermark(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    seed_saved(fake_spotify, 10)
    enqueue_sync(user_id, JobType.TRACKS_INITIAL, {"limit": 50})
    await drain_queue(Dispatcher(sync_context), sync_context)
    prepend_saved(fake_spotify, 60, start=100)

    job_id = enqueue_sync(
        user_id, JobType.TRACKS_INCREMENTAL, {"limit": 50, "maxPagesPerRun": 1}
    )
    dispatcher = Dispatcher(sync_context)
    job = await persistence.claim_async()
    assert await dispatcher.dispatch(job) == RESULT_CONTINUED

    payload = persistence.get_job(job_id).payload
    assert payload["offset"] == 50
    assert payload["watermarkMs"] == to_epoch_ms(BASE + timedelta(minutes=9))

    assert await drain_queue(dispatcher, sync_context) == ["continued", "done"]
    assert len(table_rows(UserSavedTrack)) == 70


@pytest.mark.asyncio
async def test_incremental_sync_without_history_walks_everything(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    seed_saved(fake_spotify, 10)

    enqueue_sync(user_id, JobType.TRACKS_INCREMENTAL, {"limit": 4})
    assert await drain_queue(Dispatcher(sync_context), sync_context) == ["done"]

    assert len(table_rows(UserSavedTrack)) == 10


@pytest.mark.asyncio
async def test_saved_page_covers_are_cached_inline(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    url = fake_spotify.add_image("cover/al1")
    fake_spotify.add_saved(make_track("c1", album_id="al1", image_url=url), "2024-01-01T00:00:00Z")
    fake_spotify.add_saved(
        make_track("c2", album_id="al2", image_url=f"{FakeSpotify.image_base}/cover/gone"),
        "2024-01-01T00:00:00Z",
    )

    enqueue_sync(user_id, JobType.TRACKS_INITIAL, {})
    assert await drain_queue(Dispatcher(sync_context), sync_context) == ["done"]

    with session_scope() as session:
        cached = session.get(Track, "c1")
        missing = session.get(Track, "c2")
        assert cached.album_image_blob is not None
        assert cached.album_image_mime == "image/png"
        assert missing.album_image_blob is None
