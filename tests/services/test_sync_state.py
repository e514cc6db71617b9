from datetime import datetime, timedelta

from librarysync.services.sync_state import SyncStateTracker

NOW = datetime(2024, 1, 1, 12, 0, 0)


def tracker() -> SyncStateTracker:
    return SyncStateTracker(clock=lambda: NOW)


def test_progress_records_cursor_and_success() -> None:
    states = tracker()

    states.mark_progress("u1", "tracks", offset=50, limit=50)

    state = states.get("u1", "tracks")
    assert state is not None
    assert state.status == "running"
    assert state.cursor_offset == 50
    assert state.cursor_limit == 50
    assert state.last_successful_at == NOW
    assert state.failure_count == 0


def test_backoff_counts_failures_until_progress() -> None:
    states = tracker()
    states.mark_running("u1", "tracks")

    states.mark_backoff("u1", "tracks", NOW + timedelta(seconds=5), "UPSTREAM_UNAVAILABLE")
    effective = states.mark_backoff("u1", "tracks", NOW + timedelta(seconds=10), "TIMEOUT")

    state = states.get("u1", "tracks")
    assert state.status == "backoff"
    assert state.failure_count == 2
    assert state.retry_after_at == effective == NOW + timedelta(seconds=10)
    assert state.last_error_code == "TIMEOUT"

    states.mark_progress("u1", "tracks", offset=100, limit=50)

    state = states.get("u1", "tracks")
    assert state.failure_count == 0
    assert state.retry_after_at is None
    assert state.last_error_code is None


def test_backoff_never_schedules_in_the_past() -> None:
    states = tracker()

    effective = states.mark_backoff("u1", "tracks", NOW - timedelta(minutes=1), "RATE_LIMITED")

    assert effective == NOW + timedelta(seconds=1)
    assert states.get("u1", "tracks").failure_count == 1


def test_error_is_sanitised_and_cleared_on_requeue() -> None:
    states = tracker()

    states.mark_error("u1", "covers", "UPSTREAM_REJECTED: Bearer abcdef " + "x" * 400)

    state = states.get("u1", "covers")
    assert state.status == "error"
    assert "abcdef" not in state.last_error_code
    assert len(state.last_error_code) <= 200

    states.mark_queued("u1", "covers")

    state = states.get("u1", "covers")
    assert state.status == "queued"
    assert state.last_error_code is None
    assert state.failure_count == 1


def test_list_for_user_orders_by_resource() -> None:
    states = tracker()
    states.mark_idle("u1", "tracks", offset=0)
    states.mark_idle("u1", "playlists", offset=0)
    states.mark_idle("u2", "tracks", offset=0)

    assert [state.resource for state in states.list_for_user("u1")] == ["playlists", "tracks"]
