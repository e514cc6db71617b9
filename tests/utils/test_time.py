from datetime import UTC, datetime

from librarysync.utils.time import from_epoch_ms, parse_upstream_timestamp, to_epoch_ms


def test_parse_upstream_timestamp_normalises_to_naive_utc() -> None:
    assert parse_upstream_timestamp("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5)
    assert parse_upstream_timestamp("2024-01-02T05:04:05+02:00") == datetime(2024, 1, 2, 3, 4, 5)


def test_parse_upstream_timestamp_rejects_missing_values() -> None:
    assert parse_upstream_timestamp(None) is None
    assert parse_upstream_timestamp("") is None
    assert parse_upstream_timestamp("yesterday") is None


def test_epoch_ms_conversion() -> None:
    moment = datetime(2024, 1, 1, 12, 0, 0, 123000)

    assert from_epoch_ms(to_epoch_ms(moment)) == moment
    assert to_epoch_ms(moment.replace(tzinfo=UTC)) == to_epoch_ms(moment)
