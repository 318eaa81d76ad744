from datetime import datetime, timedelta, timezone

from mescontacts_worker.jobs.expiration import next_backoff, next_run_at, seconds_until


def test_next_run_later_same_day() -> None:
    now = datetime(2026, 1, 15, 3, 10, tzinfo=timezone.utc)
    assert next_run_at(now, hour_utc=5) == datetime(2026, 1, 15, 5, 0, tzinfo=timezone.utc)


def test_next_run_rolls_to_tomorrow_at_or_after_slot() -> None:
    at_slot = datetime(2026, 1, 15, 5, 0, tzinfo=timezone.utc)
    after_slot = datetime(2026, 1, 15, 18, 45, tzinfo=timezone.utc)

    assert next_run_at(at_slot, hour_utc=5) == datetime(2026, 1, 16, 5, 0, tzinfo=timezone.utc)
    assert next_run_at(after_slot, hour_utc=5, minute_utc=30) == datetime(2026, 1, 16, 5, 30, tzinfo=timezone.utc)


def test_next_run_normalizes_other_timezones() -> None:
    montreal = timezone(timedelta(hours=-5))
    now = datetime(2026, 1, 14, 23, 30, tzinfo=montreal)

    assert next_run_at(now, hour_utc=5) == datetime(2026, 1, 15, 5, 0, tzinfo=timezone.utc)


def test_seconds_until_never_negative() -> None:
    now = datetime(2026, 1, 15, 5, 0, tzinfo=timezone.utc)
    assert seconds_until(now + timedelta(minutes=2), now) == 120.0
    assert seconds_until(now - timedelta(minutes=2), now) == 0.0


def test_next_backoff_doubles_and_caps() -> None:
    first = next_backoff(0.0, initial=30.0, maximum=900.0)
    second = next_backoff(first, initial=30.0, maximum=900.0, jitter=0.0)
    capped = next_backoff(800.0, initial=30.0, maximum=900.0, jitter=0.0)

    assert first == 30.0
    assert second == 60.0
    assert capped == 900.0
