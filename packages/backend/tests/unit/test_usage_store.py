from datetime import datetime, timezone

from lunanul.services.usage_store import InMemoryUsageCounterStore, usage_period

USER = "test_user"


class Clock:
    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


def test_usage_period_format():
    assert usage_period(datetime(2026, 3, 9, tzinfo=timezone.utc)) == "2026-03"


def test_increment_then_get_count():
    store = InMemoryUsageCounterStore()
    assert store.get_count(USER, "readings") == 0
    assert store.increment(USER, "readings") == 1
    assert store.increment(USER, "readings") == 2
    assert store.get_count(USER, "readings") == 2
    assert store.get_count("other_user", "readings") == 0


def test_increment_if_below():
    store = InMemoryUsageCounterStore()
    assert store.increment_if_below(USER, "readings", 2) == 1
    assert store.increment_if_below(USER, "readings", 2) == 2
    assert store.increment_if_below(USER, "readings", 2) is None
    assert store.get_count(USER, "readings") == 2


def test_refund_stops_at_zero():
    store = InMemoryUsageCounterStore()
    store.increment(USER, "readings")

    store.refund(USER, "readings")
    store.refund(USER, "readings")

    assert store.get_count(USER, "readings") == 0


def test_reset_period_zeroes_only_that_user():
    store = InMemoryUsageCounterStore()
    store.increment(USER, "readings")
    store.increment(USER, "journal_entries")
    store.increment("other_user", "readings")

    store.reset_period(USER)

    assert store.get_all_counts(USER) == {"readings": 0, "journal_entries": 0}
    assert store.get_count("other_user", "readings") == 1


def test_new_month_starts_at_zero_and_keeps_history():
    clock = Clock(datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc))
    store = InMemoryUsageCounterStore(clock=clock)
    for _ in range(3):
        store.increment(USER, "readings")

    clock.moment = datetime(2026, 2, 1, 0, 1, tzinfo=timezone.utc)
    assert store.get_count(USER, "readings") == 0
    store.increment(USER, "readings")

    clock.moment = datetime(2026, 3, 15, tzinfo=timezone.utc)
    assert store.get_usage_history(USER, "readings") == [
        {"period": "2026-01", "count": 3},
        {"period": "2026-02", "count": 1},
    ]


def test_history_keeps_twelve_periods():
    clock = Clock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    store = InMemoryUsageCounterStore(clock=clock)
    for month in range(1, 13):
        clock.moment = datetime(2025, month, 1, tzinfo=timezone.utc)
        store.increment(USER, "readings")
    clock.moment = datetime(2026, 1, 1, tzinfo=timezone.utc)
    store.increment(USER, "readings")

    clock.moment = datetime(2026, 2, 1, tzinfo=timezone.utc)
    history = store.get_usage_history(USER, "readings")

    assert len(history) == 12
    assert history[0]["period"] == "2025-02"
    assert history[-1]["period"] == "2026-01"
