import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from lunanul.models.errors import AlreadyProcessingError
from lunanul.models.subscription import SubscriptionStatus
from lunanul.services.entitlement_service import EntitlementService
from lunanul.services.usage_store import InMemoryUsageCounterStore
from lunanul.utils.inflight import InFlightGuard

USER = "test_user"


class SlowReadStore(InMemoryUsageCounterStore):
    """Widens the window between the usage read and the increment"""

    def get_count(self, user_id, feature_key):
        count = super().get_count(user_id, feature_key)
        time.sleep(0.02)
        return count


def test_two_calls_for_the_last_use():
    """Two near-simultaneous consumes at limit - 1: exactly one succeeds"""
    store = SlowReadStore()
    store.increment(USER, "readings")
    store.increment(USER, "readings")
    service = EntitlementService(store)
    status = SubscriptionStatus.free()
    barrier = threading.Barrier(2)

    def consume():
        barrier.wait()
        return service.validate_and_consume(USER, status, "readings")

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: consume(), range(2)))

    assert sorted(results) == [False, True]
    assert store.get_count(USER, "readings") == 3


@pytest.mark.parametrize("limit_feature,limit", [("readings", 3), ("manual_interpretations", 5)])
def test_concurrent_consumes_never_exceed_limit(limit_feature, limit):
    store = SlowReadStore()
    service = EntitlementService(store)
    status = SubscriptionStatus.free()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: service.validate_and_consume(USER, status, limit_feature), range(20)))

    assert results.count(True) == limit
    assert store.get_count(USER, limit_feature) == limit


def test_separate_services_share_the_store_limit():
    """Without a shared guard, the store's compare-and-increment still holds the line"""
    store = SlowReadStore()
    services = [EntitlementService(store) for _ in range(4)]
    status = SubscriptionStatus.free()

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda s: s.validate_and_consume(USER, status, "readings"), services * 3))

    assert results.count(True) == 3
    assert store.get_count(USER, "readings") == 3


def test_reject_mode_reports_already_processing():
    guard = InFlightGuard(mode=InFlightGuard.REJECT)
    entered = threading.Event()
    release = threading.Event()

    def hold():
        with guard.hold(USER, "readings"):
            entered.set()
            release.wait(1)

    worker = threading.Thread(target=hold)
    worker.start()
    entered.wait(1)
    try:
        with pytest.raises(AlreadyProcessingError):
            with guard.hold(USER, "readings"):
                pass
        # Other feature keys are independent
        with guard.hold(USER, "manual_interpretations"):
            pass
    finally:
        release.set()
        worker.join()

    with guard.hold(USER, "readings"):
        pass


def test_queue_mode_timeout():
    guard = InFlightGuard(timeout=0.01)
    entered = threading.Event()
    release = threading.Event()

    def hold():
        with guard.hold(USER, "readings"):
            entered.set()
            release.wait(1)

    worker = threading.Thread(target=hold)
    worker.start()
    entered.wait(1)
    try:
        with pytest.raises(AlreadyProcessingError):
            with guard.hold(USER, "readings"):
                pass
    finally:
        release.set()
        worker.join()


def test_unknown_guard_mode():
    with pytest.raises(ValueError):
        InFlightGuard(mode="drop")


def test_guard_forgets_released_keys():
    """Locks only exist while held, however many users pass through"""
    guard = InFlightGuard()
    service = EntitlementService(InMemoryUsageCounterStore(), guard=guard)
    status = SubscriptionStatus.free()

    for i in range(5000):
        service.validate_and_consume(f"user-{i}", status, "readings")

    assert len(guard) == 0
    with guard.hold(USER, "readings"):
        assert len(guard) == 1
    assert len(guard) == 0


def test_guard_keeps_lock_while_others_wait():
    guard = InFlightGuard()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def first():
        with guard.hold(USER, "readings"):
            entered.set()
            release.wait(1)
            order.append("first")

    def second():
        with guard.hold(USER, "readings"):
            order.append("second")

    workers = [threading.Thread(target=first)]
    workers[0].start()
    entered.wait(1)
    workers.append(threading.Thread(target=second))
    workers[1].start()
    time.sleep(0.02)
    assert len(guard) == 1
    release.set()
    for worker in workers:
        worker.join()

    assert order == ["first", "second"]
    assert len(guard) == 0
