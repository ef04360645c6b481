from datetime import timedelta
from unittest.mock import Mock

import pytest

from lunanul.models.analytics import SubscriptionEventType
from lunanul.models.errors import UnknownFeatureError, UsageStoreError
from lunanul.models.subscription import (
    GuideType,
    SpreadType,
    SubscriptionStatus,
    Tier,
    UpgradeReason,
    utc_now,
)
from lunanul.services.analytics_service import AnalyticsService
from lunanul.services.entitlement_service import EntitlementService, evaluate_access
from lunanul.services.usage_store import InMemoryUsageCounterStore

USER = "test_user"


@pytest.fixture
def store():
    return InMemoryUsageCounterStore()


@pytest.fixture
def service(store, catalog):
    return EntitlementService(store, catalog=catalog)


def use(store, feature_key, times):
    for _ in range(times):
        store.increment(USER, feature_key)


def test_seeker_at_interpretation_limit_is_denied(service, store):
    """Seeker with 5 of 5 manual interpretations used"""
    use(store, "manual_interpretations", 5)

    decision = service.can_access(USER, SubscriptionStatus.free(), "manual_interpretations")

    assert decision.allowed is False
    assert decision.requirement.is_usage_based is True
    assert decision.requirement.reason == UpgradeReason.USAGE_LIMIT
    assert decision.requirement.usage_limit == 5
    assert decision.requirement.current_usage == 5
    assert decision.requirement.required_tier == Tier.MYSTIC


def test_seeker_below_limit_is_allowed(service, store):
    use(store, "manual_interpretations", 4)
    assert service.can_access(USER, SubscriptionStatus.free(), "manual_interpretations").allowed is True


def test_seeker_requesting_mystic_guide_is_denied(service):
    decision = service.can_access(USER, SubscriptionStatus.free(), GuideType.SAGE)

    assert decision.allowed is False
    assert decision.requirement.is_usage_based is False
    assert decision.requirement.required_tier == Tier.MYSTIC
    assert decision.requirement.feature_name == "Zian, The Wise Mystic"


def test_seeker_spreads(service):
    status = SubscriptionStatus.free()
    assert service.can_access(USER, status, SpreadType.THREE_CARD).allowed is True
    assert service.can_access(USER, status, "celtic").allowed is False


def test_mystic_interpretations_are_unlimited(service, store):
    use(store, "manual_interpretations", 50)
    status = SubscriptionStatus(tier=Tier.MYSTIC)

    decision = service.can_access(USER, status, "manual_interpretations")

    assert decision.allowed is True
    assert decision.requirement is None


def test_inactive_oracle_falls_back_to_seeker(service):
    status = SubscriptionStatus(tier=Tier.ORACLE, is_active=False)

    decision = service.can_access(USER, status, "audio_reading")

    assert decision.allowed is False
    assert decision.requirement.required_tier == Tier.ORACLE
    assert decision.requirement.reason == UpgradeReason.PREMIUM_FEATURE
    assert decision.requirement.is_usage_based is False


def test_expired_subscription_falls_back_to_seeker(service):
    status = SubscriptionStatus(tier=Tier.MYSTIC, expiration_date=utc_now() - timedelta(days=1))

    assert status.is_expired is True
    assert status.effective_tier == Tier.SEEKER
    assert service.can_access(USER, status, SpreadType.CELTIC_CROSS).allowed is False


def test_inactive_status_matches_seeker_for_every_key(service, store, catalog):
    use(store, "readings", 3)
    seeker = SubscriptionStatus.free()
    keys = list(catalog.config.features) + list(SpreadType) + list(GuideType)
    for tier in Tier:
        inactive = SubscriptionStatus(tier=tier, is_active=False)
        for key in keys:
            assert service.can_access(USER, inactive, key) == service.can_access(USER, seeker, key)


def test_reset_period_restores_access(service, store):
    use(store, "readings", 3)
    status = SubscriptionStatus.free()
    assert service.can_access(USER, status, "readings").allowed is False

    store.reset_period(USER)

    assert service.can_access(USER, status, "readings").allowed is True


def test_can_access_is_idempotent(service, store):
    use(store, "readings", 2)
    status = SubscriptionStatus.free()
    first = service.can_access(USER, status, "readings")
    for _ in range(5):
        assert service.can_access(USER, status, "readings") == first
    assert store.get_count(USER, "readings") == 2


def test_tier_check_runs_before_usage():
    """A user below the required tier never triggers a usage read"""
    store = Mock()
    store.get_count.side_effect = UsageStoreError("boom")
    service = EntitlementService(store)

    decision = service.can_access(USER, SubscriptionStatus.free(), "audio_reading")

    assert decision.fail_closed is False
    assert decision.requirement.reason == UpgradeReason.PREMIUM_FEATURE
    store.get_count.assert_not_called()


def test_usage_read_failure_fails_closed():
    store = Mock()
    store.get_count.side_effect = UsageStoreError("table unavailable")
    service = EntitlementService(store)

    decision = service.can_access(USER, SubscriptionStatus.free(), "readings")

    assert decision.allowed is False
    assert decision.fail_closed is True
    assert service.validate_and_consume(USER, SubscriptionStatus.free(), "readings") is False
    store.increment_if_below.assert_not_called()


def test_increment_failure_fails_closed():
    store = Mock()
    store.get_count.return_value = 0
    store.increment_if_below.side_effect = UsageStoreError("write failed")
    service = EntitlementService(store)

    decision = service.consume(USER, SubscriptionStatus.free(), "readings")

    assert decision.allowed is False
    assert decision.fail_closed is True


def test_validate_and_consume_counts_until_limit(service, store):
    status = SubscriptionStatus.free()
    results = [service.validate_and_consume(USER, status, "readings") for _ in range(4)]

    assert results == [True, True, True, False]
    assert store.get_count(USER, "readings") == 3


def test_consume_unlimited_feature_does_not_count(service, store):
    status = SubscriptionStatus(tier=Tier.MYSTIC)
    for _ in range(10):
        assert service.validate_and_consume(USER, status, "readings") is True
    assert store.get_count(USER, "readings") == 0


def test_lost_race_reports_usage_limit(catalog):
    """The check passes but another writer took the last use first"""
    store = Mock()
    store.get_count.return_value = 2
    store.increment_if_below.return_value = None
    service = EntitlementService(store, catalog=catalog)

    decision = service.consume(USER, SubscriptionStatus.free(), "readings")

    assert decision.allowed is False
    assert decision.requirement.is_usage_based is True
    assert decision.requirement.current_usage == 3


def test_idempotency_key_counts_once(service, store):
    status = SubscriptionStatus.free()
    first = service.consume(USER, status, "readings", idempotency_key="reading-1")
    again = service.consume(USER, status, "readings", idempotency_key="reading-1")
    other = service.consume(USER, status, "readings", idempotency_key="reading-2")

    assert first.allowed and again.allowed and other.allowed
    assert store.get_count(USER, "readings") == 2


def test_unknown_feature_raises(service):
    with pytest.raises(UnknownFeatureError):
        service.can_access(USER, SubscriptionStatus.free(), "tea_leaves")


def test_evaluate_access_with_snapshot(catalog):
    status = SubscriptionStatus(usage_counts={"journal_entries": 3})

    decision = evaluate_access(status, "journal_entries", catalog, lambda k: status.usage_counts.get(k, 0))

    assert decision.allowed is False
    assert decision.requirement.usage_limit == 3


def test_usage_info_and_summary(service, store):
    use(store, "readings", 2)
    status = SubscriptionStatus.free()

    info = service.usage_info(USER, status, "readings")
    assert info.current == 2
    assert info.remaining == 1
    assert info.reached_limit is False
    assert info.is_approaching(0.6) is True

    summary = service.usage_summary(USER, status)
    assert set(summary) == {"readings", "manual_interpretations", "journal_entries"}
    assert summary["manual_interpretations"].remaining == 5

    mystic_summary = service.usage_summary(USER, SubscriptionStatus(tier=Tier.MYSTIC))
    assert mystic_summary["readings"].unlimited is True
    assert mystic_summary["readings"].current == 2


def test_access_summary(service):
    summary = service.access_summary(USER, SubscriptionStatus(tier=Tier.MYSTIC))

    assert summary["tier"] == "mystic"
    assert summary["features"]["ad_free"] is True
    assert summary["features"]["audio_reading"] is False
    assert summary["spreads"]["celtic_cross"] is True
    assert summary["guides"]["sage"] is True


def test_access_summary_fails_closed():
    store = Mock()
    store.get_all_counts.side_effect = UsageStoreError("down")
    service = EntitlementService(store)

    summary = service.access_summary(USER, SubscriptionStatus.free())

    assert summary["features"]["readings"] is False
    assert summary["features"]["daily_card"] is True


def test_usage_info_reports_locked_features(service, store):
    """A feature above the user's tier is locked, never unlimited"""
    store.increment(USER, "audio_reading")

    info = service.usage_info(USER, SubscriptionStatus.free(), "audio_reading")

    assert info.locked is True
    assert info.unlimited is False
    assert info.remaining == 0
    assert info.reached_limit is True
    assert info.current == 1

    oracle = service.usage_info(USER, SubscriptionStatus(tier=Tier.ORACLE), "audio_reading")
    assert oracle.locked is False
    assert oracle.unlimited is True


def test_consume_marks_counted_uses(service):
    status = SubscriptionStatus.free()

    counted = service.consume(USER, status, "readings", idempotency_key="reading-1")
    replayed = service.consume(USER, status, "readings", idempotency_key="reading-1")
    unlimited = service.consume(USER, SubscriptionStatus(tier=Tier.MYSTIC), "readings")

    assert counted.consumed is True
    assert replayed.allowed is True
    assert replayed.consumed is False
    assert unlimited.consumed is False


def test_refund_gives_back_one_use(service, store):
    status = SubscriptionStatus.free()
    for _ in range(3):
        service.consume(USER, status, "readings")
    assert service.can_access(USER, status, "readings").allowed is False

    service.refund(USER, "readings")

    assert store.get_count(USER, "readings") == 2
    assert service.can_access(USER, status, "readings").allowed is True


def test_refund_forgets_idempotency_key(service, store):
    status = SubscriptionStatus.free()
    service.consume(USER, status, "readings", idempotency_key="reading-1")

    service.refund(USER, "readings", idempotency_key="reading-1")
    retried = service.consume(USER, status, "readings", idempotency_key="reading-1")

    assert retried.consumed is True
    assert store.get_count(USER, "readings") == 1


def test_refund_never_goes_below_zero(service, store):
    service.refund(USER, "readings")
    assert store.get_count(USER, "readings") == 0


def test_consume_tracks_feature_usage(store, catalog):
    analytics = AnalyticsService()
    service = EntitlementService(store, catalog=catalog, analytics=analytics)
    status = SubscriptionStatus.free()

    service.consume(USER, status, "readings", idempotency_key="reading-1")
    service.consume(USER, status, "readings", idempotency_key="reading-1")
    service.consume(USER, status, "audio_reading")

    events = analytics.list_events(USER, SubscriptionEventType.FEATURE_USAGE)
    assert [(e.feature_key, e.from_tier) for e in events] == [("readings", Tier.SEEKER)]
