from datetime import timedelta

import pytest

from lunanul.models.analytics import SubscriptionEventType
from lunanul.models.subscription import (
    OnboardingStep,
    SubscriptionStatus,
    Tier,
    UpgradePriority,
    utc_now,
)
from lunanul.services.entitlement_service import EntitlementService
from lunanul.services.suggestion_service import SuggestionService
from lunanul.services.usage_store import InMemoryUsageCounterStore, usage_period

USER = "test_user"


class Clock:
    def __init__(self):
        self.moment = utc_now()

    def __call__(self):
        return self.moment


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return InMemoryUsageCounterStore()


@pytest.fixture
def suggestions(store, catalog, clock):
    return SuggestionService(EntitlementService(store, catalog=catalog), clock=clock)


def use(store, feature_key, times):
    for _ in range(times):
        store.increment(USER, feature_key)


def test_approaching_limit_is_medium(suggestions, store, clock):
    use(store, "manual_interpretations", 4)

    result = suggestions.suggestions(USER, SubscriptionStatus.free())

    usage = [s for s in result if s.priority != UpgradePriority.LOW]
    assert len(usage) == 1
    assert usage[0].id == f"usage_approaching_manual_interpretations_{usage_period(clock())}"
    assert usage[0].priority == UpgradePriority.MEDIUM
    assert usage[0].recommended_tier == Tier.MYSTIC
    assert usage[0].trigger_context == {"feature_key": "manual_interpretations", "current": 4, "limit": 5}


def test_below_threshold_has_no_usage_prompt(suggestions, store):
    use(store, "readings", 2)
    result = suggestions.suggestions(USER, SubscriptionStatus.free())
    assert all(s.priority == UpgradePriority.LOW for s in result)


def test_reached_limit_is_high_and_sorted_first(suggestions, store):
    use(store, "readings", 3)
    use(store, "manual_interpretations", 4)

    result = suggestions.suggestions(USER, SubscriptionStatus.free())

    assert [s.priority for s in result] == [UpgradePriority.HIGH, UpgradePriority.MEDIUM, UpgradePriority.LOW]
    assert result[0].trigger_context["feature_key"] == "readings"


def test_feature_discovery_once_per_key_and_rate_limited(suggestions, clock):
    status = SubscriptionStatus.free()

    first = suggestions.suggestions(USER, status)
    assert [s.id for s in first] == ["feature_discovery_ad_free"]
    assert first[0].priority == UpgradePriority.LOW
    assert first[0].recommended_tier == Tier.MYSTIC

    # Within 24 hours nothing new is discovered
    clock.moment += timedelta(hours=23)
    assert suggestions.suggestions(USER, status) == []

    clock.moment += timedelta(hours=2)
    second = suggestions.suggestions(USER, status)
    assert [s.id for s in second] == ["feature_discovery_career"]

    state = suggestions.onboarding_state(USER)
    assert state.discovered_features == ["ad_free", "career"]
    assert state.onboarding_started_at is not None


def test_mystic_discovers_oracle_features_only(suggestions, store):
    use(store, "readings", 30)

    result = suggestions.suggestions(USER, SubscriptionStatus(tier=Tier.MYSTIC))

    assert len(result) == 1
    assert result[0].recommended_tier == Tier.ORACLE


def test_oracle_gets_no_suggestions(suggestions):
    assert suggestions.suggestions(USER, SubscriptionStatus(tier=Tier.ORACLE)) == []


def test_dismissed_prompt_is_not_shown_again(suggestions, store):
    use(store, "readings", 3)
    status = SubscriptionStatus.free()
    high = suggestions.suggestions(USER, status)[0]

    suggestions.dismiss(USER, high.id)

    assert high.id not in [s.id for s in suggestions.suggestions(USER, status)]
    assert high.id in suggestions.onboarding_state(USER).dismissed_prompts


def test_dismissed_discovery_is_skipped(suggestions, clock):
    suggestions.dismiss(USER, "feature_discovery_ad_free")

    result = suggestions.suggestions(USER, SubscriptionStatus.free())

    assert [s.id for s in result] == ["feature_discovery_career"]


def test_suggestion_for_usage_denial(suggestions, store, catalog):
    use(store, "readings", 3)
    status = SubscriptionStatus.free()
    requirement = suggestions.entitlements.upgrade_requirement(USER, status, "readings")

    suggestion = suggestions.suggestion_for(requirement)

    assert suggestion.priority == UpgradePriority.HIGH
    assert suggestion.recommended_tier == Tier.MYSTIC
    assert "3 of 3" in suggestion.description


def test_suggestion_for_tier_denial(suggestions):
    requirement = suggestions.entitlements.upgrade_requirement(USER, SubscriptionStatus.free(), "audio_reading")

    suggestion = suggestions.suggestion_for(requirement)

    assert suggestion.id == "locked_audio_reading"
    assert suggestion.priority == UpgradePriority.MEDIUM
    assert suggestion.recommended_tier == Tier.ORACLE
    assert "$9.99/month" in suggestion.description


def test_onboarding_steps(suggestions):
    suggestions.complete_step(USER, OnboardingStep.SUBSCRIPTION_INTRODUCTION)
    state = suggestions.onboarding_state(USER)
    assert state.has_seen_subscription_intro is True
    assert state.is_complete is False

    for step in OnboardingStep:
        state = suggestions.complete_step(USER, step)

    assert state.is_complete is True
    assert state.has_seen_feature_discovery is True
    assert state.onboarding_completed_at is not None
    assert len(state.completed_steps) == len(OnboardingStep)


def test_reset_onboarding(suggestions, store):
    suggestions.dismiss(USER, "feature_discovery_ad_free")
    state = suggestions.reset_onboarding(USER)
    assert state.dismissed_prompts == []
    assert [s.id for s in suggestions.suggestions(USER, SubscriptionStatus.free())] == ["feature_discovery_ad_free"]


def test_prompts_shown_dismissed_and_clicked_are_tracked(suggestions, store):
    use(store, "readings", 3)
    status = SubscriptionStatus.free()
    analytics = suggestions.analytics

    shown = suggestions.suggestions(USER, status)
    suggestions.dismiss(USER, shown[0].id)
    suggestions.click(USER, shown[1].id, Tier.MYSTIC)

    shown_events = analytics.list_events(USER, SubscriptionEventType.UPGRADE_PROMPT_SHOWN)
    assert [e.properties["prompt_key"] for e in shown_events] == [s.id for s in shown]
    assert all(e.from_tier == Tier.SEEKER for e in shown_events)
    assert shown_events[0].to_tier == Tier.MYSTIC

    dismissed = analytics.list_events(USER, SubscriptionEventType.UPGRADE_PROMPT_DISMISSED)
    assert [e.properties["prompt_key"] for e in dismissed] == [shown[0].id]

    clicked = analytics.list_events(USER, SubscriptionEventType.UPGRADE_PROMPT_CLICKED)
    assert len(clicked) == 1
    assert clicked[0].to_tier == Tier.MYSTIC
