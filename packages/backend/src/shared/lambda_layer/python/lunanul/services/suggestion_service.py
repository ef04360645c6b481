"""
Upgrade Suggestion Engine

Builds contextual upgrade prompts from usage and locked features, and keeps
the onboarding bookkeeping that rate-limits and de-duplicates them.
"""

from typing import Dict, List, Optional, Set

from aws_lambda_powertools import Logger

from ..constants.subscription_tiers import APPROACHING_LIMIT_RATIO
from ..models.analytics import SubscriptionEventType
from ..models.errors import UsageStoreError
from ..models.subscription import (
    OnboardingState,
    OnboardingStep,
    SubscriptionStatus,
    Tier,
    UpgradePriority,
    UpgradeReason,
    UpgradeRequirement,
    UpgradeSuggestion,
    UsageInfo,
    utc_now,
)
from .analytics_service import AnalyticsService
from .entitlement_service import EntitlementService, key_name
from .state_repository import OnboardingRepository
from .usage_store import Clock, usage_period

logger = Logger()

DISCOVERY_PREFIX = "feature_discovery_"


class SuggestionService:
    """
    Upgrade prompts for one user session.

    Dismissed prompt keys are hidden for the rest of the session and
    persisted in the onboarding state. Usage prompt keys carry the usage
    period, so a dismissal lasts until the month rolls over.
    """

    def __init__(
        self,
        entitlements: EntitlementService,
        onboarding_repository: Optional[OnboardingRepository] = None,
        analytics: Optional[AnalyticsService] = None,
        clock: Clock = utc_now,
    ):
        self.entitlements = entitlements
        self.catalog = entitlements.catalog
        self.onboarding_repository = onboarding_repository
        self.analytics = analytics or entitlements.analytics
        self.clock = clock
        self._session_dismissed: Set[str] = set()
        self._local_state: Dict[str, OnboardingState] = {}

    def onboarding_state(self, user_id: str) -> OnboardingState:
        if self.onboarding_repository is None:
            return self._local_state.setdefault(user_id, OnboardingState())
        return self.onboarding_repository.load(user_id)

    def _save_state(self, user_id: str, state: OnboardingState) -> None:
        if self.onboarding_repository is None:
            self._local_state[user_id] = state
        else:
            self.onboarding_repository.save(user_id, state)

    def suggestions(self, user_id: str, status: SubscriptionStatus) -> List[UpgradeSuggestion]:
        """Current prompts for the user, highest priority first"""
        state = self.onboarding_state(user_id)
        hidden = self._session_dismissed | set(state.dismissed_prompts)
        result = [s for s in self._usage_suggestions(user_id, status) if s.id not in hidden]

        discovery = self._discovery_suggestion(status, state, hidden)
        if discovery is not None:
            result.append(discovery)
            now = self.clock()
            state.discovered_features.append(discovery.trigger_context["feature_key"])
            state.last_prompt_shown = now
            if state.onboarding_started_at is None:
                state.onboarding_started_at = now
            self._save_state(user_id, state)

        result.sort(key=lambda s: s.priority.weight, reverse=True)
        for suggestion in result:
            self.analytics.track_upgrade_prompt(
                user_id,
                SubscriptionEventType.UPGRADE_PROMPT_SHOWN,
                suggestion.id,
                current_tier=status.effective_tier,
                recommended_tier=suggestion.recommended_tier,
            )
        return result

    def _usage_suggestions(self, user_id: str, status: SubscriptionStatus) -> List[UpgradeSuggestion]:
        try:
            summary = self.entitlements.usage_summary(user_id, status)
        except UsageStoreError as e:
            logger.warning(f"Skipping usage suggestions for user {user_id}: {str(e)}")
            return []

        period = usage_period(self.clock())
        suggestions = []
        for feature_key, info in summary.items():
            if info.reached_limit:
                suggestions.append(self._usage_suggestion(feature_key, info, status, period, reached=True))
            elif info.is_approaching(APPROACHING_LIMIT_RATIO):
                suggestions.append(self._usage_suggestion(feature_key, info, status, period, reached=False))
        return suggestions

    def _usage_suggestion(
        self, feature_key: str, info: UsageInfo, status: SubscriptionStatus, period: str, reached: bool
    ) -> UpgradeSuggestion:
        tier = status.effective_tier
        target = self.catalog.upgrade_tier_for_usage(feature_key, tier)
        name = self.catalog.descriptor(feature_key, tier).display_name
        if reached:
            return UpgradeSuggestion(
                id=f"usage_limit_{feature_key}_{period}",
                title=f"You've used all your {name.lower()}",
                description=f"Upgrade to {target.display_name} for unlimited {name.lower()}.",
                recommended_tier=target,
                priority=UpgradePriority.HIGH,
                trigger_context={"feature_key": feature_key, "current": info.current, "limit": info.limit},
            )
        return UpgradeSuggestion(
            id=f"usage_approaching_{feature_key}_{period}",
            title=f"{info.remaining} {name.lower()} left this month",
            description=f"Upgrade to {target.display_name} and never run out.",
            recommended_tier=target,
            priority=UpgradePriority.MEDIUM,
            trigger_context={"feature_key": feature_key, "current": info.current, "limit": info.limit},
        )

    def _discovery_suggestion(
        self, status: SubscriptionStatus, state: OnboardingState, hidden: Set[str]
    ) -> Optional[UpgradeSuggestion]:
        if not state.can_show_prompt(self.clock()):
            return None
        for descriptor in self.catalog.locked_descriptors(status.effective_tier):
            feature_key = key_name(descriptor.key)
            prompt_key = f"{DISCOVERY_PREFIX}{feature_key}"
            if feature_key in state.discovered_features or prompt_key in hidden:
                continue
            return UpgradeSuggestion(
                id=prompt_key,
                title=f"Discover {descriptor.display_name}",
                description=f"{descriptor.display_name} is included with {descriptor.required_tier.display_name}.",
                recommended_tier=descriptor.required_tier,
                priority=UpgradePriority.LOW,
                trigger_context={"feature_key": feature_key},
            )
        return None

    def suggestion_for(self, requirement: UpgradeRequirement) -> UpgradeSuggestion:
        """Prompt shown right after a denial"""
        tier = requirement.required_tier
        if requirement.reason == UpgradeReason.USAGE_LIMIT:
            return UpgradeSuggestion(
                id=f"usage_limit_{requirement.feature_key}_{usage_period(self.clock())}",
                title=f"{requirement.feature_name} limit reached",
                description=(
                    f"You've used {requirement.current_usage} of {requirement.usage_limit} this month. "
                    f"Upgrade to {tier.display_name} to keep going."
                ),
                recommended_tier=tier,
                priority=UpgradePriority.HIGH,
                trigger_context=requirement.model_dump(mode="json"),
            )
        return UpgradeSuggestion(
            id=f"locked_{requirement.feature_key}",
            title=f"Unlock {requirement.feature_name}",
            description=f"{requirement.feature_name} is available with {tier.display_name} ({tier.price}).",
            recommended_tier=tier,
            priority=UpgradePriority.MEDIUM,
            trigger_context=requirement.model_dump(mode="json"),
        )

    def dismiss(self, user_id: str, prompt_key: str) -> None:
        self._session_dismissed.add(prompt_key)
        state = self.onboarding_state(user_id)
        if prompt_key not in state.dismissed_prompts:
            state.dismissed_prompts.append(prompt_key)
            self._save_state(user_id, state)
        self.analytics.track_upgrade_prompt(user_id, SubscriptionEventType.UPGRADE_PROMPT_DISMISSED, prompt_key)
        logger.info(f"User {user_id} dismissed prompt {prompt_key}")

    def click(self, user_id: str, prompt_key: str, recommended_tier: Optional[Tier] = None) -> None:
        """Record that the user followed a prompt towards the paywall"""
        self.analytics.track_upgrade_prompt(
            user_id, SubscriptionEventType.UPGRADE_PROMPT_CLICKED, prompt_key, recommended_tier=recommended_tier
        )
        logger.info(f"User {user_id} clicked prompt {prompt_key}")

    def complete_step(self, user_id: str, step: OnboardingStep) -> OnboardingState:
        state = self.onboarding_state(user_id)
        now = self.clock()
        if state.onboarding_started_at is None:
            state.onboarding_started_at = now
        if step not in state.completed_steps:
            state.completed_steps.append(step)
        if step == OnboardingStep.SUBSCRIPTION_INTRODUCTION:
            state.has_seen_subscription_intro = True
        elif step == OnboardingStep.FEATURE_DISCOVERY:
            state.has_seen_feature_discovery = True
        if state.is_complete and state.onboarding_completed_at is None:
            state.onboarding_completed_at = now
            logger.info(f"User {user_id} completed subscription onboarding")
        self._save_state(user_id, state)
        return state

    def reset_onboarding(self, user_id: str) -> OnboardingState:
        self._session_dismissed.clear()
        state = OnboardingState()
        self._save_state(user_id, state)
        return state
