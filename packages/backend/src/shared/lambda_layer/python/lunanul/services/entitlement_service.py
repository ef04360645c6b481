"""
Entitlement Evaluator

Decides whether a user may use a feature, spread or guide, and consumes
monthly quota for usage-limited features.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from aws_lambda_powertools import Logger

from ..models.errors import UsageStoreError
from ..models.subscription import (
    AccessDecision,
    SubscriptionStatus,
    Tier,
    UpgradeReason,
    UpgradeRequirement,
    UsageInfo,
    utc_now,
)
from ..utils.inflight import InFlightGuard, ReplayCache
from .analytics_service import AnalyticsService
from .tier_catalog import CatalogKey, TierCatalog, default_catalog
from .usage_store import UsageCounterStore

logger = Logger()


def key_name(key: CatalogKey) -> str:
    return getattr(key, "value", key)


def evaluate_access(
    status: SubscriptionStatus,
    key: CatalogKey,
    catalog: TierCatalog,
    read_usage: Callable[[str], int],
    now: Optional[datetime] = None,
) -> AccessDecision:
    """
    Evaluate access to a key for a subscription status.

    Tier gating runs first; `read_usage` is only called for features that are
    usage-limited at the user's effective tier. Errors raised by `read_usage`
    propagate to the caller.
    """
    tier = status.effective_tier_at(now or utc_now())
    required = catalog.minimum_tier(key)

    if tier < required:
        descriptor = catalog.descriptor(key)
        reason = UpgradeReason.PREMIUM_FEATURE if required == Tier.ORACLE else UpgradeReason.TIER_RESTRICTION
        return AccessDecision(
            allowed=False,
            requirement=UpgradeRequirement(
                feature_key=key_name(descriptor.key),
                feature_name=descriptor.display_name,
                required_tier=required,
                reason=reason,
            ),
        )

    descriptor = catalog.descriptor(key, tier)
    if not descriptor.usage_limited:
        return AccessDecision(allowed=True)

    feature_key = key_name(descriptor.key)
    current = read_usage(feature_key)
    if current < descriptor.monthly_limit:
        return AccessDecision(allowed=True)

    return AccessDecision(
        allowed=False,
        requirement=UpgradeRequirement(
            feature_key=feature_key,
            feature_name=descriptor.display_name,
            required_tier=catalog.upgrade_tier_for_usage(key, tier),
            reason=UpgradeReason.USAGE_LIMIT,
            current_usage=current,
            usage_limit=descriptor.monthly_limit,
        ),
    )


class EntitlementService:
    """Entitlement checks and quota consumption for one usage store"""

    def __init__(
        self,
        usage_store: UsageCounterStore,
        catalog: Optional[TierCatalog] = None,
        guard: Optional[InFlightGuard] = None,
        replay_cache: Optional[ReplayCache] = None,
        analytics: Optional[AnalyticsService] = None,
    ):
        self.usage_store = usage_store
        self.catalog = catalog or default_catalog()
        self.guard = guard or InFlightGuard()
        self.replay_cache = replay_cache or ReplayCache()
        self.analytics = analytics or AnalyticsService()

    def can_access(self, user_id: str, status: SubscriptionStatus, key: CatalogKey) -> AccessDecision:
        """
        Check access without consuming anything.

        Fails closed: when usage cannot be read the feature is denied.
        """
        try:
            return evaluate_access(
                status, key, self.catalog, lambda k: self.usage_store.get_count(user_id, k)
            )
        except UsageStoreError as e:
            logger.error(f"Denying {key_name(key)} for user {user_id}, usage unavailable: {str(e)}")
            return AccessDecision(allowed=False, fail_closed=True)

    def upgrade_requirement(
        self, user_id: str, status: SubscriptionStatus, key: CatalogKey
    ) -> Optional[UpgradeRequirement]:
        return self.can_access(user_id, status, key).requirement

    def consume(
        self,
        user_id: str,
        status: SubscriptionStatus,
        key: CatalogKey,
        idempotency_key: Optional[str] = None,
    ) -> AccessDecision:
        """
        Check access and, when allowed and usage-limited, count one use.

        Check and increment happen under the per-(user, feature) guard. A
        repeated idempotency_key returns the first decision without counting
        again.
        """
        feature_key = key_name(self.catalog.resolve_key(key))
        with self.guard.hold(user_id, feature_key):
            cache_key = (user_id, feature_key, idempotency_key)
            if idempotency_key:
                replayed = self.replay_cache.get(cache_key)
                if replayed is not None:
                    logger.info(f"Replaying {feature_key} decision for user {user_id}, key {idempotency_key}")
                    return replayed.model_copy(update={"consumed": False})

            decision = self._consume(user_id, status, key, feature_key)

            if idempotency_key and not decision.fail_closed:
                self.replay_cache.put(cache_key, decision)

        if decision.allowed:
            self.analytics.track_feature_usage(user_id, feature_key, status.effective_tier)
        return decision

    def refund(self, user_id: str, key: CatalogKey, idempotency_key: Optional[str] = None) -> None:
        """
        Give back one use counted by consume, for when the action it paid for failed.

        The idempotency key is forgotten so a retry with the same key counts again.
        """
        feature_key = key_name(self.catalog.resolve_key(key))
        with self.guard.hold(user_id, feature_key):
            if idempotency_key:
                self.replay_cache.discard((user_id, feature_key, idempotency_key))
            self.usage_store.refund(user_id, feature_key)
        logger.info(f"Refunded one {feature_key} use for user {user_id}")

    def _consume(
        self, user_id: str, status: SubscriptionStatus, key: CatalogKey, feature_key: str
    ) -> AccessDecision:
        now = utc_now()
        try:
            decision = evaluate_access(
                status, key, self.catalog, lambda k: self.usage_store.get_count(user_id, k), now
            )
        except UsageStoreError as e:
            logger.error(f"Denying {feature_key} for user {user_id}, usage unavailable: {str(e)}")
            return AccessDecision(allowed=False, fail_closed=True)

        if not decision.allowed:
            logger.warning(f"Denied {feature_key} for user {user_id}: {decision.requirement.reason.value}")
            return decision

        tier = status.effective_tier_at(now)
        descriptor = self.catalog.descriptor(key, tier)
        if not descriptor.usage_limited:
            return decision

        try:
            count = self.usage_store.increment_if_below(user_id, feature_key, descriptor.monthly_limit)
        except UsageStoreError as e:
            logger.error(f"Denying {feature_key} for user {user_id}, increment failed: {str(e)}")
            return AccessDecision(allowed=False, fail_closed=True)

        if count is None:
            # Another process consumed the last use between check and increment
            logger.warning(f"User {user_id} lost the race for the last {feature_key} use")
            return AccessDecision(
                allowed=False,
                requirement=UpgradeRequirement(
                    feature_key=feature_key,
                    feature_name=descriptor.display_name,
                    required_tier=self.catalog.upgrade_tier_for_usage(key, tier),
                    reason=UpgradeReason.USAGE_LIMIT,
                    current_usage=descriptor.monthly_limit,
                    usage_limit=descriptor.monthly_limit,
                ),
            )

        logger.info(f"User {user_id} used {feature_key} ({count}/{descriptor.monthly_limit})")
        return decision.model_copy(update={"consumed": True})

    def validate_and_consume(
        self,
        user_id: str,
        status: SubscriptionStatus,
        key: CatalogKey,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        return self.consume(user_id, status, key, idempotency_key).allowed

    def usage_info(self, user_id: str, status: SubscriptionStatus, key: CatalogKey) -> UsageInfo:
        """Usage of one key; keys above the user's effective tier report as locked"""
        tier = status.effective_tier
        descriptor = self.catalog.descriptor(key, tier)
        feature_key = key_name(descriptor.key)
        current = self.usage_store.get_count(user_id, feature_key)
        if descriptor.required_tier > tier:
            return UsageInfo(feature_key=feature_key, current=current, limit=None, locked=True)
        return UsageInfo(feature_key=feature_key, current=current, limit=descriptor.monthly_limit)

    def usage_summary(self, user_id: str, status: SubscriptionStatus) -> Dict[str, UsageInfo]:
        """Usage of every counted feature, as seen from the user's effective tier"""
        tier = status.effective_tier
        counts = self.usage_store.get_all_counts(user_id)
        summary = {}
        for feature_key in self.catalog.tracked_feature_keys():
            descriptor = self.catalog.descriptor(feature_key, tier)
            if descriptor.required_tier > tier:
                continue
            summary[feature_key] = UsageInfo(
                feature_key=feature_key,
                current=counts.get(feature_key, 0),
                limit=descriptor.monthly_limit,
            )
        return summary

    def access_summary(self, user_id: str, status: SubscriptionStatus) -> Dict[str, Any]:
        """Allow/deny for every feature, spread and guide from one usage snapshot"""
        counts: Optional[Dict[str, int]]
        try:
            counts = self.usage_store.get_all_counts(user_id)
        except UsageStoreError as e:
            logger.error(f"Usage unavailable for access summary of user {user_id}: {str(e)}")
            counts = None

        def read_usage(feature_key: str) -> int:
            if counts is None:
                raise UsageStoreError("Usage unavailable")
            return counts.get(feature_key, 0)

        def allowed(key: CatalogKey) -> bool:
            try:
                return evaluate_access(status, key, self.catalog, read_usage).allowed
            except UsageStoreError:
                return False

        return {
            "tier": status.effective_tier.value,
            "features": {k: allowed(k) for k in sorted(self.catalog.config.features)},
            "spreads": {s.value: allowed(s) for s in self.catalog.config.spreads},
            "guides": {g.value: allowed(g) for g in self.catalog.config.guides},
        }
