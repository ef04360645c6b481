"""Records subscription analytics events and summarizes feature usage."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from aws_lambda_powertools import Logger

from ..models.analytics import FeatureUsageStats, SubscriptionAnalyticsEvent, SubscriptionEventType
from ..models.errors import PersistenceError
from ..models.subscription import Tier, utc_now
from .state_repository import EventRepository

logger = Logger()


class AnalyticsService:
    """
    Helper to track subscription events from the entitlement and billing flows.

    Tracking never fails the calling operation: storage errors are logged and
    the event is dropped. Without a repository events are kept in memory.
    """

    def __init__(
        self,
        repository: Optional[EventRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.clock = clock
        self._events: List[SubscriptionAnalyticsEvent] = []

    def track(
        self,
        user_id: str,
        event_type: SubscriptionEventType,
        from_tier: Optional[Tier] = None,
        to_tier: Optional[Tier] = None,
        feature_key: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> SubscriptionAnalyticsEvent:
        event = SubscriptionAnalyticsEvent(
            user_id=user_id,
            event_type=event_type,
            from_tier=from_tier,
            to_tier=to_tier,
            feature_key=feature_key,
            properties=properties or {},
            error_message=error_message,
            timestamp=self.clock(),
        )
        if self.repository is None:
            self._events.append(event)
            return event
        try:
            self.repository.record(event)
            logger.debug(f"Tracked {event_type.value} for user {user_id}")
        except PersistenceError as e:
            logger.error(f"Failed to track {event_type.value} event: {e}")
        return event

    def track_tier_change(self, user_id: str, from_tier: Tier, to_tier: Tier, reason: Optional[str] = None) -> None:
        if from_tier == to_tier:
            return
        event_type = SubscriptionEventType.TIER_UPGRADE if to_tier > from_tier else SubscriptionEventType.TIER_DOWNGRADE
        self.track(user_id, event_type, from_tier=from_tier, to_tier=to_tier, properties={"reason": reason} if reason else None)

    def track_feature_usage(self, user_id: str, feature_key: str, tier: Tier, usage_count: Optional[int] = None) -> None:
        properties = {"usage_count": usage_count} if usage_count is not None else None
        self.track(user_id, SubscriptionEventType.FEATURE_USAGE, from_tier=tier, feature_key=feature_key, properties=properties)

    def track_upgrade_prompt(
        self,
        user_id: str,
        event_type: SubscriptionEventType,
        prompt_key: str,
        current_tier: Optional[Tier] = None,
        recommended_tier: Optional[Tier] = None,
    ) -> None:
        self.track(
            user_id,
            event_type,
            from_tier=current_tier,
            to_tier=recommended_tier,
            properties={"prompt_key": prompt_key},
        )

    def track_error(self, user_id: str, error: Exception, tier: Optional[Tier] = None, context: Optional[str] = None) -> None:
        self.track(
            user_id,
            SubscriptionEventType.SUBSCRIPTION_ERROR,
            from_tier=tier,
            properties={"error_type": type(error).__name__, **({"context": context} if context else {})},
            error_message=str(error),
        )

    def list_events(
        self,
        user_id: str,
        event_type: Optional[SubscriptionEventType] = None,
        start_date: Optional[str] = None,
    ) -> List[SubscriptionAnalyticsEvent]:
        if self.repository is None:
            events = [e for e in self._events if e.user_id == user_id and (not start_date or e.event_date >= start_date)]
        else:
            events = self.repository.list_events(user_id, start_date=start_date)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events

    def feature_usage_stats(self, user_id: str, start_date: Optional[str] = None) -> List[FeatureUsageStats]:
        """Per (feature, tier) usage counts built from feature_usage events"""
        grouped: Dict[tuple, List[datetime]] = {}
        for event in self.list_events(user_id, SubscriptionEventType.FEATURE_USAGE, start_date):
            if event.feature_key is None or event.from_tier is None:
                continue
            grouped.setdefault((event.feature_key, event.from_tier), []).append(event.timestamp)

        stats = [
            FeatureUsageStats(
                feature_key=feature_key,
                tier=tier,
                usage_count=len(timestamps),
                first_used=min(timestamps),
                last_used=max(timestamps),
            )
            for (feature_key, tier), timestamps in grouped.items()
        ]
        return sorted(stats, key=lambda s: (-s.usage_count, s.feature_key))
