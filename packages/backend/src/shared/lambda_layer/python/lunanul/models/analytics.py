"""Subscription analytics events and the usage statistics derived from them."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from .subscription import Tier, _as_utc, utc_now


class SubscriptionEventType(str, Enum):
    """Types of subscription events we track."""

    TIER_UPGRADE = "tier_upgrade"
    TIER_DOWNGRADE = "tier_downgrade"
    SUBSCRIPTION_PURCHASE = "subscription_purchase"
    SUBSCRIPTION_CANCELLATION = "subscription_cancellation"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    FEATURE_USAGE = "feature_usage"
    UPGRADE_PROMPT_SHOWN = "upgrade_prompt_shown"
    UPGRADE_PROMPT_CLICKED = "upgrade_prompt_clicked"
    UPGRADE_PROMPT_DISMISSED = "upgrade_prompt_dismissed"
    SUBSCRIPTION_ERROR = "subscription_error"
    SUBSCRIPTION_RESTORED = "subscription_restored"


class SubscriptionAnalyticsEvent(BaseModel):
    """A single subscription analytics event for one user"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    event_type: SubscriptionEventType
    from_tier: Optional[Tier] = Field(default=None, description="Tier before the event, or the current tier")
    to_tier: Optional[Tier] = Field(default=None, description="Tier after the event, or the recommended tier")
    feature_key: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @computed_field
    @property
    def event_date(self) -> str:
        """YYYY-MM-DD for date range queries"""
        return self.timestamp.strftime("%Y-%m-%d")


class FeatureUsageStats(BaseModel):
    """Usage of one feature at one tier over a set of events"""

    feature_key: str
    tier: Tier
    usage_count: int = Field(..., ge=0)
    first_used: datetime
    last_used: datetime

    @computed_field
    @property
    def average_usage_per_day(self) -> float:
        days = (self.last_used - self.first_used).days + 1
        return self.usage_count / days
