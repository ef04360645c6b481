from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from ..constants.subscription_tiers import (
    PROMPT_COOLDOWN_HOURS,
    SPREAD_ALIASES,
    TIER_ORDER,
    TIERS,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Tier(str, Enum):
    """Subscription tiers, ordered by index and never by name"""

    SEEKER = "seeker"
    MYSTIC = "mystic"
    ORACLE = "oracle"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self.value)

    @property
    def display_name(self) -> str:
        return TIERS[self.value]["display_name"]

    @property
    def price(self) -> str:
        return TIERS[self.value]["price"]

    @property
    def description(self) -> str:
        return TIERS[self.value]["description"]

    def next_tier(self) -> "Tier":
        """The tier directly above this one; oracle stays oracle"""
        return Tier(TIER_ORDER[min(self.rank + 1, len(TIER_ORDER) - 1)])

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


class SpreadType(str, Enum):
    SINGLE_CARD = "single_card"
    THREE_CARD = "three_card"
    CELTIC_CROSS = "celtic_cross"
    HORSESHOE = "horseshoe"
    RELATIONSHIP = "relationship"
    CAREER = "career"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value in SPREAD_ALIASES:
            return cls(SPREAD_ALIASES[value])
        return None


class GuideType(str, Enum):
    SAGE = "sage"
    HEALER = "healer"
    MENTOR = "mentor"
    VISIONARY = "visionary"


class FeatureDescriptor(BaseModel):
    """A gated feature as seen from one tier"""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Stable feature key, e.g. readings")
    display_name: str = Field(..., description="Human readable feature name")
    description: str = Field(default="")
    required_tier: Tier = Field(..., description="Lowest tier that unlocks the feature")
    usage_limited: bool = Field(default=False, description="Capped per usage period at this tier")
    monthly_limit: Optional[int] = Field(default=None, ge=0, description="None means unlimited")


class SpreadDescriptor(FeatureDescriptor):
    key: SpreadType
    card_count: int = Field(default=1, ge=1)


class GuideDescriptor(FeatureDescriptor):
    key: GuideType


class SubscriptionStatus(BaseModel):
    """A user's subscription state. Transitions produce new values via model_copy."""

    model_config = ConfigDict(frozen=True)

    tier: Tier = Field(default=Tier.SEEKER)
    is_active: bool = Field(default=True)
    expiration_date: Optional[datetime] = Field(default=None, description="Only meaningful for paid tiers")
    platform_subscription_id: Optional[str] = Field(default=None)
    usage_counts: Dict[str, int] = Field(default_factory=dict, description="Current period usage snapshot")
    last_updated: datetime = Field(default_factory=utc_now)

    @field_validator("expiration_date", "last_updated")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @field_validator("usage_counts")
    @classmethod
    def non_negative_counts(cls, v: Dict[str, int]) -> Dict[str, int]:
        for key, count in v.items():
            if count < 0:
                raise ValueError(f"Usage count for {key} cannot be negative")
        return v

    @classmethod
    def free(cls) -> "SubscriptionStatus":
        return cls(tier=Tier.SEEKER, is_active=True)

    def expired_at(self, now: datetime) -> bool:
        if self.tier == Tier.SEEKER or self.expiration_date is None:
            return False
        return _as_utc(now) > self.expiration_date

    def effective_tier_at(self, now: datetime) -> Tier:
        if not self.is_active or self.expired_at(now):
            return Tier.SEEKER
        return self.tier

    @computed_field
    @property
    def is_expired(self) -> bool:
        return self.expired_at(utc_now())

    @computed_field
    @property
    def is_valid(self) -> bool:
        return self.is_active and not self.is_expired

    @computed_field
    @property
    def effective_tier(self) -> Tier:
        """Tier used for gating: seeker whenever the subscription is inactive or expired"""
        return self.effective_tier_at(utc_now())


class UpgradeReason(str, Enum):
    TIER_RESTRICTION = "tier_restriction"
    USAGE_LIMIT = "usage_limit"
    PREMIUM_FEATURE = "premium_feature"


class UpgradeRequirement(BaseModel):
    """Why a feature was denied and which tier unlocks it"""

    feature_key: str
    feature_name: str
    required_tier: Tier
    reason: UpgradeReason
    current_usage: Optional[int] = None
    usage_limit: Optional[int] = None

    @computed_field
    @property
    def is_usage_based(self) -> bool:
        return self.reason == UpgradeReason.USAGE_LIMIT


class AccessDecision(BaseModel):
    allowed: bool
    requirement: Optional[UpgradeRequirement] = None
    fail_closed: bool = Field(default=False, description="Denied because usage could not be read")
    consumed: bool = Field(default=False, description="This call counted one use")


class UsageInfo(BaseModel):
    """Usage of one feature in the current period"""

    feature_key: str
    current: int = Field(default=0, ge=0)
    limit: Optional[int] = None
    locked: bool = Field(default=False, description="Feature is above the user's effective tier")

    @computed_field
    @property
    def unlimited(self) -> bool:
        return self.limit is None and not self.locked

    @computed_field
    @property
    def remaining(self) -> Optional[int]:
        if self.locked:
            return 0
        if self.limit is None:
            return None
        return max(self.limit - self.current, 0)

    @computed_field
    @property
    def percentage(self) -> float:
        if not self.limit:
            return 0.0
        return min(self.current / self.limit, 1.0)

    @computed_field
    @property
    def reached_limit(self) -> bool:
        return self.locked or (self.limit is not None and self.current >= self.limit)

    def is_approaching(self, ratio: float) -> bool:
        return self.limit is not None and not self.reached_limit and self.percentage >= ratio


class UpgradePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return ["low", "medium", "high"].index(self.value)


class UpgradeSuggestion(BaseModel):
    id: str = Field(..., description="Prompt key used for de-duplication")
    title: str
    description: str
    recommended_tier: Tier
    priority: UpgradePriority
    trigger_context: Dict[str, Any] = Field(default_factory=dict)


class OnboardingStep(str, Enum):
    SUBSCRIPTION_INTRODUCTION = "subscription_introduction"
    FEATURE_DISCOVERY = "feature_discovery"
    BENEFITS_EXPLANATION = "benefits_explanation"
    FIRST_UPGRADE_PROMPT = "first_upgrade_prompt"


class OnboardingState(BaseModel):
    """Per-install prompt and onboarding bookkeeping"""

    has_seen_subscription_intro: bool = False
    has_seen_feature_discovery: bool = False
    completed_steps: List[OnboardingStep] = Field(default_factory=list)
    dismissed_prompts: List[str] = Field(default_factory=list)
    discovered_features: List[str] = Field(default_factory=list)
    last_prompt_shown: Optional[datetime] = None
    onboarding_started_at: Optional[datetime] = None
    onboarding_completed_at: Optional[datetime] = None

    @field_validator("last_prompt_shown", "onboarding_started_at", "onboarding_completed_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @computed_field
    @property
    def is_complete(self) -> bool:
        return all(step in self.completed_steps for step in OnboardingStep)

    def can_show_prompt(self, now: datetime) -> bool:
        if self.last_prompt_shown is None:
            return True
        return _as_utc(now) - self.last_prompt_shown >= timedelta(hours=PROMPT_COOLDOWN_HOURS)


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionProduct(BaseModel):
    id: str
    tier: Tier
    title: str
    description: str = ""
    price: float = Field(..., ge=0)
    currency: str = "USD"
    period: BillingPeriod
    platform_product_id: str
    original_price: Optional[float] = None
    discount_percentage: Optional[int] = None
    is_popular: bool = False
    features: List[str] = Field(default_factory=list, description="Feature keys the product's tier unlocks")

    @computed_field
    @property
    def has_discount(self) -> bool:
        return self.discount_percentage is not None and self.discount_percentage > 0


class Receipt(BaseModel):
    """A purchase receipt. Only verified receipts change a subscription."""

    product_id: str
    transaction_id: str
    purchased_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    verified: bool = False

    @field_validator("purchased_at", "expires_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class PurchaseState(str, Enum):
    PURCHASED = "purchased"
    RESTORED = "restored"
    PENDING = "pending"
    CANCELLED = "cancelled"
    ERROR = "error"


class PurchaseUpdate(BaseModel):
    """One event from the billing status stream"""

    state: PurchaseState
    receipt: Optional[Receipt] = None
    error_message: Optional[str] = None
