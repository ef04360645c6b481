"""
Error taxonomy for subscriptions and entitlements.

Each subscription error carries a short title and a user-facing message, and
says whether the operation that raised it may be retried.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SubscriptionError(Exception):
    """Base class for subscription and billing failures"""

    title = "Subscription Error"
    user_message = "An unexpected error occurred. Please try again."
    retryable = False

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)


class NetworkError(SubscriptionError):
    title = "Connection Problem"
    user_message = "Please check your internet connection and try again."
    retryable = True


class PlatformStoreError(SubscriptionError):
    title = "Store Unavailable"
    user_message = "The app store is temporarily unavailable. Please try again later."
    retryable = True


class VerificationFailed(SubscriptionError):
    title = "Verification Failed"
    user_message = "We couldn't verify your purchase. Please try again or contact support."
    retryable = True


class ServerError(SubscriptionError):
    title = "Server Error"
    user_message = "Our servers are experiencing issues. Please try again in a few minutes."
    retryable = True


class PurchaseCancelled(SubscriptionError):
    title = "Purchase Cancelled"
    user_message = "Purchase was cancelled. You can try again anytime."


class PaymentFailed(SubscriptionError):
    title = "Payment Failed"
    user_message = "Payment could not be processed. Please check your payment method."


class SubscriptionExpired(SubscriptionError):
    title = "Subscription Expired"
    user_message = "Your subscription has expired. Renew to continue enjoying premium features."


class RestorationFailed(SubscriptionError):
    title = "Restore Failed"
    user_message = "Unable to restore purchases. Please try again or contact support."


class InvalidProduct(SubscriptionError):
    title = "Product Unavailable"
    user_message = "This subscription option is not available. Please try a different plan."


class AlreadySubscribed(SubscriptionError):
    title = "Already Subscribed"
    user_message = "You already have an active subscription to this plan."


class UnknownSubscriptionError(SubscriptionError):
    pass


class ManualTierChangeDisabled(SubscriptionError):
    title = "Not Allowed"
    user_message = "Manual tier changes are disabled in this environment."


class UsageStoreError(Exception):
    """Raised when usage counters cannot be read or written"""


class PersistenceError(Exception):
    """Raised when subscription or onboarding state cannot be loaded or saved"""


class UnknownFeatureError(KeyError):
    """Raised when a feature, spread or guide key is not in the catalog"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(key)

    def __str__(self) -> str:
        return f"Unknown feature key: {self.key}"


class CatalogConfigError(ValueError):
    """Raised when a tier table is malformed or violates tier monotonicity"""


class AlreadyProcessingError(Exception):
    """Raised when a consuming action for the same user and feature is in flight"""

    def __init__(self, user_id: str, feature_key: str):
        self.user_id = user_id
        self.feature_key = feature_key
        super().__init__(f"Already processing {feature_key} for user {user_id}")


class ErrorAction(str, Enum):
    NONE = "none"
    RETRY = "retry"
    DISMISS = "dismiss"


class ErrorPresentation(BaseModel):
    """How a client should surface an error to the user"""

    action: ErrorAction = Field(..., description="Affordance to show")
    title: str = Field(default="")
    message: str = Field(default="")


def presentation_for(error: Exception) -> ErrorPresentation:
    """
    Decide how an error should be surfaced.

    Cancelled purchases show nothing, retryable errors get a retry affordance
    and everything else gets a dismissable message.
    """
    if isinstance(error, PurchaseCancelled):
        return ErrorPresentation(action=ErrorAction.NONE)
    if isinstance(error, SubscriptionError):
        action = ErrorAction.RETRY if error.retryable else ErrorAction.DISMISS
        return ErrorPresentation(action=action, title=error.title, message=error.message)
    if isinstance(error, UsageStoreError):
        return ErrorPresentation(
            action=ErrorAction.RETRY,
            title="Usage Unavailable",
            message="We couldn't check your usage right now. Please try again.",
        )
    if isinstance(error, PersistenceError):
        return ErrorPresentation(
            action=ErrorAction.RETRY,
            title="Subscription Unavailable",
            message="We couldn't load your subscription right now. Please try again.",
        )
    return ErrorPresentation(
        action=ErrorAction.DISMISS,
        title=SubscriptionError.title,
        message=SubscriptionError.user_message,
    )
