import os
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import BadRequestError, UnauthorizedError
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import ValidationError
from typing import Any, Dict, Optional

from lunanul.utils.auth import extract_user_id_from_event
from lunanul.utils.responses import error_response
from lunanul.services.engine import build_engine
from lunanul.services.subscription_service import ReceiptVerifier
from lunanul.models.errors import (
    InvalidProduct,
    ManualTierChangeDisabled,
    PersistenceError,
    SubscriptionError,
    UsageStoreError,
    VerificationFailed,
)
from lunanul.models.subscription import Receipt, Tier

# Initialize the logger
logger = Logger()

# Retrieve environment variables
SUBSCRIPTION_TABLE_NAME = os.environ.get("SUBSCRIPTION_TABLE_NAME", "lunanul-subscriptions-dev")
ALLOW_MANUAL_TIER_CHANGES = os.environ.get("ALLOW_MANUAL_TIER_CHANGES", "false").lower() == "true"

# Server-side store validation for client receipts; receipts are refused until one is set
RECEIPT_VERIFIER: Optional[ReceiptVerifier] = None

# Configure CORS
cors_config = CORSConfig(
    allow_origin="*",  # In production, specify your actual domain
)

# Initialize the APIGatewayRestResolver
app = APIGatewayRestResolver(cors=cors_config)


def _current_user() -> str:
    user_id = extract_user_id_from_event(app.current_event.raw_event)
    if not user_id:
        logger.error("No user_id found in JWT token")
        raise UnauthorizedError("Authentication required")
    return user_id


def _engine():
    return build_engine(
        SUBSCRIPTION_TABLE_NAME,
        receipt_verifier=RECEIPT_VERIFIER,
        allow_manual_tier_changes=ALLOW_MANUAL_TIER_CHANGES,
    )


@app.get("/subscription")
def get_subscription():
    """
    Get user's current subscription status, usage and feature access
    """
    user_id = _current_user()
    engine = _engine()

    try:
        status = engine.subscriptions.expire_if_due(user_id)
    except PersistenceError as exc:
        logger.error(f"Error loading subscription for {user_id}: {str(exc)}")
        return error_response(503, exc)

    try:
        usage = engine.entitlements.usage_summary(user_id, status)
    except UsageStoreError as exc:
        logger.error(f"Error loading usage for {user_id}: {str(exc)}")
        return error_response(503, exc)

    return {
        "subscription": status.model_dump(mode="json"),
        "usage": {key: info.model_dump(mode="json") for key, info in usage.items()},
        "access": engine.entitlements.access_summary(user_id, status),
    }


@app.post("/subscription/receipts")
def apply_receipt():
    """
    Submit a purchase receipt for server-side verification
    Expected body: {"product_id": "mystic_monthly", "transaction_id": "...", "expires_at": "..."}
    """
    user_id = _current_user()
    body = app.current_event.json_body or {}

    try:
        if "verified" in body:
            logger.warning(f"Ignoring client-supplied verification flag from {user_id}")
        receipt = Receipt.model_validate({k: v for k, v in body.items() if k != "verified"})
    except (ValidationError, AttributeError, TypeError, ValueError) as exc:
        logger.error(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    try:
        status = _engine().subscriptions.submit_receipt(user_id, receipt)
    except (VerificationFailed, InvalidProduct) as exc:
        return error_response(400, exc)
    except PersistenceError as exc:
        logger.error(f"Error saving subscription for {user_id}: {str(exc)}")
        return error_response(503, exc)

    return {
        "success": True,
        "message": f"Subscription is now {status.tier.display_name}",
        "subscription": status.model_dump(mode="json"),
    }


@app.post("/subscription/tier")
def set_tier():
    """
    Manually change the tier, for debugging and testing only
    Expected body: {"tier": "seeker|mystic|oracle"}
    """
    user_id = _current_user()

    try:
        tier = Tier((app.current_event.json_body or {})["tier"])
    except (KeyError, TypeError, ValueError) as exc:
        logger.error(f"Validation error: {str(exc)}")
        raise BadRequestError("Invalid tier. Must be 'seeker', 'mystic' or 'oracle'")

    try:
        status = _engine().subscriptions.set_tier(user_id, tier)
    except ManualTierChangeDisabled as exc:
        logger.warning(f"Manual tier change refused for {user_id}")
        return error_response(403, exc)
    except PersistenceError as exc:
        return error_response(503, exc)

    return {"success": True, "subscription": status.model_dump(mode="json")}


@app.post("/subscription/usage/reset")
def reset_usage():
    """
    Zero the current period's usage, for debugging and testing only
    """
    user_id = _current_user()
    if not ALLOW_MANUAL_TIER_CHANGES:
        return error_response(403, ManualTierChangeDisabled())

    try:
        status = _engine().subscriptions.reset_usage(user_id)
    except (UsageStoreError, PersistenceError) as exc:
        logger.error(f"Error resetting usage for {user_id}: {str(exc)}")
        return error_response(503, exc)

    return {"success": True, "subscription": status.model_dump(mode="json")}


@app.get("/subscription/pricing")
def get_pricing() -> Dict[str, Any]:
    """
    Get subscription pricing information (no auth required)
    """
    return _engine().subscriptions.pricing()


@app.exception_handler(SubscriptionError)
def handle_subscription_error(exc: SubscriptionError):
    logger.error(f"Subscription error: {exc.message}")
    return error_response(400, exc)


def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
