import os
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import BadRequestError, UnauthorizedError
from aws_lambda_powertools.utilities.typing import LambdaContext
from typing import Any, Dict, Tuple

from lunanul.utils.auth import extract_user_id_from_event
from lunanul.utils.quota_middleware import denial_body, denial_status_code
from lunanul.utils.responses import error_response, json_response
from lunanul.services.engine import EntitlementEngine, build_engine
from lunanul.models.errors import (
    AlreadyProcessingError,
    PersistenceError,
    UnknownFeatureError,
    UsageStoreError,
)
from lunanul.models.subscription import OnboardingStep, SubscriptionStatus, Tier

# Initialize the logger
logger = Logger()

# Retrieve environment variables
SUBSCRIPTION_TABLE_NAME = os.environ.get("SUBSCRIPTION_TABLE_NAME", "lunanul-subscriptions-dev")

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


def _load(user_id: str) -> Tuple[EntitlementEngine, SubscriptionStatus]:
    engine = build_engine(SUBSCRIPTION_TABLE_NAME)
    return engine, engine.subscriptions.get_status(user_id)


def _feature_from_body() -> str:
    body = app.current_event.json_body or {}
    feature = body.get("feature") or body.get("spread") or body.get("guide")
    if not isinstance(feature, str) or not feature:
        raise BadRequestError("Missing required field: feature")
    return feature


@app.post("/entitlements/check")
def check_access():
    """
    Check access to a feature, spread or guide without consuming it
    Expected body: {"feature": "readings"} or {"spread": "celtic_cross"} or {"guide": "sage"}
    """
    user_id = _current_user()
    feature = _feature_from_body()
    engine, status = _load(user_id)

    decision = engine.entitlements.can_access(user_id, status, feature)
    result = decision.model_dump(mode="json")
    result["feature"] = feature
    if decision.requirement:
        result["suggestion"] = engine.suggestions.suggestion_for(decision.requirement).model_dump(mode="json")
    return result


@app.post("/entitlements/consume")
def consume():
    """
    Check access and count one use of a feature
    Expected body: {"feature": "readings", "idempotency_key": "optional"}
    """
    user_id = _current_user()
    feature = _feature_from_body()
    idempotency_key = (app.current_event.json_body or {}).get("idempotency_key")
    engine, status = _load(user_id)

    try:
        decision = engine.entitlements.consume(user_id, status, feature, idempotency_key)
    except AlreadyProcessingError as exc:
        return json_response(409, {"error": "Already processing", "message": str(exc)})

    if not decision.allowed:
        body = denial_body(decision)
        if decision.requirement:
            body["suggestion"] = engine.suggestions.suggestion_for(decision.requirement).model_dump(mode="json")
        return json_response(denial_status_code(decision), body)

    # The use is already counted, so a failed usage read must not turn into an error
    try:
        usage = engine.entitlements.usage_summary(user_id, status)
    except UsageStoreError as exc:
        logger.warning(f"Usage unavailable after consuming {feature} for {user_id}: {str(exc)}")
        usage = {}
    return {
        "allowed": True,
        "feature": feature,
        "usage": usage[feature].model_dump(mode="json") if feature in usage else None,
    }


@app.get("/entitlements/usage")
def get_usage():
    """
    Current period usage for every counted feature, plus earlier periods when ?history=<feature> is given
    """
    user_id = _current_user()
    engine, status = _load(user_id)
    summary = engine.entitlements.usage_summary(user_id, status)
    result: Dict[str, Any] = {
        "period": engine.entitlements.usage_store.current_period(),
        "usage": {key: info.model_dump(mode="json") for key, info in summary.items()},
    }
    history_key = app.current_event.get_query_string_value(name="history", default_value=None)
    if history_key:
        result["history"] = engine.entitlements.usage_store.get_usage_history(user_id, history_key)
    return result


@app.get("/entitlements/suggestions")
def get_suggestions():
    """
    Upgrade suggestions for the user, highest priority first
    """
    user_id = _current_user()
    engine, status = _load(user_id)
    suggestions = engine.suggestions.suggestions(user_id, status)
    return {"suggestions": [s.model_dump(mode="json") for s in suggestions]}


@app.post("/entitlements/suggestions/dismiss")
def dismiss_suggestion():
    """
    Dismiss an upgrade prompt
    Expected body: {"prompt_key": "feature_discovery_audio_reading"}
    """
    user_id = _current_user()
    prompt_key = (app.current_event.json_body or {}).get("prompt_key")
    if not prompt_key:
        raise BadRequestError("Missing required field: prompt_key")
    engine = build_engine(SUBSCRIPTION_TABLE_NAME)
    engine.suggestions.dismiss(user_id, prompt_key)
    return {"success": True, "prompt_key": prompt_key}


@app.post("/entitlements/suggestions/click")
def click_suggestion():
    """
    Record that the user followed an upgrade prompt
    Expected body: {"prompt_key": "locked_audio_reading", "recommended_tier": "mystic"}
    """
    user_id = _current_user()
    body = app.current_event.json_body or {}
    prompt_key = body.get("prompt_key")
    if not prompt_key:
        raise BadRequestError("Missing required field: prompt_key")
    try:
        recommended_tier = Tier(body["recommended_tier"]) if body.get("recommended_tier") else None
    except ValueError:
        raise BadRequestError("Invalid tier. Must be 'seeker', 'mystic' or 'oracle'")
    engine = build_engine(SUBSCRIPTION_TABLE_NAME)
    engine.suggestions.click(user_id, prompt_key, recommended_tier)
    return {"success": True, "prompt_key": prompt_key}


@app.get("/entitlements/stats")
def get_feature_stats():
    """
    Feature usage statistics from tracked events, optionally since ?since=YYYY-MM-DD
    """
    user_id = _current_user()
    since = app.current_event.get_query_string_value(name="since", default_value=None)
    engine = build_engine(SUBSCRIPTION_TABLE_NAME)
    stats = engine.analytics.feature_usage_stats(user_id, start_date=since)
    return {"stats": [s.model_dump(mode="json") for s in stats]}


@app.post("/entitlements/onboarding/steps")
def complete_onboarding_step():
    """
    Mark a subscription onboarding step as completed
    Expected body: {"step": "subscription_introduction"}
    """
    user_id = _current_user()
    try:
        step = OnboardingStep((app.current_event.json_body or {})["step"])
    except (KeyError, TypeError, ValueError):
        raise BadRequestError(f"Invalid step. Must be one of: {', '.join(s.value for s in OnboardingStep)}")
    engine = build_engine(SUBSCRIPTION_TABLE_NAME)
    state = engine.suggestions.complete_step(user_id, step)
    return {"success": True, "onboarding": state.model_dump(mode="json")}


@app.exception_handler(UnknownFeatureError)
def handle_unknown_feature(exc: UnknownFeatureError):
    logger.warning(str(exc))
    return json_response(400, {"error": "Unknown feature", "message": str(exc)})


@app.exception_handler(UsageStoreError)
def handle_usage_unavailable(exc: UsageStoreError):
    logger.error(f"Usage store unavailable: {str(exc)}")
    return error_response(503, exc)


@app.exception_handler(PersistenceError)
def handle_persistence_error(exc: PersistenceError):
    logger.error(f"Subscription state unavailable: {str(exc)}")
    return error_response(503, exc)


def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
