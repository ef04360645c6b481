"""
Quota Middleware for Lunanul API Endpoints

Consumes one use of a feature before the wrapped handler runs, and refuses
the request when the user's tier or monthly quota does not allow it. A use
is refunded when the handler raises or answers with a non-2xx status.
"""

import json
import os
from functools import wraps
from typing import Dict, Any, Callable, Optional
from aws_lambda_powertools import Logger

from ..models.errors import AlreadyProcessingError, PersistenceError, UsageStoreError
from ..models.subscription import AccessDecision, UpgradeReason
from ..services.engine import EntitlementEngine, build_engine
from .auth import extract_user_id_from_event

logger = Logger()


def create_api_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create an API Gateway response

    Args:
        status_code: HTTP status code
        body: Response body dict

    Returns:
        Dict: API Gateway response format
    """
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Headers': 'Content-Type,Authorization',
            'Access-Control-Allow-Methods': 'GET,POST,OPTIONS'
        },
        'body': json.dumps(body, default=str)
    }


def denial_status_code(decision: AccessDecision) -> int:
    """503 when usage is unavailable, 429 for spent quotas, 403 for locked features"""
    if decision.fail_closed:
        return 503
    if decision.requirement.reason == UpgradeReason.USAGE_LIMIT:
        return 429
    return 403


def denial_body(decision: AccessDecision) -> Dict[str, Any]:
    if decision.fail_closed:
        return {
            'error': 'Usage unavailable',
            'message': "We couldn't check your usage right now. Please try again.",
        }
    requirement = decision.requirement
    return {
        'error': 'Quota exceeded' if requirement.is_usage_based else 'Upgrade required',
        'message': f"{requirement.feature_name} requires {requirement.required_tier.display_name}",
        'upgrade': requirement.model_dump(mode='json'),
    }


def denial_response(decision: AccessDecision) -> Dict[str, Any]:
    return create_api_response(denial_status_code(decision), denial_body(decision))


def quota_check(feature_key: str, table_name: Optional[str] = None):
    """
    Decorator that consumes one use of a feature before the handler runs

    Args:
        feature_key: Catalog key of the feature the handler provides
        table_name: Optional DynamoDB table name (uses env var if not provided)

    Usage:
        @quota_check('readings')
        def create_reading_handler(event, context):
            # Runs only when the reading was allowed and counted
            pass
    """
    def decorator(handler_func: Callable) -> Callable:
        @wraps(handler_func)
        def wrapper(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
            user_id = extract_user_id_from_event(event)
            if not user_id:
                return create_api_response(401, {'error': 'Authentication required'})

            subscription_table = table_name or os.environ.get('SUBSCRIPTION_TABLE_NAME', 'lunanul-subscriptions-dev')
            engine = build_engine(subscription_table)

            try:
                status = engine.subscriptions.get_status(user_id)
            except PersistenceError as e:
                logger.error(f"Subscription unavailable for user {user_id}: {str(e)}")
                return create_api_response(503, {'error': 'Subscription unavailable'})

            idempotency_key = (event.get('headers') or {}).get('Idempotency-Key')
            try:
                decision = engine.entitlements.consume(user_id, status, feature_key, idempotency_key)
            except AlreadyProcessingError:
                return create_api_response(409, {'error': 'Already processing'})

            if not decision.allowed:
                logger.warning(f"Quota check failed for user {user_id}, feature: {feature_key}")
                return denial_response(decision)

            logger.info(f"Quota check passed for user {user_id}, feature: {feature_key}")
            try:
                response = handler_func(event, context)
            except Exception:
                if decision.consumed:
                    _refund(engine, user_id, feature_key, idempotency_key)
                raise

            if decision.consumed and not 200 <= response.get('statusCode', 200) < 300:
                logger.warning(f"Handler failed with {response.get('statusCode')}, refunding {feature_key} for user {user_id}")
                _refund(engine, user_id, feature_key, idempotency_key)
            return response

        return wrapper
    return decorator


def _refund(engine: EntitlementEngine, user_id: str, feature_key: str, idempotency_key: Optional[str]) -> None:
    try:
        engine.entitlements.refund(user_id, feature_key, idempotency_key)
    except UsageStoreError as e:
        logger.error(f"Failed to refund {feature_key} for user {user_id}: {str(e)}")
