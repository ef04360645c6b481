"""
Authentication utilities for extracting user information from API Gateway events.
"""
from typing import Dict, Any, Optional
from aws_lambda_powertools import Logger

logger = Logger()


def get_all_user_claims(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract the Cognito claims API Gateway placed in requestContext.authorizer.claims.

    Missing or null sections yield an empty dict.
    """
    request_context = event.get("requestContext") or {}
    authorizer = request_context.get("authorizer") or {}
    return authorizer.get("claims") or {}


def extract_user_id_from_event(event: Dict[str, Any]) -> Optional[str]:
    """
    Extract user_id from API Gateway event context (Cognito JWT).

    Args:
        event: API Gateway event dictionary

    Returns:
        User ID (sub claim) from the JWT token, or None if not found
    """
    user_id = get_all_user_claims(event).get("sub")
    if not user_id:
        logger.warning("No user_id found in JWT claims")
        return None
    logger.debug(f"Successfully extracted user_id: {user_id}")
    return user_id
