import json
from typing import Any, Dict

from aws_lambda_powertools.event_handler import Response, content_types

from ..models.errors import presentation_for


def json_response(status_code: int, body: Dict[str, Any]) -> Response:
    return Response(
        status_code=status_code,
        content_type=content_types.APPLICATION_JSON,
        body=json.dumps(body, default=str),
    )


def error_response(status_code: int, error: Exception) -> Response:
    """Error body carrying the presentation hint clients use to pick retry or dismiss"""
    presentation = presentation_for(error)
    return json_response(status_code, {
        "error": type(error).__name__,
        **presentation.model_dump(mode="json"),
    })
