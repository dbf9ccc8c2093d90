"""Classification of upstream generation API failures into retryable vs. terminal."""

import json
from dataclasses import dataclass

MODEL_UNAVAILABLE_PATTERN = "No active flux servers available"


@dataclass(frozen=True)
class ErrorClassification:
    is_retryable: bool
    reason: str


def classify_http_error(status_code: int) -> ErrorClassification:
    """Classify an HTTP status code.

    Classification rules:
        - 429 (rate limit) → retryable
        - 5xx (server errors) → retryable
        - 401/403 (authentication) → terminal
        - 400 (bad request) → terminal
        - 404 (not found) → terminal
        - Other 4xx → terminal
        - Anything else → terminal ("unknown")
    """
    if status_code == 429:
        return ErrorClassification(is_retryable=True, reason="rate_limited")
    if status_code >= 500:
        return ErrorClassification(is_retryable=True, reason="server_error")
    if status_code in (401, 403):
        return ErrorClassification(is_retryable=False, reason="auth_error")
    if status_code == 400:
        return ErrorClassification(is_retryable=False, reason="validation_error")
    if status_code == 404:
        return ErrorClassification(is_retryable=False, reason="not_found")
    if 400 <= status_code < 500:
        return ErrorClassification(is_retryable=False, reason="client_error")
    return ErrorClassification(is_retryable=False, reason="unknown")


def is_model_unavailable(error_text: str) -> bool:
    """Detect the upstream's transient "no capacity" message.

    The message may appear directly in the body or as the ``message`` or
    ``error`` field of a JSON object body.
    """
    if MODEL_UNAVAILABLE_PATTERN in error_text:
        return True

    try:
        parsed = json.loads(error_text)
    except ValueError:
        return False

    if isinstance(parsed, dict):
        nested = parsed.get("message")
        if nested is None:
            nested = parsed.get("error")
        if isinstance(nested, str) and MODEL_UNAVAILABLE_PATTERN in nested:
            return True

    return False


def classify_api_error(status_code: int, error_text: str) -> ErrorClassification:
    """Classify an upstream error response by body first, then by status code."""
    if is_model_unavailable(error_text):
        return ErrorClassification(is_retryable=True, reason="model_unavailable")
    return classify_http_error(status_code)
