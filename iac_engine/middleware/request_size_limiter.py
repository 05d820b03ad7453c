"""
Request size limiting middleware for FastAPI.
Protects endpoints from oversized payloads.
"""
from typing import Any, Dict, Optional, Set
import json
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


# Size limit constants
MAX_REQUEST_BODY_SIZE = 1_048_576  # 1 MB in bytes
MAX_CONFIGURATION_SIZE = 512_000  # 500 KB in bytes
MAX_PROMPT_SIZE = 20_000

# Endpoints carrying configuration text -> the body fields holding it
CONFIGURATION_FIELDS: Dict[str, Set[str]] = {
    "/api/audit": {"content"},
    "/api/audit/diff": {"old_content", "new_content"},
    "/api/templates": {"content"},
}


def _too_large(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={
            "status": "error",
            "error": "REQUEST_TOO_LARGE",
            "message": message,
        }
    )


def validate_payload(path: str, body_json: Any) -> Optional[str]:
    """
    Payload-specific limits for an endpoint.

    Returns:
        Error message if validation fails, None if valid
    """
    if not isinstance(body_json, dict):
        return None

    for field_name in CONFIGURATION_FIELDS.get(path, ()):
        content = body_json.get(field_name)
        if isinstance(content, str):
            size = len(content.encode("utf-8"))
            if size > MAX_CONFIGURATION_SIZE:
                return (
                    f"Configuration size exceeds limit: "
                    f"{size} bytes (limit: {MAX_CONFIGURATION_SIZE} bytes)"
                )

    if path == "/api/templates/generate":
        prompt = body_json.get("prompt")
        if isinstance(prompt, str) and len(prompt) > MAX_PROMPT_SIZE:
            return f"Prompt too large: {len(prompt)} characters (limit: {MAX_PROMPT_SIZE})"

    return None


class RequestSizeLimiterMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for request size limiting.

    Every request with a body is held to MAX_REQUEST_BODY_SIZE; configuration
    endpoints are additionally held to MAX_CONFIGURATION_SIZE per text field.
    """

    async def dispatch(self, request: Request, call_next: ASGIApp):
        path = request.url.path
        if request.method not in ("POST", "PUT", "PATCH"):
            return await call_next(request)

        try:
            content_length = request.headers.get("Content-Length")
            if content_length:
                try:
                    if int(content_length) > MAX_REQUEST_BODY_SIZE:
                        logger.info(f"Request body size exceeded for {path}: {content_length} bytes")
                        return _too_large("Request body size exceeds allowed limit of 1 MB.")
                except ValueError:
                    # Invalid Content-Length header, continue to body reading
                    pass

            body_bytes = await request.body()
            if len(body_bytes) > MAX_REQUEST_BODY_SIZE:
                logger.info(f"Request body size exceeded for {path}: {len(body_bytes)} bytes")
                return _too_large("Request body size exceeds allowed limit of 1 MB.")

            if body_bytes and (path in CONFIGURATION_FIELDS or path == "/api/templates/generate"):
                try:
                    body_json = json.loads(body_bytes.decode("utf-8"))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    # Size is within limits; let FastAPI report the malformed body
                    body_json = None

                validation_error = validate_payload(path, body_json)
                if validation_error:
                    logger.info(f"Payload validation failed for {path}: {validation_error}")
                    return _too_large(validation_error)

            # The body read above is cached on the request and replayed to the route

        except Exception as error:
            # Fail closed on any error
            logger.error(f"Error during size limiting for {path}: {error}", exc_info=True)
            return _too_large("Request validation failed.")

        return await call_next(request)
