"""Shared helpers for API route modules."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from fastapi.responses import JSONResponse
    from starlette.requests import Request

from trellis.errors import (
    CircularMoveError,
    CircularRelationshipError,
    CountConstraintViolationError,
    DepthLimitExceededError,
    DuplicateRelationshipError,
    DuplicateTransitionError,
    HasChildrenError,
    InvalidChildTypeError,
    InvalidFieldValueError,
    InvalidTemplateSyntaxError,
    NotFoundError,
    PermissionDeniedError,
    StatusConflictError,
    TransitionNotAllowedError,
    TrellisError,
    ValidationFailedError,
)
from trellis.validation import sanitize_actor as _sanitize_actor

logger = logging.getLogger(__name__)

_BOOL_WORDS = {"1": True, "true": True, "yes": True, "on": True, "0": False, "false": False, "no": False, "off": False}

# Engine failures that describe a conflict with existing state rather than bad input.
_CONFLICT_ERRORS: tuple[type[TrellisError], ...] = (
    CountConstraintViolationError,
    DuplicateRelationshipError,
    DuplicateTransitionError,
    HasChildrenError,
    StatusConflictError,
    TransitionNotAllowedError,
)

# Well-formed requests that break a hierarchy, template or field rule.
_VALIDATION_ERRORS: tuple[type[TrellisError], ...] = (
    CircularMoveError,
    CircularRelationshipError,
    DepthLimitExceededError,
    InvalidChildTypeError,
    InvalidFieldValueError,
    InvalidTemplateSyntaxError,
)


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    from fastapi.responses import JSONResponse

    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


def _engine_error(exc: Exception) -> JSONResponse:
    """Map an engine exception to its HTTP response."""
    if isinstance(exc, NotFoundError):
        return _error_response(str(exc), exc.code, 404)
    if isinstance(exc, PermissionDeniedError):
        return _error_response(str(exc), exc.code, 403, {"user": exc.user, "action": exc.action, "scope": exc.scope})
    if isinstance(exc, ValidationFailedError):
        return _error_response("Transition validation failed", exc.code, 422, {"errors": exc.errors})
    if isinstance(exc, _CONFLICT_ERRORS):
        return _error_response(str(exc), exc.code, 409)
    if isinstance(exc, _VALIDATION_ERRORS):
        return _error_response(str(exc), exc.code, 422)
    code = exc.code if isinstance(exc, TrellisError) else "VALIDATION_ERROR"
    return _error_response(str(exc), code, 400)


def _bad_request(message: str) -> JSONResponse:
    return _error_response(message, "VALIDATION_ERROR", 400)


async def _parse_json_body(request: Request) -> dict[str, Any] | JSONResponse:
    """Decode the request body, which must be a JSON object."""
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request("Invalid JSON body")
    if isinstance(body, dict):
        return body
    return _bad_request("Request body must be a JSON object")


def _validate_actor(value: Any) -> tuple[str, JSONResponse | None]:
    """Clean an actor name, returning ``(actor, None)`` or ``("", error)``."""
    cleaned, problem = _sanitize_actor(value)
    return (cleaned, None) if not problem else ("", _bad_request(problem))


def _require_str(body: Mapping[str, Any], key: str) -> str | JSONResponse:
    value = body.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return _bad_request(f"'{key}' is required and must be a non-empty string")


def _int_param(params: Mapping[str, str], name: str, default: int, minimum: int) -> int | JSONResponse:
    raw = params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return _bad_request(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        return _bad_request(f"{name} must be >= {minimum}, got {value}")
    return value


def _parse_bool_value(raw: str, name: str) -> bool | JSONResponse:
    flag = raw.strip().lower()
    if flag not in _BOOL_WORDS:
        return _bad_request(f"Invalid boolean value for {name}: {raw!r}")
    return _BOOL_WORDS[flag]


def _parse_pagination(params: Mapping[str, str], default_limit: int = 100) -> tuple[int, int] | JSONResponse:
    """``limit`` (>= 1) and ``offset`` (>= 0) from the query string."""
    limit = _int_param(params, "limit", default_limit, 1)
    if not isinstance(limit, int):
        return limit
    offset = _int_param(params, "offset", 0, 0)
    if not isinstance(offset, int):
        return offset
    return limit, offset
