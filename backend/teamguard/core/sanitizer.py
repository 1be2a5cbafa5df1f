"""Redaction of secrets from URLs, error messages and parameter maps.

Anything that came from a user or a third-party provider goes through
one of these functions before it is logged or written to the database.
All functions return None for None or empty input, never raise, and
are idempotent: sanitizing already-sanitized text changes nothing.
"""

import re
from typing import Any

REDACTED = "***REDACTED***"
JWT_REDACTED = "***JWT_REDACTED***"

# Query parameters whose name ends in one of these (token, access_token,
# idToken, apikey, auth, password, ...) have their value replaced.
_QUERY_SECRET = re.compile(
    r"(?P<name>[\w.\-]*(?:token|key|auth|password)=)[^&#\s]+",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(?P<scheme>Bearer)\s+[^\s&,}\"']+", re.IGNORECASE)
# Three dot-separated base64url segments, header and payload starting with '{"'
_JWT = re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")
_LABELED_SECRET = re.compile(
    r"(?P<label>password|token|authorization)['\":\s]+[^\s,}]+",
    re.IGNORECASE,
)

SENSITIVE_PARAM_KEYS = (
    "password",
    "token",
    "idtoken",
    "accesstoken",
    "refreshtoken",
    "credentials",
    "auth",
    "secret",
    "apikey",
    "api_key",
)


def _redact_query(text: str) -> str:
    text = _QUERY_SECRET.sub(lambda m: f"{m.group('name')}{REDACTED}", text)
    return _BEARER.sub(lambda m: f"{m.group('scheme')} {REDACTED}", text)


def sanitize_endpoint(url: str | None) -> str | None:
    """Redact credential-bearing query parameters and Bearer values from a URL."""
    if not url:
        return None
    return _redact_query(str(url))


def _message_of(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def sanitize_error(error: Any) -> str | None:
    """Extract a message from an exception (or any value) and redact secrets.

    Redacts JWT-shaped strings, Bearer tokens, values labeled password,
    token or authorization, and credential-bearing query parameters of
    any URL embedded in the message.
    """
    if error is None:
        return None
    message = _message_of(error)
    if not message:
        return None

    message = _JWT.sub(JWT_REDACTED, message)
    message = _redact_query(message)
    return _LABELED_SECRET.sub(lambda m: f"{m.group('label')}: {REDACTED}", message)


def sanitize_params(params: dict[str, Any] | None) -> dict[str, Any] | None:
    """Shallow copy of params with values of sensitive keys replaced."""
    if not params:
        return None

    sanitized = dict(params)
    for key in sanitized:
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_PARAM_KEYS):
            sanitized[key] = REDACTED
    return sanitized


def sanitize_item_errors(item_errors: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    """Sanitize the ``error`` field of every per-item error entry."""
    if not item_errors:
        return None
    return [
        {**item, "error": sanitize_error(item.get("error"))} if isinstance(item, dict)
        else {"error": sanitize_error(item)}
        for item in item_errors
    ]
