# keyproxy/auth.py
import logging
import re

from fastapi import Request

from errors import AuthError

logger = logging.getLogger(__name__)

_BEARER = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def require_api_key(request: Request) -> str:
    """Return the caller's virtual key, or raise 401 if it is missing or not allowed."""
    authorization = request.headers.get("authorization")
    if not authorization:
        raise AuthError("Missing authorization header")

    match = _BEARER.match(authorization)
    if not match:
        raise AuthError("Invalid authorization header format")

    key = match.group(1).strip()
    if not request.app.state.allowlist.is_allowed(key):
        logger.debug("API key validation failed for key: %s...", key[:10])
        raise AuthError("Invalid API key")

    return key
