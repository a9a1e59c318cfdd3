"""Bearer-token identity extraction for the HTTP layer."""

import logging
from functools import wraps
from typing import Any, Callable, Optional

import jwt
from flask import current_app, g, request

from scraping_flow.core.errors import Unauthorized

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


def decode_owner_id(token: str, secret: str) -> str:
    """Verify ``token`` and return the owner id carried in ``id`` or ``sub``."""
    if not secret:
        raise Unauthorized("Authentication is not configured.")
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized("Token expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthorized("Invalid token.") from exc

    owner_id = payload.get("id") or payload.get("sub")
    if not owner_id:
        raise Unauthorized("User not identified.")
    return str(owner_id)


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None


def require_owner(view: Callable[..., Any]) -> Callable[..., Any]:
    """Reject the request unless it carries a valid bearer token; sets ``g.owner_id``."""

    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        token = _bearer_token()
        if token is None:
            raise Unauthorized("Token not provided. Log in to continue.")
        g.owner_id = decode_owner_id(token, current_app.config["JWT_SECRET"])
        return view(*args, **kwargs)

    return wrapper
