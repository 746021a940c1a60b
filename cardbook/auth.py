"""Caller identity.

Authentication happens upstream: the auth gateway verifies the session and
forwards the provider's opaque user id in a header. When a proxy secret is
configured, requests must also carry it, so the header cannot be set by
clients that bypass the gateway.
"""
from __future__ import annotations

import hmac

from fastapi import Request

from .config import settings
from .errors import AuthenticationError


def get_current_user_id(request: Request) -> str:
    """FastAPI dependency returning the authenticated user id.

    Raises:
        AuthenticationError: If the identity header or proxy secret is missing or wrong
    """
    auth = settings.auth

    if auth.proxy_secret:
        presented = request.headers.get(auth.proxy_secret_header, "")
        if not hmac.compare_digest(presented.encode(), auth.proxy_secret.encode()):
            raise AuthenticationError("Unauthenticated")

    user_id = request.headers.get(auth.user_header, "").strip()
    if not user_id:
        raise AuthenticationError("Unauthenticated")
    return user_id
