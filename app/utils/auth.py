"""Authentication helpers for GymDesk APIs."""

from __future__ import annotations

from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, request, session

from ..errors import AuthError, ConfigurationError, PermissionDenied


def decode_access_token(token: str, secret: str) -> Dict[str, Any]:
    """Validate and decode a hosted-auth access token.

    Parameters
    ----------
    token:
        The encoded JWT string sent in the ``Authorization`` header.
    secret:
        The project's JWT secret, supplied via ``SUPABASE_JWT_SECRET``.

    Returns
    -------
    dict
        The decoded token payload.

    Raises
    ------
    AuthError
        If the token is missing, invalid or expired.
    ConfigurationError
        If the secret is not configured on the server.
    """

    if not secret:
        raise ConfigurationError("Bearer authentication is not configured on this server.")

    if not token:
        raise AuthError("Authorization token missing.")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience="authenticated",
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Authorization token has expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Authorization token is invalid.") from exc

    return payload


def user_from_claims(payload: Dict[str, Any]) -> Dict[str, Any]:
    metadata = payload.get("user_metadata") or {}
    return {
        "id": payload["sub"],
        "email": payload.get("email"),
        "first_name": metadata.get("first_name"),
        "last_name": metadata.get("last_name"),
        "role": metadata.get("role"),
    }


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def get_current_user() -> Optional[Dict[str, Any]]:
    """Return the caller from the bearer token, else from the session cookie."""

    if "current_user" in g:
        return g.current_user

    user: Optional[Dict[str, Any]] = None
    token = _bearer_token()
    if token:
        payload = decode_access_token(token, current_app.settings.supabase_jwt_secret)
        user = user_from_claims(payload)
    elif session.get("user"):
        user = dict(session["user"])

    g.current_user = user
    return user


def login_required(view):
    """Decorator ensuring the caller is authenticated before accessing a view."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if not get_current_user():
            raise AuthError("Unauthorized")
        return view(*args, **kwargs)

    return wrapped


def role_required(*roles: str):
    """Decorator restricting a view to callers whose role is in *roles*."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = get_current_user()
            if not user:
                raise AuthError("Unauthorized")
            if user.get("role") not in roles:
                raise PermissionDenied("Forbidden")
            return view(*args, **kwargs)

        return wrapped

    return decorator
