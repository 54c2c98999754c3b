"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Two token sources are checked in priority order:
  1. "access_token" cookie -- set by the login routes (httpOnly, SameSite=strict).
  2. Authorization: Bearer <token> header -- API clients.

The principal kind comes from the `{role}` path parameter, and the token is
verified with that kind's signing key, so a user token presented on an admin
route fails signature verification. Tokens carrying an "aud" claim were
minted for a relying party by the broker; they unlock /userinfo only, never a
first-party session.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises Unauthorized.

Layer rule: no imports from api/. auth/dependencies.py may import from fastapi
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Unauthorized
from auth.models import Principal, PrincipalKind
from auth.tokens import cookie_token


def bearer_token(request: Request) -> str | None:
    """Return the token from an `Authorization: Bearer` header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_principal(request: Request, role: PrincipalKind) -> Principal | None:
    """Attempt to authenticate the request as a principal of kind `role`.

    Returns the Principal on success, None on any failure. Never raises.
    """
    issuer = request.app.state.issuer
    for token in (cookie_token(request), bearer_token(request)):
        if not token:
            continue
        payload = issuer.decode_bearer_token(token, role)
        if payload is None or "aud" in payload:
            continue
        return request.app.state.store.find_by_id(role, payload["principal_id"])
    return None


def get_current_principal(request: Request, role: PrincipalKind) -> Principal:
    """Require a session. Raises Unauthorized if the request is not authenticated.

    Use as a FastAPI dependency on routes under /{role}/:
        @router.post("/{role}/enable-two-factor")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request, role)
    if principal is None:
        raise Unauthorized()
    return principal
