"""
api/routes/v1/oidc.py -- OIDC-lite endpoints for registered relying parties.

Routes:
  GET  /oidc/{role}/authorize  -- requires session; 302 to redirect_uri?code=..&state=..
  POST /oidc/{role}/token      -- client credentials + code -> access token
  GET  /oidc/{role}/userinfo   -- Authorization: Bearer <access token>

The token exchange reads its body as a form (the usual OAuth client encoding)
or as JSON, chosen by Content-Type.

Authorize errors (unknown client, unregistered redirect_uri) are answered
with the JSON envelope, never with a redirect, so an attacker-supplied
redirect_uri receives nothing.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as ModelValidationError

from api.models import Envelope, TokenRequest
from auth.broker import AuthorizationBroker
from auth.dependencies import bearer_token, get_current_principal
from auth.models import Principal, PrincipalKind

router = APIRouter()


def _broker(request: Request) -> AuthorizationBroker:
    return request.app.state.broker


_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def token_request(request: Request) -> TokenRequest:
    """Read the token exchange fields from a form or a JSON body."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith(_FORM_TYPES):
            raw = dict(await request.form())
        else:
            raw = await request.json()
    except ValueError as exc:
        raise RequestValidationError([{"loc": ("body",), "msg": "Malformed body", "type": "value_error"}]) from exc
    try:
        return TokenRequest.model_validate(raw)
    except ModelValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


@router.get("/oidc/{role}/authorize")
def authorize(
    request: Request,
    client_id: str = Query(min_length=1, max_length=64),
    redirect_uri: str = Query(min_length=1, max_length=2048),
    response_type: str = Query(min_length=1, max_length=64),
    state: Optional[str] = Query(default=None, max_length=1024),
    principal: Principal = Depends(get_current_principal),
) -> RedirectResponse:
    location = _broker(request).authorize(client_id, redirect_uri, response_type, state, principal)
    return RedirectResponse(location, status_code=302)


@router.post("/oidc/{role}/token")
def token(
    request: Request,
    role: PrincipalKind,
    body: TokenRequest = Depends(token_request),
) -> JSONResponse:
    grant = _broker(request).token(
        body.code,
        body.client_id,
        body.client_secret,
        body.redirect_uri,
        body.grant_type,
        role,
    )
    resp = JSONResponse(content=Envelope(success=True, data=grant, message="Token issued").model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/oidc/{role}/userinfo")
def userinfo(request: Request, role: PrincipalKind) -> Envelope:
    profile = _broker(request).userinfo(bearer_token(request), role)
    return Envelope(success=True, data=profile, message="OK")
