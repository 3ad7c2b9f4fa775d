# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""API key login/logout and the caller's identity.

Outside the primary domain the session cookie is not available, so
users paste an API key once; it is verified with the identity authority
and kept in an HttpOnly cookie for later requests.
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field

from app.access.decision_cache import get_decision_cache
from app.access.exceptions import Unauthenticated, ValidationError
from app.auth.dependencies import require_identity
from app.auth.identity import Identity, get_identity_resolver
from app.config import API_KEY_COOKIE_MAX_AGE, API_KEY_COOKIE_NAME, COOKIE_SECURE

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    apiKey: Optional[str] = Field(None, description="API key issued by the identity authority")


class LoginResponse(BaseModel):
    success: bool
    user: Optional[dict[str, Any]] = None


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@router.post("/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest, response: Response) -> LoginResponse:
    """Exchange an API key for an HttpOnly API key cookie."""
    api_key = (body.apiKey or "").strip()
    if not api_key:
        raise ValidationError.missing_fields("apiKey")

    identity = await get_identity_resolver().verify_credential(api_key)
    if identity is None:
        log.info(f"API key login rejected from {_get_client_ip(request)}")
        raise Unauthenticated("Invalid API key")

    response.set_cookie(
        key=API_KEY_COOKIE_NAME,
        value=api_key,
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        path="/",
        max_age=API_KEY_COOKIE_MAX_AGE,
    )
    # A previous user's decision must not carry over to the new login.
    get_decision_cache().clear(response)

    log.info(f"API key login for user {identity.id} from {_get_client_ip(request)}")
    return LoginResponse(
        success=True,
        user={"id": identity.id, "email": identity.email, "name": identity.display_name},
    )


@router.post("/logout")
async def logout(response: Response) -> dict[str, Any]:
    response.delete_cookie(
        key=API_KEY_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
    )
    get_decision_cache().clear(response)
    return {"success": True}


@router.get("/me")
async def me(identity: Identity = require_identity) -> dict[str, Any]:
    """The caller with connected accounts and derived work domains."""
    return {"data": identity.to_dict()}
