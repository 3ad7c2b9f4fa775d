# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Access decision endpoints.

- GET  /access/status          summary of the cached decision
- POST /access/resolve         cache-aware resolution for the caller
- POST /access/animation-shown flag the welcome animation as shown
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.access.decision_cache import get_decision_cache
from app.access.exceptions import PartnerNotConfigured
from app.access.service import get_access_service
from app.auth.dependencies import require_identity
from app.auth.identity import Identity
from app.db.session import get_db
from app.partners.service import PartnerService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/access", tags=["access"])


class AccessStatusResponse(BaseModel):
    granted: bool
    reason: Optional[str] = None
    matchedDomain: Optional[str] = None


class ResolveResponse(BaseModel):
    granted: bool
    reason: str
    matchedDomain: Optional[str] = None
    matchedPartnerDomain: Optional[str] = None
    animationShown: bool = False
    cached: bool = Field(False, description="True when served from the decision cookie")


class SuccessResponse(BaseModel):
    success: bool


@router.get("/status", response_model=AccessStatusResponse, response_model_exclude_none=True)
def access_status(request: Request, db: Session = Depends(get_db)) -> AccessStatusResponse:
    """Summary of the caller's cached decision.

    The token is server-encrypted, so no identity call is needed. A
    decision computed for a partner other than the current default is
    reported as not granted.
    """
    decision = get_decision_cache().load(request)
    if decision is None:
        return AccessStatusResponse(granted=False)

    partner = PartnerService(db).get_default()
    if partner is None or partner.id != decision.partner_id:
        return AccessStatusResponse(granted=False)
    return AccessStatusResponse(**decision.summary())


@router.post("/resolve", response_model=ResolveResponse)
async def resolve_access(
    request: Request,
    response: Response,
    identity: Identity = require_identity,
    db: Session = Depends(get_db),
) -> ResolveResponse:
    partner = PartnerService(db).get_default()
    if partner is None:
        log.error("Access resolution requested but no default partner is configured")
        raise PartnerNotConfigured()

    resolution = await get_access_service().resolve(request, response, identity, partner)
    decision = resolution.decision
    return ResolveResponse(
        granted=decision.granted,
        reason=decision.reason.value,
        matchedDomain=decision.matched_domain,
        matchedPartnerDomain=decision.matched_partner_domain,
        animationShown=decision.animation_shown,
        cached=resolution.from_cache,
    )


@router.post("/animation-shown", response_model=SuccessResponse)
def animation_shown(request: Request, response: Response) -> SuccessResponse:
    return SuccessResponse(success=get_decision_cache().mark_animation_shown(request, response))
