# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""User-facing access request endpoints."""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.access.decision_cache import get_decision_cache
from app.access.requests import AccessRequestInput, AccessRequestService
from app.auth.dependencies import require_identity
from app.auth.identity import Identity
from app.db.session import get_db

log = logging.getLogger(__name__)

router = APIRouter(prefix="/access-request", tags=["access-request"])


class CreateAccessRequest(BaseModel):
    """Submission body. Required fields are checked by the service so
    blank strings and missing fields produce the same error."""

    companyName: Optional[str] = Field(None, description="The user's company")
    partnerName: Optional[str] = Field(None, description="The partner the user is affiliated with")
    partnerContactName: Optional[str] = None
    partnerContactEmail: Optional[str] = None


class AccessRequestEnvelope(BaseModel):
    data: Optional[dict[str, Any]] = None


@router.get("", response_model=AccessRequestEnvelope)
def get_my_request(
    identity: Identity = require_identity,
    db: Session = Depends(get_db),
) -> AccessRequestEnvelope:
    row = AccessRequestService(db).latest_for(identity.email)
    return AccessRequestEnvelope(data=row.to_dict() if row else None)


@router.post("", response_model=AccessRequestEnvelope, status_code=201)
def create_request(
    body: CreateAccessRequest,
    identity: Identity = require_identity,
    db: Session = Depends(get_db),
) -> AccessRequestEnvelope:
    row = AccessRequestService(db).create(
        identity,
        AccessRequestInput(
            company_name=body.companyName or "",
            partner_name=body.partnerName or "",
            partner_contact_name=body.partnerContactName,
            partner_contact_email=body.partnerContactEmail,
        ),
    )
    return AccessRequestEnvelope(data=row.to_dict())


@router.post("/refresh")
def refresh_access(response: Response) -> dict:
    """Clear the decision cookie so the next resolution recomputes."""
    get_decision_cache().clear(response)
    return {"success": True}
