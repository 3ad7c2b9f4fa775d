# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Partner management endpoints (admin only).

The catalog credential is write-only: it is accepted on create/update
and never returned.
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.auth.dependencies import require_admin
from app.auth.identity import Identity
from app.db.session import get_db
from app.partners.service import PartnerInput, PartnerService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/partners", tags=["partners"])


class PartnerBody(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    catalogEndpoint: Optional[str] = Field(None, description="Base URL of the partner's catalog API")
    catalogCredential: Optional[str] = Field(None, description="Catalog API token (write-only)")
    ownerEmail: Optional[str] = None
    isActive: Optional[bool] = None
    isDefault: Optional[bool] = None

    def to_input(self) -> PartnerInput:
        return PartnerInput(
            name=self.name,
            slug=self.slug,
            catalog_endpoint=self.catalogEndpoint,
            catalog_credential=self.catalogCredential,
            owner_email=self.ownerEmail,
            is_active=self.isActive,
            is_default=self.isDefault,
        )


@router.get("")
def list_partners(
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return {"data": [p.to_dict() for p in PartnerService(db).list()]}


@router.get("/{partner_id}")
def get_partner(
    partner_id: str,
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return {"data": PartnerService(db).get(partner_id).to_dict()}


@router.post("", status_code=201)
def create_partner(
    body: PartnerBody,
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    partner = PartnerService(db).create(body.to_input(), admin)
    return {"data": partner.to_dict()}


@router.patch("/{partner_id}")
def update_partner(
    partner_id: str,
    body: PartnerBody,
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    partner = PartnerService(db).update(partner_id, body.to_input(), admin)
    return {"data": partner.to_dict()}


@router.delete("/{partner_id}", status_code=204)
def delete_partner(
    partner_id: str,
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> Response:
    PartnerService(db).delete(partner_id, admin)
    return Response(status_code=204)
