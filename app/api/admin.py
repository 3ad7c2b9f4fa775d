# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Admin endpoints: access request review, audit log and whitelist operations.

All routes require an identity with the admin flag. Each mutation writes
one audit entry through the service that performs it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.access.exceptions import PartnerNotConfigured, ValidationError
from app.access.requests import AccessRequestService
from app.auth.dependencies import require_admin
from app.auth.identity import Identity
from app.audit.logger import get_audit_logger
from app.clients.catalog import get_catalog_client
from app.db.session import get_db
from app.partners import whitelist as whitelist_ops
from app.partners.service import PartnerService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================


class TransitionRequest(BaseModel):
    id: str = Field(..., description="Access request id")
    action: Literal["approve", "reject"]


class PaginatedResponse(BaseModel):
    data: list[dict[str, Any]]
    pagination: dict[str, int]


class DataResponse(BaseModel):
    data: dict[str, Any]


def _default_partner(db: Session):
    partner = PartnerService(db).get_default()
    if partner is None:
        raise PartnerNotConfigured()
    return partner


def _parse_date(value: Optional[str], field: str, end_of_day: bool = False) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid date: {value}", fields={field: "Use ISO 8601 (YYYY-MM-DD)"})
    if end_of_day and len(value) == 10:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# =============================================================================
# ACCESS REQUESTS
# =============================================================================


@router.get("/access-requests", response_model=PaginatedResponse)
def list_access_requests(
    status: str = Query("pending", description="pending, approved, rejected or all"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> PaginatedResponse:
    result = AccessRequestService(db).list(status=status, page=page, page_size=page_size)
    return PaginatedResponse(
        data=[row.to_dict() for row in result.items],
        pagination=result.pagination(),
    )


@router.patch("/access-requests", response_model=DataResponse)
def review_access_request(
    body: TransitionRequest,
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> DataResponse:
    row = AccessRequestService(db).transition(body.id, body.action, admin)
    return DataResponse(data=row.to_dict())


# =============================================================================
# AUDIT LOG
# =============================================================================


@router.get("/audit-log", response_model=PaginatedResponse)
def list_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    admin_email: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    admin: Identity = require_admin,
) -> PaginatedResponse:
    """Newest-first audit entries.

    Query parameters:
    - action: e.g. "access_request.approve"
    - entity_type: access_request, whitelist or partner
    - admin_email: exact match
    - date_from / date_to: ISO dates; a bare date_to includes the whole day
    """
    result = get_audit_logger().list(
        page=page,
        page_size=page_size,
        action=action,
        entity_type=entity_type,
        admin_email=admin_email.lower() if admin_email else None,
        date_from=_parse_date(date_from, "date_from"),
        date_to=_parse_date(date_to, "date_to", end_of_day=True),
    )
    return PaginatedResponse(**result)


# =============================================================================
# WHITELIST
# =============================================================================


@router.get("/whitelist/domains")
async def list_whitelist_domains(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """One page of the default partner's whitelist, as returned by its catalog."""
    partner = _default_partner(db)
    result = await get_catalog_client(partner).list_whitelist_page(page=page, page_size=page_size)
    return result.to_dict()


@router.get("/whitelist/individual-access")
async def list_individual_access(
    response: Response,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=1000),
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Users the default partner's catalog grants access to individually."""
    partner = _default_partner(db)
    result = await get_catalog_client(partner).list_individual_access(page=page, page_size=page_size)
    response.headers["Cache-Control"] = "no-store"
    return {
        "data": result.results,
        "pagination": {"count": result.count, "next": result.next, "previous": result.previous},
    }


@router.post("/whitelist/upload")
async def upload_whitelist(
    file: UploadFile = File(...),
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    partner = _default_partner(db)
    content = await file.read()
    return await whitelist_ops.upload_csv(
        partner,
        filename=file.filename or "",
        content=content,
        content_type=file.content_type or "",
        admin=admin,
    )


@router.post("/whitelist/sync")
async def sync_whitelist(
    admin: Identity = require_admin,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    partner = _default_partner(db)
    return await whitelist_ops.sync(partner, admin)
