# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Manual access request workflow.

States: pending -> approved | rejected. Both outcomes are terminal for
the row; a user may submit a new request after a rejection.

At most one pending request per email is enforced twice: a pre-check
before insert, and a partial unique index on (user_email) WHERE
status = 'pending' that turns a lost race into the same conflict.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.access.exceptions import ConflictError, NotFound, StorageError, ValidationError
from app.audit.logger import AuditAction, AuditEntityType, get_audit_logger
from app.auth.identity import Identity
from app.db.models import AccessRequest

log = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
STATUSES = (PENDING, APPROVED, REJECTED)

ACTIONS = {"approve": APPROVED, "reject": REJECTED}


@dataclass
class AccessRequestInput:
    company_name: str
    partner_name: str
    partner_contact_name: Optional[str] = None
    partner_contact_email: Optional[str] = None


@dataclass
class Page:
    items: list
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    def pagination(self) -> dict:
        return {
            "page": self.page,
            "pageSize": self.page_size,
            "total": self.total,
            "totalPages": self.total_pages,
        }


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class AccessRequestService:
    """Access request operations bound to one database session."""

    def __init__(self, db: Session):
        self.db = db

    def _pending_for(self, email: str) -> Optional[AccessRequest]:
        return (
            self.db.query(AccessRequest)
            .filter(AccessRequest.user_email == email, AccessRequest.status == PENDING)
            .first()
        )

    def create(self, identity: Identity, data: AccessRequestInput) -> AccessRequest:
        """Submit a new pending request for ``identity``.

        Raises:
            ValidationError: company or partner name missing.
            ConflictError: a pending request already exists for the email.
            StorageError: the insert failed for another reason.
        """
        company = _clean(data.company_name)
        partner = _clean(data.partner_name)
        missing = [name for name, value in (("companyName", company), ("partnerName", partner)) if not value]
        if missing:
            raise ValidationError.missing_fields(*missing)

        email = identity.email.strip().lower()
        if self._pending_for(email) is not None:
            log.info(f"Duplicate pending access request rejected for user {identity.id}")
            raise ConflictError.duplicate_request()

        row = AccessRequest(
            user_id=identity.id,
            user_email=email,
            user_name=identity.display_name,
            company_name=company,
            partner_name=partner,
            partner_contact_name=_clean(data.partner_contact_name),
            partner_contact_email=_clean(data.partner_contact_email),
            status=PENDING,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            log.info(f"Concurrent pending access request rejected for user {identity.id}")
            raise ConflictError.duplicate_request()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Failed to create access request for user {identity.id}: {e}")
            raise StorageError("Failed to submit request")

        log.info(f"Access request {row.id} created for user {identity.id} ({company})")
        return row

    def latest_for(self, email: str) -> Optional[AccessRequest]:
        """The pending request if any, else the most recent one."""
        email = email.strip().lower()
        pending = self._pending_for(email)
        if pending is not None:
            return pending
        return (
            self.db.query(AccessRequest)
            .filter(AccessRequest.user_email == email)
            .order_by(AccessRequest.created_at.desc())
            .first()
        )

    def has_approved(self, email: str) -> bool:
        return (
            self.db.query(AccessRequest.id)
            .filter(
                AccessRequest.user_email == email.strip().lower(),
                AccessRequest.status == APPROVED,
            )
            .first()
            is not None
        )

    def list(self, status: Optional[str] = None, page: int = 1, page_size: int = 20) -> Page:
        from app.config import ACCESS_REQUEST_MAX_PAGE_SIZE

        page = max(1, page)
        page_size = min(max(1, page_size), ACCESS_REQUEST_MAX_PAGE_SIZE)
        if status not in (None, "all") and status not in STATUSES:
            raise ValidationError(
                f"Invalid status filter: {status}",
                fields={"status": f"Must be one of: all, {', '.join(STATUSES)}"},
            )

        query = self.db.query(AccessRequest)
        if status and status != "all":
            query = query.filter(AccessRequest.status == status)

        total = query.count()
        items = (
            query.order_by(AccessRequest.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return Page(items=items, page=page, page_size=page_size, total=total)

    def transition(self, request_id: str, action: str, admin: Identity) -> AccessRequest:
        """Approve or reject a pending request.

        The status change is a conditional update on ``status = 'pending'``
        so two admins reviewing the same row cannot both succeed.

        Raises:
            ValidationError: unknown action.
            NotFound: no request with ``request_id``.
            ConflictError: the request is no longer pending.
            StorageError: the update failed.
        """
        new_status = ACTIONS.get(action)
        if new_status is None:
            raise ValidationError(
                f"Invalid action: {action}",
                fields={"action": "Must be 'approve' or 'reject'"},
            )

        reviewed_at = datetime.now(timezone.utc)
        try:
            result = self.db.execute(
                update(AccessRequest)
                .where(AccessRequest.id == request_id, AccessRequest.status == PENDING)
                .values(status=new_status, reviewed_by=admin.email, reviewed_at=reviewed_at)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Failed to {action} access request {request_id}: {e}")
            raise StorageError("Failed to update request")

        row = self.db.get(AccessRequest, request_id, populate_existing=True)
        if row is None:
            raise NotFound("Access request", request_id)
        if result.rowcount == 0:
            log.info(f"Refusing to {action} access request {request_id}: status is {row.status}")
            raise ConflictError.invalid_transition(request_id, row.status)

        log.info(f"Access request {request_id} {new_status} by {admin.email}")
        get_audit_logger().append(
            admin=admin,
            action=AuditAction.ACCESS_REQUEST_APPROVE if new_status == APPROVED else AuditAction.ACCESS_REQUEST_REJECT,
            entity_type=AuditEntityType.ACCESS_REQUEST,
            entity_id=row.id,
            summary=f"{'Approved' if new_status == APPROVED else 'Rejected'} access request from "
                    f"{row.user_email} ({row.company_name})",
            details={
                "userEmail": row.user_email,
                "userName": row.user_name,
                "companyName": row.company_name,
                "partnerName": row.partner_name,
                "previousStatus": PENDING,
                "newStatus": new_status,
            },
        )
        return row
