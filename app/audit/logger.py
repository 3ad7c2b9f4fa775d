# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Audit log for privileged administrative mutations.

Every admin mutation calls :meth:`AuditLogger.append` exactly once,
after its own change is committed. The entry is written in a separate
session so an audit failure never rolls back the mutation it describes;
instead the failure is logged at ERROR with the full entry for
operational follow-up.
"""
import logging
import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.db.models import AuditEntry
from app.db.session import SessionLocal

log = logging.getLogger(__name__)


class AuditAction(str, Enum):
    ACCESS_REQUEST_APPROVE = "access_request.approve"
    ACCESS_REQUEST_REJECT = "access_request.reject"
    WHITELIST_UPLOAD_CSV = "whitelist.upload_csv"
    WHITELIST_SYNC = "whitelist.sync"
    PARTNER_CREATE = "partner.create"
    PARTNER_UPDATE = "partner.update"
    PARTNER_DELETE = "partner.delete"


class AuditEntityType(str, Enum):
    ACCESS_REQUEST = "access_request"
    WHITELIST = "whitelist"
    PARTNER = "partner"


class AuditLogger:
    """Writes and queries audit entries."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def append(
        self,
        admin,
        action: AuditAction,
        entity_type: AuditEntityType,
        summary: str,
        entity_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """Persist one entry synchronously.

        Returns the stored entry as a dict, or None if it could not be
        written (the failure is logged, never raised).
        """
        entry = AuditEntry(
            admin_id=admin.id,
            admin_email=admin.email,
            admin_name=getattr(admin, "display_name", None),
            action=AuditAction(action).value,
            entity_type=AuditEntityType(entity_type).value,
            entity_id=entity_id,
            summary=summary,
            details=details or {},
        )
        db = self._session_factory()
        try:
            db.add(entry)
            db.commit()
            stored = entry.to_dict()
        except SQLAlchemyError as e:
            db.rollback()
            log.error(
                f"AUDIT WRITE FAILED: action={entry.action} entity={entry.entity_type}:{entity_id} "
                f"admin={admin.email} summary={summary!r} details={details!r} error={e}"
            )
            return None
        finally:
            db.close()

        log.info(f"audit {stored['action']} by {stored['adminEmail']}: {summary}")
        return stored

    def list(
        self,
        page: int = 1,
        page_size: int = 50,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        admin_email: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Newest-first page of entries with optional filters."""
        page = max(1, page)
        page_size = min(max(1, page_size), 100)

        db = self._session_factory()
        try:
            query = db.query(AuditEntry)
            if action:
                query = query.filter(AuditEntry.action == action)
            if entity_type:
                query = query.filter(AuditEntry.entity_type == entity_type)
            if admin_email:
                query = query.filter(AuditEntry.admin_email == admin_email)
            if date_from:
                query = query.filter(AuditEntry.created_at >= date_from)
            if date_to:
                query = query.filter(AuditEntry.created_at <= date_to)

            total = query.count()
            rows = (
                query.order_by(AuditEntry.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            data = [row.to_dict() for row in rows]
        finally:
            db.close()

        return {
            "data": data,
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "total": total,
                "totalPages": math.ceil(total / page_size),
            },
        }


# =============================================================================
# Singleton
# =============================================================================

_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def reset_audit_logger() -> None:
    global _audit_logger
    _audit_logger = None
