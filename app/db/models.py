# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""SQLAlchemy models for partners, access requests and the audit log.

The access_requests table carries a partial unique index so that at most
one pending row can exist per email on stores that support it (SQLite,
PostgreSQL). The service layer also pre-checks before inserting.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Partner(Base):
    """An organization whose whitelist gates perk access."""
    __tablename__ = "partners"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    catalog_endpoint = Column(String(500), nullable=False)
    catalog_credential = Column(String(500), nullable=False)
    owner_email = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    @property
    def team_domain(self) -> str | None:
        if not self.owner_email or "@" not in self.owner_email:
            return None
        return self.owner_email.rsplit("@", 1)[1].strip().lower() or None

    def to_dict(self) -> dict:
        # catalog_credential is never serialized
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "catalogEndpoint": self.catalog_endpoint,
            "ownerEmail": self.owner_email,
            "isActive": self.is_active,
            "isDefault": self.is_default,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class AccessRequest(Base):
    """A manual request for perk access, reviewed by an admin."""
    __tablename__ = "access_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), nullable=False)
    user_email = Column(String(255), nullable=False, index=True)  # lowercased
    user_name = Column(String(255), nullable=False, default="")
    company_name = Column(String(255), nullable=False)
    partner_name = Column(String(255), nullable=False)
    partner_contact_name = Column(String(255), nullable=True)
    partner_contact_email = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index(
            "uq_access_requests_one_pending",
            "user_email",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userName": self.user_name,
            "companyName": self.company_name,
            "partnerName": self.partner_name,
            "partnerContactName": self.partner_contact_name,
            "partnerContactEmail": self.partner_contact_email,
            "status": self.status,
            "reviewedBy": self.reviewed_by,
            "reviewedAt": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class AuditEntry(Base):
    """Immutable record of a privileged administrative mutation."""
    __tablename__ = "audit_entries"

    id = Column(String(36), primary_key=True, default=_uuid)
    admin_id = Column(String(255), nullable=False)
    admin_email = Column(String(255), nullable=False, index=True)
    admin_name = Column(String(255), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(255), nullable=True)
    summary = Column(Text, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "adminId": self.admin_id,
            "adminEmail": self.admin_email,
            "adminName": self.admin_name,
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "summary": self.summary,
            "details": self.details or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
