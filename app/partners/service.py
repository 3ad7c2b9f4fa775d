# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Partner management.

Exactly zero or one active partner is the default. Setting a new
default clears the previous one and sets the new one in the same
transaction; if that transaction fails nothing changes and a
StorageError is raised. Any change that can alter access outcomes
drops the cached whitelist so the next resolution refetches it.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.access.exceptions import ConflictError, NotFound, StorageError, ValidationError
from app.access.whitelist import get_whitelist_cache
from app.audit.logger import AuditAction, AuditEntityType, get_audit_logger
from app.auth.identity import Identity
from app.db.models import Partner

log = logging.getLogger(__name__)

MASKED = "***"

# Attribute name -> wire name used in audit details
_EDITABLE_FIELDS = {
    "name": "name",
    "slug": "slug",
    "catalog_endpoint": "catalogEndpoint",
    "catalog_credential": "catalogCredential",
    "owner_email": "ownerEmail",
    "is_active": "isActive",
    "is_default": "isDefault",
}


@dataclass
class PartnerInput:
    name: Optional[str] = None
    slug: Optional[str] = None
    catalog_endpoint: Optional[str] = None
    catalog_credential: Optional[str] = None
    owner_email: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None

    def provided(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def _mask(field_name: str, value: Any) -> Any:
    return MASKED if field_name == "catalog_credential" else value


class PartnerService:
    def __init__(self, db: Session):
        self.db = db

    def list(self) -> list[Partner]:
        return self.db.query(Partner).order_by(Partner.created_at.asc()).all()

    def get(self, partner_id: str) -> Partner:
        partner = self.db.get(Partner, partner_id)
        if partner is None:
            raise NotFound("Partner", partner_id)
        return partner

    def get_default(self) -> Optional[Partner]:
        """The active default partner, or None when none is configured."""
        return (
            self.db.query(Partner)
            .filter(Partner.is_default.is_(True), Partner.is_active.is_(True))
            .first()
        )

    def _clear_default(self, except_id: Optional[str] = None) -> None:
        stmt = update(Partner).where(Partner.is_default.is_(True))
        if except_id is not None:
            stmt = stmt.where(Partner.id != except_id)
        self.db.execute(stmt.values(is_default=False))

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Partner {operation} failed and was rolled back: {e}")
            raise StorageError(f"Failed to {operation} partner")

    def create(self, data: PartnerInput, admin: Identity) -> Partner:
        required = ("name", "slug", "catalog_endpoint", "catalog_credential")
        missing = [_EDITABLE_FIELDS[f] for f in required if not (getattr(data, f) or "").strip()]
        if missing:
            raise ValidationError.missing_fields(*missing)

        if data.is_default and data.is_active is False:
            raise ValidationError(
                "An inactive partner cannot be the default",
                fields={"isDefault": "Partner must be active"},
            )

        slug = data.slug.strip().lower()
        if self.db.query(Partner.id).filter(Partner.slug == slug).first() is not None:
            raise ConflictError.duplicate_slug(slug)

        partner = Partner(
            name=data.name.strip(),
            slug=slug,
            catalog_endpoint=data.catalog_endpoint.strip().rstrip("/"),
            catalog_credential=data.catalog_credential.strip(),
            owner_email=(data.owner_email or "").strip().lower() or None,
            is_active=True if data.is_active is None else data.is_active,
            is_default=bool(data.is_default),
        )
        if partner.is_default:
            self._clear_default()
        self.db.add(partner)
        try:
            self._commit("create")
        except IntegrityError:
            raise ConflictError.duplicate_slug(slug)

        log.info(f"Partner {partner.id} ({partner.slug}) created by {admin.email}")
        if partner.is_default:
            get_whitelist_cache().invalidate()
        get_audit_logger().append(
            admin=admin,
            action=AuditAction.PARTNER_CREATE,
            entity_type=AuditEntityType.PARTNER,
            entity_id=partner.id,
            summary=f"Created partner {partner.name} ({partner.slug})",
            details={
                "name": partner.name,
                "slug": partner.slug,
                "catalogEndpoint": partner.catalog_endpoint,
                "catalogCredential": MASKED,
                "ownerEmail": partner.owner_email,
                "isActive": partner.is_active,
                "isDefault": partner.is_default,
            },
        )
        return partner

    def update(self, partner_id: str, data: PartnerInput, admin: Identity) -> Partner:
        partner = self.get(partner_id)
        changes = data.provided()
        for name in ("name", "slug", "catalog_endpoint", "catalog_credential"):
            if name in changes and not str(changes[name]).strip():
                raise ValidationError(
                    f"{_EDITABLE_FIELDS[name]} cannot be empty",
                    fields={_EDITABLE_FIELDS[name]: "Must not be empty"},
                )
        if "slug" in changes:
            changes["slug"] = changes["slug"].strip().lower()
        if "owner_email" in changes:
            changes["owner_email"] = changes["owner_email"].strip().lower() or None
        if "catalog_endpoint" in changes:
            changes["catalog_endpoint"] = changes["catalog_endpoint"].strip().rstrip("/")
        if changes.get("is_default") and not changes.get("is_active", partner.is_active):
            raise ValidationError(
                "An inactive partner cannot be the default",
                fields={"isDefault": "Partner must be active"},
            )
        if partner.is_default and changes.get("is_active") is False:
            raise ConflictError(
                code="DEFAULT_PARTNER",
                message="Cannot deactivate the default partner. Set another partner as default first.",
                details={"id": partner.id},
            )

        changed: dict[str, dict[str, Any]] = {}
        for name, value in changes.items():
            old = getattr(partner, name)
            if old != value:
                changed[_EDITABLE_FIELDS[name]] = {"from": _mask(name, old), "to": _mask(name, value)}
                setattr(partner, name, value)

        if not changed:
            return partner

        becoming_default = changes.get("is_default") is True and "isDefault" in changed
        if becoming_default:
            self._clear_default(except_id=partner.id)
        try:
            self._commit("update")
        except IntegrityError:
            raise ConflictError.duplicate_slug(changes.get("slug", partner.slug))

        log.info(f"Partner {partner.id} updated by {admin.email}: {sorted(changed)}")
        access_fields = {"catalogEndpoint", "catalogCredential", "ownerEmail", "isActive", "isDefault"}
        if access_fields & changed.keys():
            if becoming_default:
                get_whitelist_cache().invalidate()
            else:
                get_whitelist_cache().invalidate(partner.id)

        get_audit_logger().append(
            admin=admin,
            action=AuditAction.PARTNER_UPDATE,
            entity_type=AuditEntityType.PARTNER,
            entity_id=partner.id,
            summary=(
                f"Set {partner.name} as default partner" if becoming_default
                else f"Updated partner {partner.name} ({', '.join(sorted(changed))})"
            ),
            details={"changedFields": changed},
        )
        return partner

    def set_default(self, partner_id: str, admin: Identity) -> Partner:
        return self.update(partner_id, PartnerInput(is_default=True), admin)

    def delete(self, partner_id: str, admin: Identity) -> None:
        partner = self.get(partner_id)
        if partner.is_default:
            raise ConflictError.default_partner(partner.id)

        snapshot = {"name": partner.name, "slug": partner.slug}
        self.db.delete(partner)
        self._commit("delete")
        get_whitelist_cache().invalidate(partner_id)

        log.info(f"Partner {partner_id} ({snapshot['slug']}) deleted by {admin.email}")
        get_audit_logger().append(
            admin=admin,
            action=AuditAction.PARTNER_DELETE,
            entity_type=AuditEntityType.PARTNER,
            entity_id=partner_id,
            summary=f"Deleted partner {snapshot['name']} ({snapshot['slug']})",
            details=snapshot,
        )
