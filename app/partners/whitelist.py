# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Admin operations on a partner's whitelist (CSV upload and sync)."""
import logging
from typing import Any

from app.access.exceptions import ValidationError
from app.access.whitelist import get_whitelist_cache
from app.audit.logger import AuditAction, AuditEntityType, get_audit_logger
from app.auth.identity import Identity
from app.clients.catalog import get_catalog_client

log = logging.getLogger(__name__)

ALLOWED_CSV_TYPES = frozenset({"text/csv", "application/vnd.ms-excel", "text/plain"})


def validate_csv_upload(filename: str, content: bytes, content_type: str, max_bytes: int) -> None:
    if not filename or not content:
        raise ValidationError("No file provided", fields={"file": "A CSV file is required"})
    if len(content) > max_bytes:
        size_mb = len(content) / 1024 / 1024
        raise ValidationError(
            f"File size ({size_mb:.1f}MB) exceeds the {max_bytes // (1024 * 1024)}MB limit",
            fields={"file": "File too large"},
        )
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type and media_type not in ALLOWED_CSV_TYPES and media_type != "application/octet-stream":
        raise ValidationError(
            f"Invalid file type: {media_type}. Please upload a CSV file.",
            fields={"file": "Must be a CSV file"},
        )


async def upload_csv(
    partner,
    filename: str,
    content: bytes,
    content_type: str,
    admin: Identity,
) -> dict[str, Any]:
    """Forward a CSV to the partner's catalog and drop the cached whitelist."""
    from app.config import WHITELIST_UPLOAD_MAX_BYTES

    validate_csv_upload(filename, content, content_type, WHITELIST_UPLOAD_MAX_BYTES)
    result = await get_catalog_client(partner).upload_whitelist_csv(
        filename, content, content_type or "text/csv"
    )
    get_whitelist_cache().invalidate(partner.id)
    log.info(f"Whitelist CSV {filename} ({len(content)} bytes) uploaded for partner {partner.id}")

    get_audit_logger().append(
        admin=admin,
        action=AuditAction.WHITELIST_UPLOAD_CSV,
        entity_type=AuditEntityType.WHITELIST,
        entity_id=partner.id,
        summary=f"Uploaded whitelist CSV ({filename})",
        details={
            "fileName": filename,
            "fileSize": len(content),
            "partnerSlug": partner.slug,
            "apiResponse": result,
        },
    )
    return result


async def sync(partner, admin: Identity) -> dict[str, Any]:
    """Refetch the partner's whitelist now. Upstream failures propagate."""
    cache = get_whitelist_cache()
    previous = cache.peek(partner.id)
    domains = await get_catalog_client(partner).fetch_whitelist_domains()
    cache.put(partner.id, domains)

    log.info(f"Whitelist for partner {partner.id} synced: {len(domains)} domains")
    get_audit_logger().append(
        admin=admin,
        action=AuditAction.WHITELIST_SYNC,
        entity_type=AuditEntityType.WHITELIST,
        entity_id=partner.id,
        summary=f"Synced whitelist for {partner.name} ({len(domains)} domains)",
        details={
            "partnerSlug": partner.slug,
            "previousCount": len(previous) if previous is not None else None,
            "domainCount": len(domains),
        },
    )
    return {"partnerId": partner.id, "domainCount": len(domains)}
