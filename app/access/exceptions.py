# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Perks Gate exceptions mapped to HTTP status codes and error codes."""

from typing import Any, Optional


class PortalError(Exception):
    """Base exception for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class Unauthenticated(PortalError):
    """No valid credential could be resolved to an identity."""

    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(code="UNAUTHENTICATED", message=message)


class Forbidden(PortalError):
    status_code = 403

    def __init__(self, message: str = "Admin access required"):
        super().__init__(code="FORBIDDEN", message=message)


class UpstreamUnavailable(PortalError):
    """An external collaborator was unreachable, timed out, or returned 5xx."""

    status_code = 503

    def __init__(self, service: str, message: str = "Unable to verify access, try again"):
        self.service = service
        super().__init__(code="UPSTREAM_UNAVAILABLE", message=message)


class UpstreamRejected(PortalError):
    """An external collaborator rejected the request with a 4xx status."""

    status_code = 502

    def __init__(self, service: str, upstream_status: int, message: str):
        self.service = service
        self.upstream_status = upstream_status
        super().__init__(code="UPSTREAM_ERROR", message=message)


class ValidationError(PortalError):
    status_code = 400

    def __init__(self, message: str, fields: Optional[dict[str, str]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            details={"fields": fields} if fields else None,
        )

    @classmethod
    def missing_fields(cls, *names: str) -> "ValidationError":
        return cls(
            message=f"Missing required fields: {', '.join(names)}",
            fields={name: "This field is required" for name in names},
        )


class ConflictError(PortalError):
    status_code = 409

    @classmethod
    def duplicate_request(cls) -> "ConflictError":
        return cls(
            code="DUPLICATE_REQUEST",
            message="You already have a pending access request",
        )

    @classmethod
    def invalid_transition(cls, request_id: str, status: str) -> "ConflictError":
        return cls(
            code="INVALID_TRANSITION",
            message=f"Access request {request_id} has already been {status}",
            details={"id": request_id, "status": status},
        )

    @classmethod
    def default_partner(cls, partner_id: str) -> "ConflictError":
        return cls(
            code="DEFAULT_PARTNER",
            message="Cannot delete the default partner. Set another partner as default first.",
            details={"id": partner_id},
        )

    @classmethod
    def duplicate_slug(cls, slug: str) -> "ConflictError":
        return cls(
            code="DUPLICATE_SLUG",
            message=f"A partner with slug '{slug}' already exists",
        )


class NotFound(PortalError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(code="NOT_FOUND", message=f"{entity} not found: {entity_id}")


class StorageError(PortalError):
    """A persistence operation failed."""

    status_code = 500

    def __init__(self, message: str = "A storage error occurred"):
        super().__init__(code="STORAGE_ERROR", message=message)


class PartnerNotConfigured(PortalError):
    status_code = 500

    def __init__(self):
        super().__init__(code="PARTNER_NOT_CONFIGURED", message="No partner configured")
