# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""FastAPI dependencies for authenticated and admin-only routes.

Usage:
    @router.get("/thing")
    async def thing(identity: Identity = require_identity):
        ...
"""
from typing import Optional

from fastapi import Depends, Request

from app.access.exceptions import Forbidden, Unauthenticated
from app.auth.identity import Identity, get_identity_resolver


async def get_optional_identity(request: Request) -> Optional[Identity]:
    """Resolve the caller once per request, caching it on request.state."""
    if hasattr(request.state, "identity"):
        return request.state.identity
    identity = await get_identity_resolver().resolve(request)
    request.state.identity = identity
    return identity


async def _require_identity(
    identity: Optional[Identity] = Depends(get_optional_identity),
) -> Identity:
    if identity is None:
        raise Unauthenticated()
    return identity


async def _require_admin(identity: Identity = Depends(_require_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden()
    return identity


require_identity = Depends(_require_identity)
require_admin = Depends(_require_admin)
optional_identity = Depends(get_optional_identity)
