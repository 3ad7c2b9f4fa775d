# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Cache-aware access resolution for HTTP handlers.

A decision from the cookie is honored only when it was computed for the
active default partner and for the calling user, and is younger than the
recheck interval. Otherwise the rule chain runs again and the fresh
decision replaces the cookie. A partner mismatch also clears the cookie
so a stale grant can never outlive a partner switch.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, Response

from app.access.decision_cache import DecisionCache, get_decision_cache
from app.access.models import AccessDecision
from app.access.resolver import AccessResolver, get_access_resolver
from app.auth.identity import Identity

log = logging.getLogger(__name__)


@dataclass
class Resolution:
    decision: AccessDecision
    from_cache: bool


class AccessService:
    def __init__(
        self,
        resolver: AccessResolver,
        decision_cache: DecisionCache,
        recheck_interval: float,
    ):
        self.resolver = resolver
        self.decision_cache = decision_cache
        self.recheck_interval = recheck_interval

    def current_cached(
        self,
        request: Request,
        response: Response,
        identity: Identity,
        partner_id: str,
    ) -> Optional[AccessDecision]:
        """The cookie decision if it may be reused, else None."""
        cached = self.decision_cache.load(request)
        if cached is None:
            return None
        if cached.partner_id != partner_id:
            log.info(
                f"Cached decision for partner {cached.partner_id} is stale "
                f"(active partner {partner_id}); rechecking user {identity.id}"
            )
            self.decision_cache.clear(response)
            return None
        if cached.user_id != identity.id:
            log.info(f"Cached decision belongs to another user; rechecking user {identity.id}")
            return None
        if cached.age_seconds() >= self.recheck_interval:
            log.info(f"Cached decision for user {identity.id} is due for recheck")
            return None
        return cached

    async def resolve(
        self,
        request: Request,
        response: Response,
        identity: Identity,
        partner,
    ) -> Resolution:
        cached = self.current_cached(request, response, identity, partner.id)
        if cached is not None:
            return Resolution(decision=cached, from_cache=True)

        decision = await self.resolver.resolve_access(identity, partner)
        self.decision_cache.store(response, decision)
        return Resolution(decision=decision, from_cache=False)


_service: Optional[AccessService] = None


def get_access_service() -> AccessService:
    global _service
    if _service is None:
        from app.config import DECISION_RECHECK_INTERVAL

        _service = AccessService(
            resolver=get_access_resolver(),
            decision_cache=get_decision_cache(),
            recheck_interval=DECISION_RECHECK_INTERVAL,
        )
    return _service


def reset_access_service() -> None:
    global _service
    _service = None
