# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Per-partner whitelist of qualifying email domains.

Domains are fetched from the partner's catalog API on first use and
after the TTL, and served from memory in between.  A user domain is
whitelisted when it equals an entry or is a subdomain of one, compared
case-insensitively.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from app.access.cache import DomainSetCache, domain_matches
from app.clients.catalog import get_catalog_client

logger = logging.getLogger(__name__)

WhitelistSource = Callable[[object], Awaitable[frozenset]]


async def fetch_from_catalog(partner) -> frozenset:
    return await get_catalog_client(partner).fetch_whitelist_domains()


class WhitelistCache(DomainSetCache):
    """Whitelist domains keyed by partner id.

    ``partner`` arguments are any object with ``id``, ``catalog_endpoint``
    and ``catalog_credential`` (normally a :class:`app.db.models.Partner`).
    """

    def __init__(self, ttl: float, source: WhitelistSource = fetch_from_catalog, **kwargs):
        super().__init__("whitelist", ttl, **kwargs)
        self._source = source

    async def domains_for(self, partner) -> frozenset:
        return await self._get(partner.id, lambda: self._source(partner))

    async def match_entry(self, partner, domain: str) -> Optional[str]:
        """Return the whitelist entry ``domain`` matches, or None."""
        candidate = domain.strip().lower()
        if not candidate:
            return None
        domains = await self.domains_for(partner)
        if candidate in domains:
            return candidate
        # Longest entry first so the most specific parent is reported.
        for entry in sorted(domains, key=len, reverse=True):
            if domain_matches(candidate, entry):
                return entry
        return None

    async def is_whitelisted(self, partner, domain: str) -> bool:
        return await self.match_entry(partner, domain) is not None

    async def refresh(self, partner) -> frozenset:
        """Drop the partner's entry and refetch it immediately."""
        self.invalidate(partner.id)
        return await self.domains_for(partner)


# =============================================================================
# Singleton
# =============================================================================

_whitelist_cache: Optional[WhitelistCache] = None


def get_whitelist_cache() -> WhitelistCache:
    global _whitelist_cache
    if _whitelist_cache is None:
        from app.config import WHITELIST_TTL

        _whitelist_cache = WhitelistCache(ttl=WHITELIST_TTL)
    return _whitelist_cache


def reset_whitelist_cache() -> None:
    global _whitelist_cache
    _whitelist_cache = None
