# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Portfolio company domains per organization domain, cached with a TTL."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from app.access.cache import DomainSetCache
from app.clients.portfolio import get_portfolio_client

PortfolioSource = Callable[[str], Awaitable[frozenset]]


async def fetch_from_lookup(org_domain: str) -> frozenset:
    return await get_portfolio_client().fetch_portfolio_domains(org_domain)


class PortfolioCache(DomainSetCache):
    def __init__(self, ttl: float, source: PortfolioSource = fetch_from_lookup, **kwargs):
        super().__init__("portfolio", ttl, **kwargs)
        self._source = source

    async def domains_for(self, org_domain: str) -> frozenset:
        key = org_domain.strip().lower()
        return await self._get(key, lambda: self._source(key))


_portfolio_cache: Optional[PortfolioCache] = None


def get_portfolio_cache() -> PortfolioCache:
    global _portfolio_cache
    if _portfolio_cache is None:
        from app.config import PORTFOLIO_TTL

        _portfolio_cache = PortfolioCache(ttl=PORTFOLIO_TTL)
    return _portfolio_cache


def reset_portfolio_cache() -> None:
    global _portfolio_cache
    _portfolio_cache = None
