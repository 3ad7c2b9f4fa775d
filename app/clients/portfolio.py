# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Client for the network portfolio lookup.

Given an organization domain (e.g. a venture fund), returns the domains
of the companies in that organization's portfolio.
"""
import logging
from typing import Optional

from app.clients.base import UpstreamClient

log = logging.getLogger(__name__)


def _page_domains(body) -> list[str]:
    domains = []
    if not isinstance(body, dict):
        return domains
    for item in body.get("data") or []:
        attributes = item.get("attributes") if isinstance(item, dict) else None
        domain = attributes.get("domain") if isinstance(attributes, dict) else None
        if isinstance(domain, str) and domain.strip():
            domains.append(domain.strip().lower())
    return domains


class PortfolioClient(UpstreamClient):
    service = "portfolio-lookup"

    async def fetch_portfolio_domains(self, org_domain: str) -> frozenset[str]:
        """Return every portfolio company domain for ``org_domain``.

        Pages with limit/offset until a short page or the page cap.

        Raises:
            UpstreamUnavailable: On network failure, timeout or 5xx.
        """
        from app.config import PORTFOLIO_MAX_PAGES, PORTFOLIO_PAGE_SIZE

        domains: set[str] = set()
        for page in range(PORTFOLIO_MAX_PAGES):
            response = await self._request(
                "GET",
                "/api/v4/search/network_portfolios",
                params={
                    "domain": org_domain,
                    "limit": PORTFOLIO_PAGE_SIZE,
                    "offset": page * PORTFOLIO_PAGE_SIZE,
                },
                retry=True,
            )
            if not response.is_success:
                log.info(f"Portfolio lookup for {org_domain} returned {response.status_code}")
                break
            try:
                body = response.json()
            except ValueError:
                log.warning(f"Portfolio lookup for {org_domain} returned a non-JSON body")
                break

            page_domains = _page_domains(body)
            domains.update(page_domains)
            raw_count = len(body.get("data") or []) if isinstance(body, dict) else 0
            if raw_count < PORTFOLIO_PAGE_SIZE:
                break

        log.debug(f"Portfolio lookup for {org_domain}: {len(domains)} domains")
        return frozenset(domains)


# =============================================================================
# Singleton
# =============================================================================

_client: Optional[PortfolioClient] = None


def get_portfolio_client() -> PortfolioClient:
    global _client
    if _client is None:
        from app.config import AUTHORITY_URL

        _client = PortfolioClient(base_url=AUTHORITY_URL)
    return _client


def set_portfolio_client(client: Optional[PortfolioClient]) -> None:
    global _client
    _client = client


def reset_portfolio_client() -> None:
    global _client
    _client = None


async def close_portfolio_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
