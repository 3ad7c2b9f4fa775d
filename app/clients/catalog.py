# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Client for a partner's catalog API (whitelist domains and CSV upload).

Each partner owns its own catalog endpoint and token, so clients are
created per partner and reused while the partner's endpoint and
credential stay the same.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from app.access.exceptions import UpstreamRejected
from app.clients.base import UpstreamClient

log = logging.getLogger(__name__)


@dataclass
class WhitelistPage:
    """One page of ``GET /whitelist/domains/``."""

    results: list[dict[str, Any]] = field(default_factory=list)
    count: int = 0
    next: Optional[str] = None
    previous: Optional[str] = None

    def visible_domains(self) -> list[str]:
        domains = []
        for entry in self.results:
            if not isinstance(entry, dict) or entry.get("is_visible") is False:
                continue
            domain = entry.get("domain")
            if isinstance(domain, str) and domain.strip():
                domains.append(domain.strip().lower())
        return domains

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": self.results,
            "count": self.count,
            "next": self.next,
            "previous": self.previous,
        }


class CatalogClient(UpstreamClient):
    service = "catalog"

    def __init__(self, base_url: str, api_token: str, **kwargs):
        super().__init__(
            base_url=base_url,
            headers={"Authorization": f"Token {api_token}"},
            **kwargs,
        )

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        try:
            body = response.json()
            detail = body.get("detail") or body.get("error") or body.get("message")
        except (ValueError, AttributeError):
            detail = None
        log.warning(f"Catalog {operation} failed: {response.status_code} {detail or ''}".rstrip())
        raise UpstreamRejected(
            self.service,
            response.status_code,
            f"Catalog {operation} failed" + (f": {detail}" if isinstance(detail, str) else ""),
        )

    async def _list_page(self, path: str, page: int, page_size: int, operation: str) -> WhitelistPage:
        response = await self._request(
            "GET",
            path,
            params={"page": page, "page_size": page_size},
            retry=True,
        )
        self._raise_for_status(response, operation)
        try:
            body = response.json()
        except ValueError:
            raise UpstreamRejected(self.service, response.status_code, "Catalog returned a non-JSON body")
        if not isinstance(body, dict):
            raise UpstreamRejected(self.service, response.status_code, "Catalog returned an unexpected body")
        results = body.get("results") or []
        try:
            count = int(body.get("count") or 0)
        except (TypeError, ValueError):
            raise UpstreamRejected(self.service, response.status_code, "Catalog returned an invalid count")
        if not isinstance(results, list):
            raise UpstreamRejected(self.service, response.status_code, "Catalog returned an unexpected body")
        return WhitelistPage(
            results=results,
            count=count,
            next=body.get("next"),
            previous=body.get("previous"),
        )

    async def list_whitelist_page(self, page: int = 1, page_size: int = 100) -> WhitelistPage:
        return await self._list_page("/whitelist/domains/", page, page_size, "whitelist fetch")

    async def list_individual_access(self, page: int = 1, page_size: int = 50) -> WhitelistPage:
        """Users whitelisted by email rather than by domain."""
        return await self._list_page(
            "/whitelist/individual_access/", page, page_size, "individual access fetch"
        )

    async def fetch_whitelist_domains(
        self,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> frozenset[str]:
        """Walk every page and return the union of visible whitelist domains.

        Raises:
            UpstreamUnavailable: If any page fails to load.
            UpstreamRejected: If the catalog rejects the request.
        """
        from app.config import WHITELIST_MAX_PAGES, WHITELIST_PAGE_SIZE

        page_size = page_size or WHITELIST_PAGE_SIZE
        max_pages = max_pages or WHITELIST_MAX_PAGES

        domains: set[str] = set()
        page = 1
        while page <= max_pages:
            result = await self.list_whitelist_page(page=page, page_size=page_size)
            domains.update(result.visible_domains())
            if not result.next or not result.results:
                break
            page += 1
        else:
            log.warning(f"Catalog whitelist truncated at {max_pages} pages")

        return frozenset(domains)

    async def upload_whitelist_csv(
        self,
        filename: str,
        content: bytes,
        content_type: str = "text/csv",
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/whitelist/domain/upload/",
            files={"file": (filename, content, content_type)},
        )
        self._raise_for_status(response, "whitelist upload")
        try:
            body = response.json()
        except ValueError:
            body = {}
        return body if isinstance(body, dict) else {"result": body}


# =============================================================================
# Per-partner registry
# =============================================================================

_clients: dict[str, tuple[tuple[str, str], CatalogClient]] = {}
_transport: Optional[httpx.AsyncBaseTransport] = None


def get_catalog_client(partner) -> CatalogClient:
    """Return the catalog client for ``partner``, rebuilding it if its settings changed."""
    settings = (partner.catalog_endpoint, partner.catalog_credential)
    cached = _clients.get(partner.id)
    if cached is not None and cached[0] == settings:
        return cached[1]

    client = CatalogClient(
        base_url=partner.catalog_endpoint,
        api_token=partner.catalog_credential,
        transport=_transport,
    )
    _clients[partner.id] = (settings, client)
    return client


def set_catalog_transport(transport: Optional[httpx.AsyncBaseTransport]) -> None:
    """Route all catalog clients through ``transport`` (used by tests)."""
    global _transport
    _transport = transport
    _clients.clear()


def reset_catalog_clients() -> None:
    global _transport
    _transport = None
    _clients.clear()


async def close_catalog_clients() -> None:
    for _, client in list(_clients.values()):
        await client.close()
    _clients.clear()
