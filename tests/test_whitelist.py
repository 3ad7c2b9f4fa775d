# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the whitelist and portfolio domain caches.

Covers domain matching, TTL expiry, invalidation, the rule that
upstream failures are never cached, and catalog pagination.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.access.cache import domain_matches
from app.access.exceptions import UpstreamRejected, UpstreamUnavailable
from app.access.portfolio import PortfolioCache
from app.access.whitelist import WhitelistCache, get_whitelist_cache
from app.clients.catalog import get_catalog_client
from tests.conftest import CATALOG_ENDPOINT


# =========================================================================
# Helpers
# =========================================================================

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """Whitelist source that counts calls and can be told to fail."""

    def __init__(self, domains=()):
        self.domains = frozenset(domains)
        self.calls = 0
        self.error = None

    async def __call__(self, key) -> frozenset:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.domains


PARTNER = SimpleNamespace(id="p-1", catalog_endpoint=CATALOG_ENDPOINT, catalog_credential="t")


@pytest.fixture
def clock():
    return FakeClock()


# =========================================================================
# Matching
# =========================================================================

class TestDomainMatches:

    @pytest.mark.parametrize("user,entry,expected", [
        ("acme.com", "acme.com", True),
        ("eng.acme.com", "acme.com", True),
        ("ACME.com", "acme.COM", True),
        ("notacme.com", "acme.com", False),
        ("acme.com", "eng.acme.com", False),
        ("", "acme.com", False),
    ])
    def test_domain_matches(self, user, entry, expected):
        assert domain_matches(user, entry) is expected


class TestWhitelistMatching:

    @pytest.mark.asyncio
    async def test_exact_and_subdomain(self, clock):
        cache = WhitelistCache(ttl=300, source=FakeSource({"acme.com"}), clock=clock)
        assert await cache.is_whitelisted(PARTNER, "acme.com")
        assert await cache.is_whitelisted(PARTNER, "eng.acme.com")
        assert not await cache.is_whitelisted(PARTNER, "other.com")

    @pytest.mark.asyncio
    async def test_most_specific_entry_reported(self, clock):
        cache = WhitelistCache(ttl=300, source=FakeSource({"acme.com", "eu.acme.com"}), clock=clock)
        assert await cache.match_entry(PARTNER, "paris.eu.acme.com") == "eu.acme.com"

    @pytest.mark.asyncio
    async def test_blank_domain_never_matches(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        assert await cache.match_entry(PARTNER, "  ") is None
        assert source.calls == 0


# =========================================================================
# TTL and invalidation
# =========================================================================

class TestWhitelistTTL:

    @pytest.mark.asyncio
    async def test_served_from_memory_within_ttl(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        await cache.domains_for(PARTNER)
        clock.advance(299)
        await cache.domains_for(PARTNER)
        assert source.calls == 1
        assert cache.metrics.hits == 1

    @pytest.mark.asyncio
    async def test_refetched_after_ttl(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        await cache.domains_for(PARTNER)
        clock.advance(300)
        source.domains = frozenset({"acme.com", "new.io"})
        assert await cache.domains_for(PARTNER) == {"acme.com", "new.io"}
        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        await cache.domains_for(PARTNER)
        cache.invalidate(PARTNER.id)
        await cache.domains_for(PARTNER)
        assert source.calls == 2
        assert cache.metrics.invalidations == 1

    @pytest.mark.asyncio
    async def test_invalidate_all(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        other = SimpleNamespace(id="p-2", catalog_endpoint=CATALOG_ENDPOINT, catalog_credential="t")
        await cache.domains_for(PARTNER)
        await cache.domains_for(other)
        cache.invalidate()
        assert cache.stats()["size"] == 0
        assert cache.metrics.invalidations == 2

    @pytest.mark.asyncio
    async def test_refresh_refetches(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        await cache.domains_for(PARTNER)
        await cache.refresh(PARTNER)
        assert source.calls == 2


class TestUpstreamFailure:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        UpstreamUnavailable("catalog"),
        UpstreamRejected("catalog", 403, "forbidden"),
    ])
    async def test_failure_is_empty_and_not_cached(self, clock, error):
        source = FakeSource({"acme.com"})
        source.error = error
        cache = WhitelistCache(ttl=300, source=source, clock=clock)

        assert await cache.domains_for(PARTNER) == frozenset()
        assert cache.stats()["size"] == 0
        assert cache.metrics.failures == 1

        source.error = None
        assert await cache.domains_for(PARTNER) == {"acme.com"}
        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_failure_after_expiry_does_not_serve_stale(self, clock):
        source = FakeSource({"acme.com"})
        cache = WhitelistCache(ttl=300, source=source, clock=clock)
        await cache.domains_for(PARTNER)
        clock.advance(301)
        source.error = UpstreamUnavailable("catalog")
        assert not await cache.is_whitelisted(PARTNER, "acme.com")


class TestPortfolioCache:

    @pytest.mark.asyncio
    async def test_keyed_by_lowercase_org_domain(self, clock):
        source = FakeSource({"startup.io"})
        cache = PortfolioCache(ttl=900, source=source, clock=clock)
        await cache.domains_for("Fund.VC")
        await cache.domains_for("fund.vc")
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_lookup_through_client(self, portfolio):
        from app.access.portfolio import get_portfolio_cache

        portfolio.portfolios["fund.vc"] = ["startup.io", "Other.IO"]
        assert await get_portfolio_cache().domains_for("fund.vc") == {"startup.io", "other.io"}
        assert portfolio.requests[0].url.params["domain"] == "fund.vc"

    @pytest.mark.asyncio
    async def test_lookup_5xx_is_empty(self, portfolio):
        from app.access.portfolio import get_portfolio_cache

        portfolio.status = 503
        assert await get_portfolio_cache().domains_for("fund.vc") == frozenset()
        assert len(portfolio.requests) == 3


# =========================================================================
# Catalog-backed whitelist
# =========================================================================

class TestCatalogWhitelist:

    @pytest.mark.asyncio
    async def test_pages_are_walked(self, catalog, partner):
        domains = [f"co{i}.com" for i in range(250)]
        catalog.set_whitelist("catalog.techstars.test", domains)
        result = await get_whitelist_cache().domains_for(partner)
        assert len(result) == 250
        assert len(catalog.whitelist_requests()) == 3

    @pytest.mark.asyncio
    async def test_hidden_entries_excluded(self, catalog, partner):
        catalog.set_whitelist("catalog.techstars.test", ["acme.com", "secret.com"])
        catalog.hidden.add("secret.com")
        assert await get_whitelist_cache().domains_for(partner) == {"acme.com"}

    @pytest.mark.asyncio
    async def test_token_auth_header(self, catalog, partner):
        catalog.set_whitelist("catalog.techstars.test", ["acme.com"])
        await get_whitelist_cache().domains_for(partner)
        sent = catalog.whitelist_requests()[0]
        assert sent.headers["authorization"] == "Token catalog-token"
        assert sent.url.path == "/api/whitelist/domains/"

    @pytest.mark.asyncio
    async def test_catalog_rejection_raises_from_client(self, catalog, partner):
        catalog.status = 401
        with pytest.raises(UpstreamRejected):
            await get_catalog_client(partner).fetch_whitelist_domains()

    @pytest.mark.asyncio
    async def test_client_rebuilt_when_credential_changes(self, catalog, partner, db):
        first = get_catalog_client(partner)
        partner.catalog_credential = "rotated"
        db.commit()
        assert get_catalog_client(partner) is not first

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"results": [{"domain": "acme.com"}], "count": "n/a", "next": None},
        {"results": "acme.com", "count": 1, "next": None},
    ])
    async def test_malformed_page_rejected(self, catalog, partner, body):
        catalog.body = body
        with pytest.raises(UpstreamRejected):
            await get_catalog_client(partner).fetch_whitelist_domains()

    @pytest.mark.asyncio
    async def test_malformed_count_fails_closed(self, catalog, partner):
        catalog.body = {"results": [{"domain": "acme.com"}], "count": "n/a", "next": None}
        cache = get_whitelist_cache()
        assert await cache.is_whitelisted(partner, "acme.com") is False
        assert cache.peek(partner.id) is None
