# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared test fixtures for the Perks Gate test suite.

Environment variables are set before any ``app`` module is imported so
that the engine binds to an in-memory SQLite database and cookies are
sent over plain-HTTP test clients.

Upstream services (identity authority, partner catalogs, portfolio
lookup) are replaced with in-process httpx transports that record every
request they receive.
"""

from __future__ import annotations

import os

os.environ["PERKS_DATABASE_URL"] = "sqlite://"
os.environ["PERKS_COOKIE_SECURE"] = "false"
os.environ["PERKS_DECISION_SECRET"] = "test-decision-secret"
os.environ["PERKS_DECISION_KDF_ITERATIONS"] = "1000"
os.environ["PERKS_ADMIN_EMAILS"] = "admin@brdg.app"
os.environ["PERKS_ADMIN_DOMAINS"] = ""
os.environ["PERKS_PRIMARY_DOMAIN"] = "brdg.app"
os.environ["PERKS_AUTHORITY_URL"] = "https://api.authority.test"

import json
from typing import Any, AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.access.decision_cache import reset_decision_cache
from app.access.portfolio import reset_portfolio_cache
from app.access.resolver import reset_access_resolver
from app.access.service import reset_access_service
from app.access.whitelist import reset_whitelist_cache
from app.audit.logger import reset_audit_logger
from app.auth.identity import reset_identity_resolver
from app.clients.base import UpstreamClient
from app.clients.catalog import reset_catalog_clients, set_catalog_transport
from app.clients.identity_authority import (
    IdentityAuthorityClient,
    reset_identity_authority_client,
    set_identity_authority_client,
)
from app.clients.portfolio import PortfolioClient, reset_portfolio_client, set_portfolio_client
from app.db.models import Base, Partner
from app.db.session import SessionLocal, engine


MEMBER_TOKEN = "member-token"
ADMIN_TOKEN = "admin-token"
GMAIL_TOKEN = "gmail-token"

CATALOG_ENDPOINT = "https://catalog.techstars.test/api"


# =========================================================================
# Upstream transports
# =========================================================================


class AuthorityTransport(httpx.AsyncBaseTransport):
    """Identity authority: maps bearer tokens to ``/users/me`` payloads."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.down = False

    def add_user(self, token: str, **user) -> None:
        self.users[token] = {"user": user}

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("authority unreachable", request=request)
        auth = request.headers.get("authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
        payload = self.users.get(token)
        if payload is None:
            return httpx.Response(401, json={"error": "unauthorized"})
        return httpx.Response(200, json=payload)


class CatalogTransport(httpx.AsyncBaseTransport):
    """Partner catalog API: paginated whitelist, individual access and CSV upload."""

    def __init__(self):
        self.domains: dict[str, list[str]] = {}
        self.hidden: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.uploads: list[bytes] = []
        self.status: Optional[int] = None
        self.body: Optional[Any] = None
        self.individual: list[dict[str, Any]] = []

    def set_whitelist(self, host: str, domains: list[str]) -> None:
        self.domains[host] = list(domains)

    def whitelist_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/whitelist/domains/")]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status is not None:
            return httpx.Response(self.status, json={"detail": "catalog error"})
        if self.body is not None:
            return httpx.Response(200, json=self.body)

        path = request.url.path
        if request.method == "GET" and path.endswith("/whitelist/domains/"):
            page = int(request.url.params.get("page", "1"))
            size = int(request.url.params.get("page_size", "100"))
            entries = [
                {"id": i + 1, "domain": d, "is_visible": d not in self.hidden}
                for i, d in enumerate(self.domains.get(request.url.host, []))
            ]
            chunk = entries[(page - 1) * size: page * size]
            has_next = page * size < len(entries)
            return httpx.Response(200, json={
                "results": chunk,
                "count": len(entries),
                "next": f"{request.url}?page={page + 1}" if has_next else None,
                "previous": None,
            })
        if request.method == "GET" and path.endswith("/whitelist/individual_access/"):
            return httpx.Response(200, json={
                "results": self.individual,
                "count": len(self.individual),
                "next": None,
                "previous": None,
            })
        if request.method == "POST" and path.endswith("/whitelist/domain/upload/"):
            self.uploads.append(await request.aread())
            return httpx.Response(201, json={"created": 2, "skipped": 0})
        return httpx.Response(404, json={"detail": "not found"})


class PortfolioTransport(httpx.AsyncBaseTransport):
    """Portfolio lookup keyed by organization domain."""

    def __init__(self):
        self.portfolios: dict[str, list[str]] = {}
        self.requests: list[httpx.Request] = []
        self.status: Optional[int] = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status is not None:
            return httpx.Response(self.status, json={"error": "portfolio error"})
        domain = request.url.params.get("domain", "")
        limit = int(request.url.params.get("limit", "100"))
        offset = int(request.url.params.get("offset", "0"))
        companies = self.portfolios.get(domain, [])[offset: offset + limit]
        return httpx.Response(200, json={
            "data": [{"attributes": {"domain": d, "name": d.split(".")[0]}} for d in companies]
        })


# =========================================================================
# Singletons and database
# =========================================================================


def reset_all_singletons() -> None:
    reset_identity_resolver()
    reset_identity_authority_client()
    reset_portfolio_client()
    reset_catalog_clients()
    reset_whitelist_cache()
    reset_portfolio_cache()
    reset_access_resolver()
    reset_access_service()
    reset_decision_cache()
    reset_audit_logger()


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    """Recreate tables and drop cached singletons around every test."""
    monkeypatch.setattr(UpstreamClient, "retry_backoff", 0.0)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_all_singletons()
    yield
    reset_all_singletons()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# =========================================================================
# Upstream fixtures
# =========================================================================


@pytest.fixture
def authority() -> AuthorityTransport:
    transport = AuthorityTransport()
    transport.add_user(
        MEMBER_TOKEN,
        id="u-100",
        email="jane@startup.io",
        first_name="Jane",
        last_name="Doe",
        connected_accounts=[{"email": "jane@gmail.com"}, {"email": "jane@techstars.com"}],
    )
    transport.add_user(
        ADMIN_TOKEN,
        id="u-1",
        email="admin@brdg.app",
        first_name="Ada",
        last_name="Admin",
    )
    transport.add_user(GMAIL_TOKEN, id="u-200", email="solo@gmail.com", name="Solo")
    set_identity_authority_client(
        IdentityAuthorityClient(base_url="https://api.authority.test", transport=transport)
    )
    return transport


@pytest.fixture
def catalog() -> CatalogTransport:
    transport = CatalogTransport()
    set_catalog_transport(transport)
    return transport


@pytest.fixture
def portfolio() -> PortfolioTransport:
    transport = PortfolioTransport()
    set_portfolio_client(PortfolioClient(base_url="https://api.authority.test", transport=transport))
    return transport


def make_partner(db, **overrides) -> Partner:
    fields = dict(
        name="Techstars",
        slug="techstars",
        catalog_endpoint=CATALOG_ENDPOINT,
        catalog_credential="catalog-token",
        owner_email="ops@techstars.vc",
        is_active=True,
        is_default=True,
    )
    fields.update(overrides)
    partner = Partner(**fields)
    db.add(partner)
    db.commit()
    return partner


@pytest.fixture
def partner(db) -> Partner:
    return make_partner(db)


# =========================================================================
# HTTP clients
# =========================================================================


@pytest_asyncio.fixture
async def client(authority, catalog, portfolio) -> AsyncGenerator[AsyncClient, None]:
    """Client on a non-primary origin; authenticates with bearer credentials."""
    from app.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://perks.example.test",
    ) as c:
        yield c


@pytest_asyncio.fixture
async def primary_client(authority, catalog, portfolio) -> AsyncGenerator[AsyncClient, None]:
    """Client on the primary domain, where session cookies are honored."""
    from app.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://perks.brdg.app",
    ) as c:
        yield c


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def error_code(response: httpx.Response) -> str:
    return json.loads(response.content)["error"]["code"]
