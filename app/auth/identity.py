# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Identity resolution for inbound requests.

Two credential carriers are supported:

1. Session cookie (``authToken``, or the legacy ``bridge_session`` /
   ``bridge_token`` names). Only honored when the request host is the
   primary domain or one of its subdomains.
2. Opaque bearer credential: the ``bridge_api_key`` cookie set by
   ``POST /auth/login``, or an ``Authorization: Bearer`` header. Honored
   on any origin.

Exactly one carrier is tried per request. On the primary domain a
present session cookie is authoritative; the bearer credential is only
the fallback when no session cookie exists. Both carriers are verified
with the same identity authority call. Every failure resolves to
``None`` (unauthenticated).
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from fastapi import Request

from app.access.exceptions import UpstreamUnavailable
from app.clients.identity_authority import AuthorityProfile, get_identity_authority_client

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectedAccount:
    email: str


@dataclass(frozen=True)
class Identity:
    """A verified caller, rebuilt on every request."""

    id: str
    email: str
    display_name: str
    is_admin: bool = False
    connected_accounts: tuple[ConnectedAccount, ...] = ()
    network_affiliations: tuple[str, ...] = ()
    connected_domains: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "isAdmin": self.is_admin,
            "connectedAccounts": [{"email": a.email} for a in self.connected_accounts],
            "networkAffiliations": list(self.network_affiliations),
            "connectedDomains": list(self.connected_domains),
        }


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""


def connected_domains(
    accounts: Iterable[ConnectedAccount],
    personal_domains: frozenset[str],
) -> tuple[str, ...]:
    """Work domains across ``accounts``, first-seen order, personal domains excluded."""
    seen: dict[str, None] = {}
    for account in accounts:
        domain = email_domain(account.email)
        if domain and domain not in personal_domains:
            seen.setdefault(domain, None)
    return tuple(seen)


def is_admin_email(
    email: str,
    admin_emails: frozenset[str],
    admin_domains: frozenset[str],
    open_when_unconfigured: bool = False,
) -> bool:
    if not admin_emails and not admin_domains:
        return open_when_unconfigured
    normalized = email.strip().lower()
    return normalized in admin_emails or email_domain(normalized) in admin_domains


def is_primary_host(host: str, primary_domain: str) -> bool:
    hostname = host.split(":", 1)[0].strip().lower()
    return hostname == primary_domain or hostname.endswith("." + primary_domain)


class IdentityResolver:
    """Turns request credentials into an :class:`Identity`."""

    def __init__(
        self,
        primary_domain: str,
        session_cookie_names: tuple[str, ...],
        api_key_cookie_name: str,
        admin_emails: frozenset[str] = frozenset(),
        admin_domains: frozenset[str] = frozenset(),
        admin_open_when_unconfigured: bool = False,
        personal_domains: frozenset[str] = frozenset(),
    ):
        self.primary_domain = primary_domain.lower()
        self.session_cookie_names = session_cookie_names
        self.api_key_cookie_name = api_key_cookie_name
        self.admin_emails = admin_emails
        self.admin_domains = admin_domains
        self.admin_open_when_unconfigured = admin_open_when_unconfigured
        self.personal_domains = personal_domains

    def _session_credential(self, request: Request) -> Optional[str]:
        for name in self.session_cookie_names:
            value = request.cookies.get(name)
            if value:
                return value
        return None

    def _bearer_credential(self, request: Request) -> Optional[str]:
        value = request.cookies.get(self.api_key_cookie_name)
        if value:
            return value
        auth = request.headers.get("authorization", "")
        scheme, _, token = auth.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        return None

    def select_credential(self, request: Request) -> tuple[Optional[str], Optional[str]]:
        """Pick the single credential to verify for this request.

        Returns:
            (method, credential) where method is "session" or "bearer",
            or (None, None) when the request carries nothing usable.
        """
        host = request.headers.get("host", "")
        if is_primary_host(host, self.primary_domain):
            session = self._session_credential(request)
            if session:
                return "session", session
        bearer = self._bearer_credential(request)
        if bearer:
            return "bearer", bearer
        return None, None

    def build_identity(self, profile: AuthorityProfile) -> Identity:
        emails = [profile.email, *profile.connected_emails]
        accounts: dict[str, ConnectedAccount] = {}
        for email in emails:
            accounts.setdefault(email.lower(), ConnectedAccount(email=email))
        account_list = tuple(accounts.values())

        return Identity(
            id=profile.id,
            email=profile.email,
            display_name=profile.display_name,
            is_admin=is_admin_email(
                profile.email,
                self.admin_emails,
                self.admin_domains,
                self.admin_open_when_unconfigured,
            ),
            connected_accounts=account_list,
            network_affiliations=tuple(dict.fromkeys(profile.network_domains)),
            connected_domains=connected_domains(account_list, self.personal_domains),
        )

    async def verify_credential(self, credential: str) -> Optional[Identity]:
        """Verify a raw credential with the identity authority."""
        try:
            profile = await get_identity_authority_client().fetch_profile(credential)
        except UpstreamUnavailable:
            log.warning("Identity authority unavailable, treating request as unauthenticated")
            return None
        if profile is None:
            return None
        return self.build_identity(profile)

    async def resolve(self, request: Request) -> Optional[Identity]:
        method, credential = self.select_credential(request)
        if credential is None:
            return None
        identity = await self.verify_credential(credential)
        if identity is None:
            log.info(f"Credential rejected (method={method})")
        return identity


# =============================================================================
# Singleton
# =============================================================================

_resolver: Optional[IdentityResolver] = None


def get_identity_resolver() -> IdentityResolver:
    global _resolver
    if _resolver is None:
        from app.config import (
            ADMIN_DOMAINS,
            ADMIN_EMAILS,
            ADMIN_OPEN_WHEN_UNCONFIGURED,
            API_KEY_COOKIE_NAME,
            EXTRA_PERSONAL_DOMAINS,
            LEGACY_SESSION_COOKIE_NAMES,
            PERSONAL_EMAIL_DOMAINS,
            PRIMARY_DOMAIN,
            SESSION_COOKIE_NAME,
        )

        _resolver = IdentityResolver(
            primary_domain=PRIMARY_DOMAIN,
            session_cookie_names=(SESSION_COOKIE_NAME, *LEGACY_SESSION_COOKIE_NAMES),
            api_key_cookie_name=API_KEY_COOKIE_NAME,
            admin_emails=ADMIN_EMAILS,
            admin_domains=ADMIN_DOMAINS,
            admin_open_when_unconfigured=ADMIN_OPEN_WHEN_UNCONFIGURED,
            personal_domains=PERSONAL_EMAIL_DOMAINS | EXTRA_PERSONAL_DOMAINS,
        )
    return _resolver


def reset_identity_resolver() -> None:
    global _resolver
    _resolver = None
