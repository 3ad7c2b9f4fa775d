# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Client for the external identity authority ("who am I" endpoint)."""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from app.clients.base import UpstreamClient

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorityProfile:
    """The subset of the authority's user payload that Perks Gate consumes."""

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    name: str = ""
    connected_emails: tuple[str, ...] = ()
    network_domains: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.name or self.email.split("@")[0]


def _emails_from(items: Any) -> list[str]:
    emails = []
    for item in items or []:
        value = item.get("email") if isinstance(item, dict) else item
        if isinstance(value, str) and "@" in value:
            emails.append(value.strip())
    return emails


def _domains_from(items: Any) -> list[str]:
    domains = []
    for item in items or []:
        value = item.get("domain") if isinstance(item, dict) else item
        if isinstance(value, str) and value.strip():
            domains.append(value.strip().lower())
    return domains


def parse_profile(payload: Any) -> Optional[AuthorityProfile]:
    """Build a profile from a ``/users/me`` payload, or None when malformed."""
    if not isinstance(payload, dict):
        return None
    user = payload.get("user")
    if not isinstance(user, dict):
        return None

    user_id = user.get("id")
    email = user.get("email")
    if user_id in (None, "") or not isinstance(email, str) or "@" not in email:
        return None

    connected = user.get("connected_accounts")
    if connected is None:
        connected = user.get("email_tokens")
    networks = user.get("network_domains")
    if networks is None:
        networks = user.get("networks")

    return AuthorityProfile(
        id=str(user_id),
        email=email.strip(),
        first_name=user.get("first_name") or "",
        last_name=user.get("last_name") or "",
        name=user.get("name") or "",
        connected_emails=tuple(_emails_from(connected)),
        network_domains=tuple(_domains_from(networks)),
        raw=user,
    )


class IdentityAuthorityClient(UpstreamClient):
    """Resolves bearer credentials to user profiles."""

    service = "identity-authority"

    async def fetch_profile(self, credential: str) -> Optional[AuthorityProfile]:
        """Return the profile for ``credential``, or None if it is not accepted.

        Raises:
            UpstreamUnavailable: On network failure, timeout or 5xx.
        """
        response = await self._request(
            "GET",
            "/api/v4/users/me",
            headers={"Authorization": f"Bearer {credential}"},
        )
        if not response.is_success:
            log.info(f"Identity authority rejected credential: {response.status_code}")
            return None
        try:
            payload = response.json()
        except ValueError:
            log.warning("Identity authority returned a non-JSON body")
            return None

        profile = parse_profile(payload)
        if profile is None:
            log.warning("Identity authority payload missing user id or email")
        return profile


# =============================================================================
# Singleton
# =============================================================================

_client: Optional[IdentityAuthorityClient] = None


def get_identity_authority_client() -> IdentityAuthorityClient:
    global _client
    if _client is None:
        from app.config import AUTHORITY_URL

        _client = IdentityAuthorityClient(base_url=AUTHORITY_URL)
    return _client


def set_identity_authority_client(client: Optional[IdentityAuthorityClient]) -> None:
    """Install a client instance (tests use this to inject a mock transport)."""
    global _client
    _client = client


def reset_identity_authority_client() -> None:
    global _client
    _client = None


async def close_identity_authority_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
