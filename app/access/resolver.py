# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Access resolution rule chain.

The resolver evaluates an ordered list of named rules against an
identity and a partner.  The first rule that matches produces the
decision; later rules are not evaluated.

Rules, in priority order:

1. ``admin`` - the identity carries the admin flag.
2. ``vc_team`` - a connected domain equals the partner's team domain
   (the domain of the partner's owner email).
3. ``portfolio_match`` - a connected domain is on the partner's
   whitelist (exact or subdomain match), or appears in the portfolio of
   a whitelisted organization.
4. ``network_affiliation`` - a network the identity belongs to is on the
   partner's whitelist; reported as ``portfolio_match``.
5. ``manual_grant`` - an approved access request exists for the email.
6. ``denied`` - fallback.

Expected conditions never raise out of :meth:`AccessResolver.resolve_access`.
A failing upstream empties the affected whitelist or portfolio for the
call, and a failing manual-grant lookup skips that rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.access.exceptions import StorageError
from app.access.models import AccessDecision, AccessReason
from app.access.portfolio import PortfolioCache, get_portfolio_cache
from app.access.whitelist import WhitelistCache, get_whitelist_cache
from app.auth.identity import Identity

logger = logging.getLogger(__name__)

ManualGrantCheck = Callable[[str], bool]


@dataclass(frozen=True)
class RuleMatch:
    reason: AccessReason
    matched_domain: Optional[str] = None
    matched_partner_domain: Optional[str] = None


Rule = Callable[[Identity, object], Awaitable[Optional[RuleMatch]]]


def has_approved_request(email: str) -> bool:
    """Default manual-grant lookup against the access_requests table."""
    from app.access.requests import AccessRequestService
    from app.db.session import get_db_session

    with get_db_session() as db:
        return AccessRequestService(db).has_approved(email)


class AccessResolver:
    """Evaluates the access rule chain.

    Parameters
    ----------
    whitelist : WhitelistCache
        Partner whitelist domains.
    portfolio : PortfolioCache
        Portfolio domains per whitelisted organization.
    manual_grant_check : callable
        ``email -> bool``; True when an approved access request exists.
    """

    def __init__(
        self,
        whitelist: WhitelistCache,
        portfolio: PortfolioCache,
        manual_grant_check: ManualGrantCheck = has_approved_request,
    ):
        self.whitelist = whitelist
        self.portfolio = portfolio
        self.manual_grant_check = manual_grant_check
        self.rules: list[tuple[str, Rule]] = [
            ("admin", self._admin),
            ("vc_team", self._vc_team),
            ("portfolio_match", self._portfolio_match),
            ("network_affiliation", self._network_affiliation),
            ("manual_grant", self._manual_grant),
        ]

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def _admin(self, identity: Identity, partner) -> Optional[RuleMatch]:
        if identity.is_admin:
            return RuleMatch(AccessReason.ADMIN)
        return None

    async def _vc_team(self, identity: Identity, partner) -> Optional[RuleMatch]:
        team_domain = partner.team_domain
        if not team_domain:
            return None
        for domain in identity.connected_domains:
            if domain == team_domain:
                return RuleMatch(AccessReason.VC_TEAM, matched_domain=domain)
        return None

    async def _portfolio_match(self, identity: Identity, partner) -> Optional[RuleMatch]:
        if not identity.connected_domains:
            return None

        for domain in identity.connected_domains:
            entry = await self.whitelist.match_entry(partner, domain)
            if entry is not None:
                return RuleMatch(
                    AccessReason.PORTFOLIO_MATCH,
                    matched_domain=domain,
                    matched_partner_domain=entry,
                )

        entries = sorted(await self.whitelist.domains_for(partner))
        for entry in entries:
            portfolio = await self.portfolio.domains_for(entry)
            if not portfolio:
                continue
            for domain in identity.connected_domains:
                if domain in portfolio:
                    return RuleMatch(
                        AccessReason.PORTFOLIO_MATCH,
                        matched_domain=domain,
                        matched_partner_domain=entry,
                    )
        return None

    async def _network_affiliation(self, identity: Identity, partner) -> Optional[RuleMatch]:
        if not identity.connected_domains or not identity.network_affiliations:
            return None
        for affiliation in identity.network_affiliations:
            entry = await self.whitelist.match_entry(partner, affiliation)
            if entry is not None:
                return RuleMatch(
                    AccessReason.PORTFOLIO_MATCH,
                    matched_domain=affiliation,
                    matched_partner_domain=entry,
                )
        return None

    async def _manual_grant(self, identity: Identity, partner) -> Optional[RuleMatch]:
        try:
            approved = self.manual_grant_check(identity.email.lower())
        except (SQLAlchemyError, StorageError) as exc:
            logger.error(f"Manual grant lookup failed for user {identity.id}, skipping rule: {exc}")
            return None
        if approved:
            return RuleMatch(AccessReason.MANUAL_GRANT)
        return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def resolve_access(self, identity: Identity, partner) -> AccessDecision:
        """Run the rule chain and return a fresh decision for ``partner``."""
        match: Optional[RuleMatch] = None
        rule_name = "denied"
        for name, rule in self.rules:
            match = await rule(identity, partner)
            if match is not None:
                rule_name = name
                break

        decision = AccessDecision(
            granted=match is not None,
            reason=match.reason if match else AccessReason.DENIED,
            checked_at=datetime.now(timezone.utc),
            partner_id=partner.id,
            user_id=identity.id,
            matched_domain=match.matched_domain if match else None,
            matched_partner_domain=match.matched_partner_domain if match else None,
        )

        if decision.granted:
            logger.info(
                f"Access granted: user={identity.id} partner={partner.id} rule={rule_name} "
                f"matched={decision.matched_domain} entry={decision.matched_partner_domain}"
            )
        else:
            logger.info(
                f"Access denied: user={identity.id} partner={partner.id} "
                f"domains={list(identity.connected_domains)}"
            )
        return decision


_resolver: Optional[AccessResolver] = None


def get_access_resolver() -> AccessResolver:
    global _resolver
    if _resolver is None:
        _resolver = AccessResolver(
            whitelist=get_whitelist_cache(),
            portfolio=get_portfolio_cache(),
        )
    return _resolver


def reset_access_resolver() -> None:
    global _resolver
    _resolver = None
