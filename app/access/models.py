# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Access decision data model and its camelCase wire form."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class AccessReason(str, Enum):
    ADMIN = "admin"
    VC_TEAM = "vc_team"
    PORTFOLIO_MATCH = "portfolio_match"
    MANUAL_GRANT = "manual_grant"
    DENIED = "denied"


@dataclass(frozen=True)
class AccessDecision:
    """A grant/deny verdict for one identity against one partner.

    Valid only for ``partner_id`` and ``user_id``.  The one permitted
    mutation is flipping ``animation_shown`` to True.
    """

    granted: bool
    reason: AccessReason
    checked_at: datetime
    partner_id: str
    user_id: str
    matched_domain: Optional[str] = None
    matched_partner_domain: Optional[str] = None
    animation_shown: bool = False

    def with_animation_shown(self) -> "AccessDecision":
        return self if self.animation_shown else replace(self, animation_shown=True)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.checked_at).total_seconds()

    def summary(self) -> dict[str, Any]:
        """Read-only view returned by ``GET /access/status``."""
        return {
            "granted": self.granted,
            "reason": self.reason.value,
            "matchedDomain": self.matched_domain,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "granted": self.granted,
            "reason": self.reason.value,
            "matchedDomain": self.matched_domain,
            "matchedPartnerDomain": self.matched_partner_domain,
            "checkedAt": self.checked_at.isoformat(),
            "partnerId": self.partner_id,
            "userId": self.user_id,
            "animationShown": self.animation_shown,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["AccessDecision"]:
        """Parse the wire form; None when any required field is missing or invalid."""
        if not isinstance(data, dict):
            return None
        granted = data.get("granted")
        partner_id = data.get("partnerId")
        user_id = data.get("userId")
        if not isinstance(granted, bool) or not isinstance(partner_id, str) or not isinstance(user_id, str):
            return None
        try:
            reason = AccessReason(data.get("reason"))
            checked_at = datetime.fromisoformat(data["checkedAt"])
        except (KeyError, TypeError, ValueError):
            return None
        if checked_at.tzinfo is None:
            checked_at = checked_at.replace(tzinfo=timezone.utc)
        # A grant must carry a granting reason and a denial must not.
        if granted == (reason is AccessReason.DENIED):
            return None
        return cls(
            granted=granted,
            reason=reason,
            checked_at=checked_at,
            partner_id=partner_id,
            user_id=user_id,
            matched_domain=data.get("matchedDomain"),
            matched_partner_domain=data.get("matchedPartnerDomain"),
            animation_shown=data.get("animationShown") is True,
        )
