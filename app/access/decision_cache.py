# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Client-held cache of the last access decision.

The decision is stored in the ``perks_access`` cookie as a Fernet token
(AES-128-CBC plus HMAC-SHA256) over its JSON wire form.  The key is
derived from ``PERKS_DECISION_SECRET`` with PBKDF2-SHA256, so the
client can neither read nor forge a decision.  The cookie is
``httponly``; clients read their status through ``GET /access/status``.

A loaded decision is only a hint.  :mod:`app.access.service` decides
whether it is still current for the active partner and the caller.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from fastapi import Request, Response

from app.access.models import AccessDecision

logger = logging.getLogger(__name__)

_KDF_SALT = b"perks-gate/decision-cache/v1"


def derive_key(secret: str, iterations: int = 600_000) -> bytes:
    """Derive a urlsafe-base64 Fernet key from ``secret``."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class DecisionCache:
    """Encodes, decodes and manages the decision cookie.

    Parameters
    ----------
    secret : str
        Server secret the token key is derived from.
    cookie_name : str
        Cookie holding the token.
    max_age : int
        Cookie lifetime in seconds; tokens older than this are rejected
        even if the browser still presents them.
    secure : bool
        Set the ``Secure`` cookie attribute.
    kdf_iterations : int
        PBKDF2 iteration count.
    """

    def __init__(
        self,
        secret: str,
        cookie_name: str = "perks_access",
        max_age: int = 86400,
        secure: bool = True,
        kdf_iterations: int = 600_000,
    ):
        self.cookie_name = cookie_name
        self.max_age = max_age
        self.secure = secure
        self._fernet = Fernet(derive_key(secret, kdf_iterations))

    def encode(self, decision: AccessDecision) -> str:
        payload = json.dumps(decision.to_dict(), separators=(",", ":")).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decode(self, token: str) -> Optional[AccessDecision]:
        try:
            payload = self._fernet.decrypt(token.encode("ascii"), ttl=self.max_age)
            data = json.loads(payload)
        except (InvalidToken, UnicodeError, ValueError):
            return None
        return AccessDecision.from_dict(data)

    def load(self, request: Request) -> Optional[AccessDecision]:
        token = request.cookies.get(self.cookie_name)
        if not token:
            return None
        decision = self.decode(token)
        if decision is None:
            logger.info("Discarding unreadable decision cookie")
        return decision

    def store(self, response: Response, decision: AccessDecision) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=self.encode(decision),
            max_age=self.max_age,
            httponly=True,
            samesite="lax",
            secure=self.secure,
            path="/",
        )

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )

    def mark_animation_shown(self, request: Request, response: Response) -> bool:
        """Flip ``animation_shown`` on the stored decision.

        Returns False when the request carries no readable decision.
        Calling it again on an already-flagged decision succeeds and
        leaves the decision as it is.
        """
        decision = self.load(request)
        if decision is None:
            return False
        if not decision.animation_shown:
            self.store(response, decision.with_animation_shown())
        return True


# =============================================================================
# Singleton
# =============================================================================

_decision_cache: Optional[DecisionCache] = None


def get_decision_cache() -> DecisionCache:
    global _decision_cache
    if _decision_cache is None:
        from app.config import (
            COOKIE_SECURE,
            DECISION_COOKIE_NAME,
            DECISION_KDF_ITERATIONS,
            DECISION_MAX_AGE,
            DECISION_SECRET,
            DEV_DECISION_SECRET,
        )

        if DECISION_SECRET == DEV_DECISION_SECRET:
            logger.warning("PERKS_DECISION_SECRET is not set; using the development secret")
        _decision_cache = DecisionCache(
            secret=DECISION_SECRET,
            cookie_name=DECISION_COOKIE_NAME,
            max_age=DECISION_MAX_AGE,
            secure=COOKIE_SECURE,
            kdf_iterations=DECISION_KDF_ITERATIONS,
        )
    return _decision_cache


def reset_decision_cache() -> None:
    global _decision_cache
    _decision_cache = None
