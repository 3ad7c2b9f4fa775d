# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Perks Gate configuration.

Policy constants are fixed in code. Deployment settings may be
overridden via PERKS_* environment variables.
"""

import os

# =============================================================================
# POLICY CONSTANTS
# =============================================================================

DECISION_COOKIE_NAME: str = "perks_access"
API_KEY_COOKIE_NAME: str = "bridge_api_key"
LEGACY_SESSION_COOKIE_NAMES: tuple[str, ...] = ("bridge_session", "bridge_token")

PORTFOLIO_PAGE_SIZE: int = 100
PORTFOLIO_MAX_PAGES: int = 50
ACCESS_REQUEST_MAX_PAGE_SIZE: int = 100

PERSONAL_EMAIL_DOMAINS: frozenset[str] = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "ymail.com", "outlook.com",
    "hotmail.com", "live.com", "msn.com", "icloud.com", "me.com", "mac.com",
    "aol.com", "protonmail.com", "proton.me", "gmx.com", "mail.com",
    "yandex.com", "zoho.com", "fastmail.com", "hey.com",
})


def _parse_list(name: str) -> frozenset[str]:
    env_value = os.getenv(name, "")
    return frozenset(v.strip().lower() for v in env_value.split(",") if v.strip())


def _parse_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("PERKS_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("PERKS_HTTP_PORT", "8000"))


def _parse_cors_origins() -> list[str]:
    env = os.getenv("PERKS_CORS_ORIGINS", "")
    if env:
        return [o.strip() for o in env.split(",") if o.strip()]
    return ["https://perks.brdg.app"]


CORS_ORIGINS: list[str] = _parse_cors_origins()

# =============================================================================
# DATABASE
# =============================================================================

DATABASE_URL: str = os.getenv("PERKS_DATABASE_URL", "sqlite:///./data/perks.db")

# =============================================================================
# IDENTITY
# =============================================================================

AUTHORITY_URL: str = os.getenv("PERKS_AUTHORITY_URL", "https://api.brdg.app").rstrip("/")
PRIMARY_DOMAIN: str = os.getenv("PERKS_PRIMARY_DOMAIN", "brdg.app").lower()
SESSION_COOKIE_NAME: str = os.getenv("PERKS_SESSION_COOKIE", "authToken")

ADMIN_EMAILS: frozenset[str] = _parse_list("PERKS_ADMIN_EMAILS")
ADMIN_DOMAINS: frozenset[str] = _parse_list("PERKS_ADMIN_DOMAINS")
# When both admin lists are empty every authenticated user is admin. Off unless set.
ADMIN_OPEN_WHEN_UNCONFIGURED: bool = _parse_bool("PERKS_ADMIN_OPEN_WHEN_UNCONFIGURED")

EXTRA_PERSONAL_DOMAINS: frozenset[str] = _parse_list("PERKS_EXTRA_PERSONAL_DOMAINS")

# =============================================================================
# CACHING
# =============================================================================

WHITELIST_TTL: float = float(os.getenv("PERKS_WHITELIST_TTL", "300"))
PORTFOLIO_TTL: float = float(os.getenv("PERKS_PORTFOLIO_TTL", "900"))
DECISION_MAX_AGE: int = int(os.getenv("PERKS_DECISION_MAX_AGE", "86400"))
DECISION_RECHECK_INTERVAL: float = float(os.getenv("PERKS_DECISION_RECHECK_INTERVAL", "3600"))
API_KEY_COOKIE_MAX_AGE: int = int(os.getenv("PERKS_API_KEY_COOKIE_MAX_AGE", str(30 * 24 * 3600)))

# =============================================================================
# UPSTREAM
# =============================================================================

UPSTREAM_TIMEOUT: float = float(os.getenv("PERKS_UPSTREAM_TIMEOUT", "5.0"))
UPSTREAM_CONNECT_TIMEOUT: float = float(os.getenv("PERKS_UPSTREAM_CONNECT_TIMEOUT", "3.0"))
WHITELIST_PAGE_SIZE: int = int(os.getenv("PERKS_WHITELIST_PAGE_SIZE", "100"))
WHITELIST_MAX_PAGES: int = int(os.getenv("PERKS_WHITELIST_MAX_PAGES", "100"))
WHITELIST_UPLOAD_MAX_BYTES: int = int(os.getenv("PERKS_WHITELIST_UPLOAD_MAX_BYTES", str(5 * 1024 * 1024)))

# =============================================================================
# SECRETS & COOKIES
# =============================================================================

DEV_DECISION_SECRET = "perks-gate-development-secret"
DECISION_SECRET: str = os.getenv("PERKS_DECISION_SECRET", DEV_DECISION_SECRET)
DECISION_KDF_ITERATIONS: int = int(os.getenv("PERKS_DECISION_KDF_ITERATIONS", "600000"))
COOKIE_SECURE: bool = _parse_bool("PERKS_COOKIE_SECURE", "true")

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("PERKS_LOG_LEVEL", "INFO")
