# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Process-local TTL cache for upstream-derived domain sets.

Both the partner whitelist and the portfolio lookups produce a set of
domains that is expensive to fetch (many paginated upstream calls) and
idempotently re-derivable from the upstream source of truth.  This
module holds the shared caching behavior:

* Entries live for a fixed TTL and are then refetched by whichever
  caller's read misses.
* Upstream failures are **not** cached.  The failing call sees an empty
  set (fail closed) and the next call retries upstream.
* Concurrent refreshes of the same key are tolerated.  Each refresh
  writes its own result; the last write wins.  No lock is held across
  the upstream await.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Hashable, Optional

from app.access.exceptions import UpstreamRejected, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class CacheMetrics:
    """Counters for one domain-set cache.

    Attributes
    ----------
    hits : int
        Reads served from memory within the TTL.
    misses : int
        Reads that went upstream (absent, expired, or invalidated).
    failures : int
        Upstream fetches that failed and were answered with an empty set.
    invalidations : int
        Entries dropped through :meth:`DomainSetCache.invalidate`.
    """

    hits: int = 0
    misses: int = 0
    failures: int = 0
    invalidations: int = 0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "failures": self.failures,
            "invalidations": self.invalidations,
        }


@dataclass
class _Entry:
    domains: frozenset
    fetched_at: float


class DomainSetCache:
    """TTL cache mapping a key to a frozen set of lowercase domains.

    Parameters
    ----------
    name : str
        Label used in log lines and stats.
    ttl : float
        Seconds an entry stays fresh.
    clock : callable
        Monotonic time source; injectable for tests.
    """

    def __init__(self, name: str, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}
        self.metrics = CacheMetrics()

    async def _get(self, key: Hashable, fetch: Callable[[], Awaitable[frozenset]]) -> frozenset:
        entry = self._entries.get(key)
        now = self._clock()
        if entry is not None and now - entry.fetched_at < self.ttl:
            self.metrics.hits += 1
            return entry.domains

        self.metrics.misses += 1
        try:
            domains = await fetch()
        except (UpstreamUnavailable, UpstreamRejected) as exc:
            self.metrics.failures += 1
            logger.warning(
                f"{self.name} fetch failed for {key!r} ({exc.code}); "
                f"treating as empty for this call"
            )
            return frozenset()

        stored = self.put(key, domains)
        logger.info(f"{self.name} cached {len(stored)} domains for {key!r}")
        return stored

    def peek(self, key: Hashable) -> Optional[frozenset]:
        """The stored set for ``key`` regardless of age, without counting a read."""
        entry = self._entries.get(key)
        return entry.domains if entry is not None else None

    def put(self, key: Hashable, domains) -> frozenset:
        entry = _Entry(domains=frozenset(domains), fetched_at=self._clock())
        self._entries[key] = entry
        return entry.domains

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or every key when ``key`` is None."""
        if key is None:
            self.metrics.invalidations += len(self._entries)
            self._entries.clear()
        elif self._entries.pop(key, None) is not None:
            self.metrics.invalidations += 1

    def stats(self) -> dict:
        return {"size": len(self._entries), "ttl": self.ttl, **self.metrics.to_dict()}


def domain_matches(user_domain: str, entry_domain: str) -> bool:
    """True if ``user_domain`` equals ``entry_domain`` or is a subdomain of it."""
    user = user_domain.strip().lower()
    entry = entry_domain.strip().lower()
    if not user or not entry:
        return False
    return user == entry or user.endswith("." + entry)
