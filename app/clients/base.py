# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared async HTTP plumbing for upstream clients.

Key features:
- Short per-request timeouts (PERKS_UPSTREAM_TIMEOUT)
- Retry with backoff on idempotent GETs
- Circuit breaker (5 failures in 60s → open 30s → half-open probe)
- Network errors, timeouts and 5xx all surface as UpstreamUnavailable
"""
import asyncio
import logging
import time
from typing import Optional

import httpx

from app.access.exceptions import UpstreamUnavailable

log = logging.getLogger(__name__)


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitBreaker:
    """Simple circuit breaker for one upstream service.

    States:
    - closed: Normal operation, all calls pass through
    - open: Upstream is considered down, calls fail immediately
    - half_open: One probe call allowed to test recovery
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        failure_window: float = 60.0,
        recovery_timeout: float = 30.0,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.recovery_timeout = recovery_timeout

        self._state = "closed"
        self._failures: list[float] = []
        self._opened_at: float = 0.0
        self._half_open_in_flight = False

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = "half_open"
                self._half_open_in_flight = False
        return self._state

    def record_success(self) -> None:
        if self._state in ("half_open", "open"):
            log.info(f"{self.name} circuit breaker: closed (recovery successful)")
        self._state = "closed"
        self._failures.clear()
        self._half_open_in_flight = False

    def record_failure(self) -> None:
        now = time.monotonic()
        self._failures = [t for t in self._failures if now - t < self.failure_window]
        self._failures.append(now)

        if self._state == "half_open":
            self._state = "open"
            self._opened_at = now
            log.warning(f"{self.name} circuit breaker: open (half-open probe failed)")
        elif len(self._failures) >= self.failure_threshold:
            self._state = "open"
            self._opened_at = now
            log.warning(
                f"{self.name} circuit breaker: open "
                f"({len(self._failures)} failures in {self.failure_window}s)"
            )

    def allow_request(self) -> bool:
        state = self.state
        if state == "closed":
            return True
        if state == "half_open":
            if not self._half_open_in_flight:
                self._half_open_in_flight = True
                return True
            return False
        return False


# =============================================================================
# Base client
# =============================================================================


class UpstreamClient:
    """Base class for the upstream HTTP clients.

    Subclasses set ``service`` and call :meth:`_request`. Responses with
    status < 500 are returned to the caller to interpret.
    """

    service = "upstream"
    retry_backoff = 0.25

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit: Optional[CircuitBreaker] = None,
    ):
        from app.config import UPSTREAM_CONNECT_TIMEOUT, UPSTREAM_TIMEOUT

        self.base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else UPSTREAM_TIMEOUT
        self._circuit = circuit or CircuitBreaker(self.service)
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=httpx.Timeout(
                self._timeout,
                connect=connect_timeout if connect_timeout is not None else UPSTREAM_CONNECT_TIMEOUT,
            ),
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def circuit_state(self) -> str:
        return self._circuit.state

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
        files: dict | None = None,
        retry: bool = False,
    ) -> httpx.Response:
        """Send a request with circuit breaker and optional retry.

        Args:
            method: HTTP method
            path: URL path relative to base_url
            params: Query parameters
            headers: Extra per-request headers
            files: Multipart files for uploads
            retry: If True, retry on 5xx and transport errors (idempotent GETs only)
        """
        if not self._circuit.allow_request():
            log.warning(f"{self.service} circuit open, refusing {method} {path}")
            raise UpstreamUnavailable(self.service)

        max_attempts = 3 if retry else 1
        last_error: Exception | None = None

        for attempt in range(max_attempts):
            try:
                response = await self._http.request(
                    method,
                    path,
                    params=params,
                    headers=headers,
                    files=files,
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                self._circuit.record_failure()
                last_error = e
                if attempt < max_attempts - 1:
                    backoff = self.retry_backoff * (2 ** attempt)
                    log.warning(
                        f"{self.service} {method} {path} failed ({type(e).__name__}), "
                        f"retry {attempt + 1}/{max_attempts} in {backoff}s"
                    )
                    await asyncio.sleep(backoff)
                    continue
                log.warning(f"{self.service} {method} {path} failed: {type(e).__name__}: {e}")
                raise UpstreamUnavailable(self.service) from e

            if response.status_code >= 500:
                self._circuit.record_failure()
                if attempt < max_attempts - 1:
                    backoff = self.retry_backoff * (2 ** attempt)
                    log.warning(
                        f"{self.service} {method} {path} returned {response.status_code}, "
                        f"retry {attempt + 1}/{max_attempts} in {backoff}s"
                    )
                    await asyncio.sleep(backoff)
                    continue
                log.warning(f"{self.service} {method} {path} returned {response.status_code}")
                raise UpstreamUnavailable(self.service)

            self._circuit.record_success()
            return response

        raise UpstreamUnavailable(self.service) from last_error
