# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the shared upstream client plumbing (app.clients.base)."""

from __future__ import annotations

import httpx
import pytest

from app.access.exceptions import UpstreamUnavailable
from app.clients import base
from app.clients.base import CircuitBreaker, UpstreamClient


class FlakyTransport(httpx.AsyncBaseTransport):
    """Fails the first ``failures`` requests, then answers 200."""

    def __init__(self, failures: int, mode: str = "connect"):
        self.failures = failures
        self.mode = mode
        self.calls = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.calls <= self.failures:
            if self.mode == "connect":
                raise httpx.ConnectError("refused", request=request)
            if self.mode == "timeout":
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(502, json={"error": "bad gateway"})
        return httpx.Response(200, json={"ok": True})


def _client(transport, circuit=None) -> UpstreamClient:
    return UpstreamClient(base_url="https://upstream.test", transport=transport, circuit=circuit)


class TestRetry:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["connect", "timeout", "5xx"])
    async def test_retry_recovers(self, mode):
        transport = FlakyTransport(failures=2, mode=mode)
        response = await _client(transport)._request("GET", "/x", retry=True)
        assert response.status_code == 200
        assert transport.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self):
        transport = FlakyTransport(failures=10)
        with pytest.raises(UpstreamUnavailable):
            await _client(transport)._request("GET", "/x", retry=True)
        assert transport.calls == 3

    @pytest.mark.asyncio
    async def test_no_retry_by_default(self):
        transport = FlakyTransport(failures=1, mode="5xx")
        with pytest.raises(UpstreamUnavailable):
            await _client(transport)._request("POST", "/x")
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_4xx_returned_to_caller(self):
        class NotFoundTransport(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request):
                return httpx.Response(404)

        response = await _client(NotFoundTransport())._request("GET", "/x", retry=True)
        assert response.status_code == 404


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=3)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == "closed"
        breaker.record_failure()
        assert breaker.state == "open"
        assert not breaker.allow_request()

    def test_half_open_single_probe(self, monkeypatch):
        now = [100.0]
        monkeypatch.setattr(base.time, "monotonic", lambda: now[0])
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=30)
        breaker.record_failure()
        assert breaker.state == "open"

        now[0] += 30
        assert breaker.state == "half_open"
        assert breaker.allow_request()
        assert not breaker.allow_request()

        breaker.record_success()
        assert breaker.state == "closed"

    def test_failed_probe_reopens(self, monkeypatch):
        now = [100.0]
        monkeypatch.setattr(base.time, "monotonic", lambda: now[0])
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=30)
        breaker.record_failure()
        now[0] += 31
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == "open"

    def test_old_failures_outside_window_forgotten(self, monkeypatch):
        now = [100.0]
        monkeypatch.setattr(base.time, "monotonic", lambda: now[0])
        breaker = CircuitBreaker("test", failure_threshold=2, failure_window=60)
        breaker.record_failure()
        now[0] += 61
        breaker.record_failure()
        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_requests(self):
        transport = FlakyTransport(failures=100)
        client = _client(transport, circuit=CircuitBreaker("test", failure_threshold=2))
        for _ in range(2):
            with pytest.raises(UpstreamUnavailable):
                await client._request("GET", "/x")
        with pytest.raises(UpstreamUnavailable):
            await client._request("GET", "/x")
        assert transport.calls == 2
        assert client.circuit_state == "open"
