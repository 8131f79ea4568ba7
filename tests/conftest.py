"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest

from ddoctor.checks.probes import TIMED_OUT, NetworkProbe, Probe, wait_cancellable
from ddoctor.checks.registry import ProbeSpec


class FakeProbe(Probe):
    """In-process probe with a controllable delay and verdict."""

    kind = "fake"

    def __init__(
        self,
        name: str,
        delay: float = 0.0,
        healthy: bool = True,
        timeout: float = 5.0,
        error: Exception | None = None,
    ) -> None:
        super().__init__(ProbeSpec(name=name, kind="fake", timeout=timeout))
        self.delay = delay
        self.healthy = healthy
        self.error = error
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def _run(self, cancel: asyncio.Event) -> tuple[bool, str]:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.error:
                raise self.error
            try:
                await wait_cancellable(asyncio.sleep(self.delay), self.timeout, cancel)
            except asyncio.TimeoutError:
                return False, TIMED_OUT
            return self.healthy, "fake ok" if self.healthy else "fake failed"
        finally:
            self.active -= 1


@pytest.fixture
def fake_probe() -> Callable[..., FakeProbe]:
    """Factory for FakeProbe instances."""
    return FakeProbe


@pytest.fixture
def spec() -> Callable[..., ProbeSpec]:
    """Factory for ProbeSpec with sensible defaults."""

    def _make(kind: str = "shell", **kwargs) -> ProbeSpec:
        kwargs.setdefault("name", f"{kind}-0")
        kwargs.setdefault("timeout", 1.0)
        return ProbeSpec(kind=kind, **kwargs)

    return _make


@pytest.fixture
def network_probe(spec) -> Callable[..., NetworkProbe]:
    """Factory for a NetworkProbe answered by an in-memory handler."""

    def _make(status: int = 200, codes=frozenset({200}), handler=None, **kwargs) -> NetworkProbe:
        if handler is None:
            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(status)

        return NetworkProbe(
            spec("network", url="http://service.local/health", status_codes=frozenset(codes), **kwargs),
            transport=httpx.MockTransport(handler),
        )

    return _make
