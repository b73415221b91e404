"""
IOCSentry Test Configuration

Pytest fixtures and configuration for all tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from iocsentry.lookup.keypool import KeyPool
from iocsentry.lookup.orchestrator import LookupOrchestrator
from iocsentry.lookup.store import SQLiteRecordStore
from iocsentry.lookup.virustotal import VirusTotalClient

BASE_URL = "https://vt.test/api/v3"

KEY_A = "alpha-key-0000000001"
KEY_B = "bravo-key-0000000002"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def vt_payload(
    malicious: int = 0,
    suspicious: int = 0,
    harmless: int = 0,
    undetected: int = 0,
    timeout: int = 0,
    engines: dict[str, dict[str, Any]] | None = None,
    **attributes: Any,
) -> dict[str, Any]:
    """Build a VirusTotal v3 object response."""
    return {
        "data": {
            "id": "test",
            "type": "test",
            "attributes": {
                "last_analysis_stats": {
                    "malicious": malicious,
                    "suspicious": suspicious,
                    "harmless": harmless,
                    "undetected": undetected,
                    "timeout": timeout,
                },
                "last_analysis_results": engines or {},
                **attributes,
            },
        }
    }


class FakeVirusTotal:
    """
    Scripted VirusTotal backend served through httpx.MockTransport.

    Responses are queued per path suffix; each entry is either a
    (status, json, headers) tuple or an exception to raise. Unscripted
    requests get a harmless report.
    """

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.calls: list[httpx.Request] = []
        self._scripts: dict[str, list[Any]] = {}
        self.default: tuple[int, dict[str, Any], dict[str, str]] = (
            200,
            vt_payload(harmless=5, undetected=2),
            {},
        )

    def script(self, path_suffix: str, *responses: Any) -> None:
        self._scripts.setdefault(path_suffix, []).extend(responses)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def keys_used(self) -> list[str]:
        return [r.headers["x-apikey"] for r in self.calls]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        await asyncio.sleep(self.delay)

        entry: Any = self.default
        for suffix, queue in self._scripts.items():
            if request.url.path.endswith(suffix) and queue:
                entry = queue.pop(0)
                break

        if isinstance(entry, Exception):
            raise entry

        status, body, headers = entry
        return httpx.Response(status, json=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store():
    """In-memory record store."""
    record_store = SQLiteRecordStore()
    yield record_store
    record_store.close()


@pytest.fixture
def fake_vt() -> FakeVirusTotal:
    return FakeVirusTotal()


@pytest.fixture
def vt_client(fake_vt, clock) -> VirusTotalClient:
    return VirusTotalClient(base_url=BASE_URL, transport=fake_vt.transport, clock=clock)


@pytest.fixture
def key_pool(clock) -> KeyPool:
    return KeyPool([KEY_A, KEY_B], quota_per_window=4, window_seconds=60, clock=clock)


@pytest.fixture
def make_orchestrator(store, vt_client, clock):
    """Factory for orchestrators sharing the test store and provider."""

    def _make(secrets: list[str] | None = None, **kwargs: Any) -> LookupOrchestrator:
        pool = KeyPool(
            [KEY_A, KEY_B] if secrets is None else secrets,
            quota_per_window=kwargs.pop("quota_per_window", 4),
            window_seconds=60,
            clock=clock,
        )
        return LookupOrchestrator(
            store=store,
            key_pool=pool,
            client=vt_client,
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> LookupOrchestrator:
    return make_orchestrator()


@pytest.fixture
def payload():
    """The vt_payload builder."""
    return vt_payload
