"""
Tests for the VirusTotal client.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from iocsentry.lookup.errors import InvalidCredential, ProviderRateLimited, TransientProviderError
from iocsentry.lookup.models import ApiCredential, Indicator, IndicatorType
from iocsentry.lookup.virustotal import VirusTotalClient, endpoint_for, gui_link, url_identifier


@pytest.fixture
def credential():
    return ApiCredential(id="key1:secret...", secret="secret-value-123")


class TestEndpoints:
    """Tests for per-type endpoint shapes."""

    @pytest.mark.parametrize(
        "indicator,expected",
        [
            (Indicator("44d88612fea8a8f36de82e1278abb02f", IndicatorType.HASH), "/files/44d88612fea8a8f36de82e1278abb02f"),
            (Indicator("8.8.8.8", IndicatorType.IP), "/ip_addresses/8.8.8.8"),
            (Indicator("example.com", IndicatorType.DOMAIN), "/domains/example.com"),
        ],
    )
    def test_endpoint_for(self, indicator, expected):
        assert endpoint_for(indicator) == expected

    def test_url_identifier_unpadded(self):
        # "http://a.b/" encodes to a padded value
        assert url_identifier("http://a.b/") == "aHR0cDovL2EuYi8"
        assert endpoint_for(Indicator("http://a.b/", IndicatorType.URL)) == "/urls/aHR0cDovL2EuYi8"

    def test_gui_link(self):
        assert gui_link(Indicator("8.8.8.8", IndicatorType.IP)) == "https://www.virustotal.com/gui/ip-address/8.8.8.8"


class TestResponses:
    """Tests for HTTP status mapping."""

    @pytest.mark.asyncio
    async def test_success_sends_key(self, fake_vt, vt_client, credential, payload):
        fake_vt.script("/domains/example.com", (200, payload(harmless=3), {"X-RateLimit-Remaining": "2"}))

        response = await vt_client.lookup(Indicator("example.com", IndicatorType.DOMAIN), credential)

        assert response.found
        assert response.remaining == 2
        assert response.payload["data"]["attributes"]["last_analysis_stats"]["harmless"] == 3
        assert fake_vt.keys_used == ["secret-value-123"]

    @pytest.mark.asyncio
    async def test_not_found(self, fake_vt, vt_client, credential):
        fake_vt.script("/ip_addresses/8.8.8.8", (404, {}, {}))

        response = await vt_client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)

        assert not response.found
        assert response.payload == {}

    @pytest.mark.asyncio
    async def test_rate_limited_with_reset_header(self, fake_vt, vt_client, credential):
        reset = datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)
        fake_vt.script("/ip_addresses/8.8.8.8", (429, {}, {"X-RateLimit-Reset": str(int(reset.timestamp()))}))

        with pytest.raises(ProviderRateLimited) as exc_info:
            await vt_client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)

        assert exc_info.value.reset_at == reset
        assert exc_info.value.credential_id == credential.id

    @pytest.mark.asyncio
    async def test_rate_limited_default_cooldown(self, fake_vt, vt_client, credential, clock):
        fake_vt.script("/ip_addresses/8.8.8.8", (429, {}, {}))

        with pytest.raises(ProviderRateLimited) as exc_info:
            await vt_client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)

        assert exc_info.value.reset_at == clock.now + timedelta(seconds=60)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_rejected(self, fake_vt, vt_client, credential, status):
        fake_vt.script("/ip_addresses/8.8.8.8", (status, {}, {}))

        with pytest.raises(InvalidCredential):
            await vt_client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "entry",
        [(500, {}, {}), (503, {}, {}), httpx.ConnectTimeout("timed out"), httpx.ConnectError("refused")],
    )
    async def test_transient_failures(self, fake_vt, vt_client, credential, entry):
        fake_vt.script("/ip_addresses/8.8.8.8", entry)

        with pytest.raises(TransientProviderError):
            await vt_client.lookup(Indicator("8.8.8.8", IndicatorType.IP, raw=" 8.8.8.8"), credential)

    @pytest.mark.asyncio
    async def test_malformed_json(self, credential):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>"))
        client = VirusTotalClient(base_url="https://vt.test/api/v3", transport=transport)

        with pytest.raises(TransientProviderError):
            await client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)


class TestThrottle:
    """Tests for the per-type request throttle."""

    @pytest.mark.asyncio
    async def test_waits_when_window_spent(self, fake_vt, credential):
        client = VirusTotalClient(
            base_url="https://vt.test/api/v3",
            transport=fake_vt.transport,
            type_rate_limits={"ip": 1},
            rate_window=0.2,
        )
        loop = asyncio.get_running_loop()

        start = loop.time()
        await client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)
        await client.lookup(Indicator("1.1.1.1", IndicatorType.IP), credential)

        assert loop.time() - start >= 0.18

    @pytest.mark.asyncio
    async def test_other_types_unthrottled(self, fake_vt, credential):
        client = VirusTotalClient(
            base_url="https://vt.test/api/v3",
            transport=fake_vt.transport,
            type_rate_limits={"ip": 1},
            rate_window=5,
        )

        await client.lookup(Indicator("8.8.8.8", IndicatorType.IP), credential)
        await asyncio.wait_for(
            client.lookup(Indicator("example.com", IndicatorType.DOMAIN), credential),
            timeout=1,
        )

        assert fake_vt.call_count == 2
