"""
Tests for the lookup orchestrator.
"""

import asyncio

import httpx
import pytest

from iocsentry.lookup.errors import QuotaExhausted, TransientProviderError
from iocsentry.lookup.keypool import mask_key
from iocsentry.lookup.models import CredentialStatus, Indicator, IndicatorType, Verdict
from iocsentry.lookup.orchestrator import LookupOrchestrator, OutcomeSource
from iocsentry.lookup.virustotal import url_identifier


KEY_A = "alpha-key-0000000001"
KEY_B = "bravo-key-0000000002"

IP_PATH = "/ip_addresses/8.8.8.8"


def ip(value: str = "8.8.8.8") -> Indicator:
    return Indicator(value, IndicatorType.IP, raw=value)


class TestCaching:
    """Tests for cache hits and staleness."""

    @pytest.mark.asyncio
    async def test_second_lookup_served_from_store(self, orchestrator, fake_vt):
        """Resolving twice within the TTL makes one external call."""
        first = await orchestrator.resolve(ip())
        second = await orchestrator.resolve(ip())

        assert first.source == OutcomeSource.LIVE
        assert second.source == OutcomeSource.CACHE
        assert second.record.record_id == first.record.record_id
        assert second.record.verdict == first.record.verdict == Verdict.HARMLESS
        assert fake_vt.call_count == 1

    @pytest.mark.asyncio
    async def test_stale_record_refreshed_in_place(self, orchestrator, fake_vt, store, clock, payload):
        first = await orchestrator.resolve(ip())
        clock.advance(3601)
        fake_vt.script(IP_PATH, (200, payload(malicious=4, harmless=60), {}))

        second = await orchestrator.resolve(ip())

        assert second.source == OutcomeSource.LIVE
        assert second.record.record_id == first.record.record_id
        assert second.record.verdict == Verdict.MALICIOUS
        assert second.record.fetched_at == clock.now
        assert second.record.updated_at == clock.now
        assert fake_vt.call_count == 2
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_force_refresh(self, orchestrator, fake_vt):
        await orchestrator.resolve(ip())
        outcome = await orchestrator.resolve(ip(), force_refresh=True)

        assert outcome.source == OutcomeSource.LIVE
        assert fake_vt.call_count == 2

    @pytest.mark.asyncio
    async def test_ttl_from_policy(self, make_orchestrator):
        orchestrator = make_orchestrator(ttl_seconds=120)
        outcome = await orchestrator.resolve(ip())
        assert outcome.record.ttl_seconds == 120

    @pytest.mark.asyncio
    async def test_not_found_is_undetected(self, orchestrator, fake_vt):
        fake_vt.script(IP_PATH, (404, {"error": {"code": "NotFoundError"}}, {}))

        outcome = await orchestrator.resolve(ip())

        assert outcome.ok
        assert outcome.record.verdict == Verdict.UNDETECTED


class TestDeduplication:
    """Tests for in-flight deduplication and insert races."""

    @pytest.mark.asyncio
    async def test_concurrent_batches_share_one_call(self, orchestrator, fake_vt, store):
        first, second = await asyncio.gather(
            orchestrator.resolve_batch([ip()]),
            orchestrator.resolve_batch([ip()]),
        )

        assert fake_vt.call_count == 1
        assert store.count() == 1
        assert first[0].record.record_id == second[0].record.record_id

    @pytest.mark.asyncio
    async def test_duplicates_within_batch(self, orchestrator, fake_vt):
        outcomes = await orchestrator.resolve_batch([ip(), ip(), ip()])

        assert fake_vt.call_count == 1
        assert sum(1 for o in outcomes if o.created) == 1
        assert all(o.ok for o in outcomes)

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_caller(self, make_orchestrator, fake_vt):
        orchestrator = make_orchestrator(secrets=[])

        outcomes = await orchestrator.resolve_batch([ip(), Indicator("8.8.8.8", IndicatorType.IP, raw=" 8.8.8.8 ")])

        assert all(isinstance(o.error, QuotaExhausted) for o in outcomes)
        assert outcomes[1].error.raw == " 8.8.8.8 "
        assert fake_vt.call_count == 0

    @pytest.mark.asyncio
    async def test_insert_race_is_a_cache_hit(self, make_orchestrator, fake_vt, store):
        """Two orchestrators (separate processes) racing on one identity."""
        first = make_orchestrator()
        second = make_orchestrator()

        a, b = await asyncio.gather(first.resolve(ip()), second.resolve(ip()))

        assert store.count() == 1
        assert a.record.record_id == b.record.record_id
        assert {a.source, b.source} == {OutcomeSource.LIVE, OutcomeSource.CACHE}
        assert a.error is None and b.error is None
        assert first.stats.duplicate_races + second.stats.duplicate_races == 1

    @pytest.mark.asyncio
    async def test_in_flight_map_cleared(self, orchestrator):
        await orchestrator.resolve_batch([ip(), ip("1.1.1.1")])
        assert orchestrator._in_flight == {}


class TestRetryAndFallback:
    """Tests for credential rotation, retry and fallback records."""

    @pytest.mark.asyncio
    async def test_timeout_retried_with_other_key(self, orchestrator, fake_vt):
        fake_vt.script(IP_PATH, httpx.ConnectTimeout("timed out"))

        outcome = await orchestrator.resolve(ip())

        assert outcome.source == OutcomeSource.LIVE
        assert fake_vt.keys_used == [KEY_A, KEY_B]
        assert orchestrator.stats.retries == 1

    @pytest.mark.asyncio
    async def test_timeout_does_not_consume_quota(self, orchestrator, fake_vt):
        fake_vt.script(IP_PATH, httpx.ConnectTimeout("timed out"))

        await orchestrator.resolve(ip())

        key_a = orchestrator.key_pool.get(mask_key(KEY_A, 1))
        assert key_a.remaining_quota == 4

    @pytest.mark.asyncio
    async def test_repeated_failure_persists_unknown(self, orchestrator, fake_vt, store):
        fake_vt.script(IP_PATH, httpx.ReadTimeout("timed out"), (503, {}, {}))

        outcome = await orchestrator.resolve(ip())

        assert outcome.source == OutcomeSource.FALLBACK
        assert isinstance(outcome.error, TransientProviderError)
        assert "'8.8.8.8'" in outcome.error.describe()
        assert outcome.record.verdict == Verdict.UNKNOWN
        assert outcome.record.stats.total == 0
        assert outcome.record.ttl_seconds == 900
        assert store.find_by_identity("8.8.8.8", IndicatorType.IP).verdict == Verdict.UNKNOWN

    @pytest.mark.asyncio
    async def test_fallback_not_requeried_until_expiry(self, orchestrator, fake_vt, clock):
        fake_vt.script(IP_PATH, httpx.ConnectError("refused"), httpx.ConnectError("refused"))
        await orchestrator.resolve(ip())

        cached = await orchestrator.resolve(ip())
        assert cached.source == OutcomeSource.CACHE
        assert fake_vt.call_count == 2

        clock.advance(901)
        refreshed = await orchestrator.resolve(ip())
        assert refreshed.source == OutcomeSource.LIVE
        assert refreshed.record.verdict == Verdict.HARMLESS
        assert refreshed.record.record_id == cached.record.record_id

    @pytest.mark.asyncio
    async def test_single_key_timeout_falls_back(self, make_orchestrator, fake_vt):
        orchestrator = make_orchestrator(secrets=[KEY_A])
        fake_vt.script(IP_PATH, httpx.ConnectTimeout("timed out"))

        outcome = await orchestrator.resolve(ip())

        assert outcome.source == OutcomeSource.FALLBACK
        assert fake_vt.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_serves_stale_record(self, orchestrator, fake_vt, store, clock):
        first = await orchestrator.resolve(ip())
        clock.advance(3601)
        fake_vt.script(IP_PATH, httpx.ConnectTimeout("timed out"), httpx.ConnectTimeout("timed out"))

        outcome = await orchestrator.resolve(ip())

        assert outcome.source == OutcomeSource.STALE
        assert isinstance(outcome.error, TransientProviderError)
        assert outcome.record.verdict == Verdict.HARMLESS
        assert store.find_by_identity("8.8.8.8", IndicatorType.IP).fetched_at == first.record.fetched_at

    @pytest.mark.asyncio
    async def test_rate_limited_key_benched_and_retried(self, orchestrator, fake_vt, clock):
        fake_vt.script(IP_PATH, (429, {"error": {"code": "QuotaExceededError"}}, {"Retry-After": "30"}))

        outcome = await orchestrator.resolve(ip())

        assert outcome.source == OutcomeSource.LIVE
        key_a = orchestrator.key_pool.get(mask_key(KEY_A, 1))
        assert key_a.status == CredentialStatus.LIMITED
        assert (key_a.limited_until - clock.now).total_seconds() == 30

        await orchestrator.resolve(ip("1.1.1.1"))
        assert fake_vt.keys_used == [KEY_A, KEY_B, KEY_B]

    @pytest.mark.asyncio
    async def test_invalid_key_never_reused(self, orchestrator, fake_vt, clock):
        fake_vt.script(IP_PATH, (401, {"error": {"code": "WrongCredentialsError"}}, {}))

        outcome = await orchestrator.resolve(ip())
        clock.advance(3600)
        await orchestrator.resolve(ip("1.1.1.1"))

        assert outcome.ok
        assert fake_vt.keys_used == [KEY_A, KEY_B, KEY_B]
        assert orchestrator.key_pool.get(mask_key(KEY_A, 1)).status == CredentialStatus.INVALID
        assert orchestrator.stats.invalid_credentials == 1

    @pytest.mark.asyncio
    async def test_all_keys_rate_limited(self, orchestrator, fake_vt, store):
        fake_vt.script(IP_PATH, (429, {}, {}), (429, {}, {}))

        outcome = await orchestrator.resolve(ip())

        assert isinstance(outcome.error, QuotaExhausted)
        assert outcome.record is None
        assert outcome.error.retry_at is not None
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_no_keys(self, make_orchestrator, fake_vt, store):
        orchestrator = make_orchestrator(secrets=[])

        outcome = await orchestrator.resolve(ip())

        assert outcome.source == OutcomeSource.FAILED
        assert isinstance(outcome.error, QuotaExhausted)
        assert fake_vt.call_count == 0
        assert store.count() == 0


class TestBatches:
    """Tests for batch ordering and submission summaries."""

    @pytest.mark.asyncio
    async def test_output_matches_input_order(self, orchestrator, fake_vt, payload):
        fake_vt.script("/domains/evil.example.com", (200, payload(malicious=9), {}))
        indicators = [
            ip(),
            Indicator("evil.example.com", IndicatorType.DOMAIN),
            Indicator("44d88612fea8a8f36de82e1278abb02f", IndicatorType.HASH),
        ]

        outcomes = await orchestrator.resolve_batch(indicators)

        assert [o.indicator for o in outcomes] == indicators
        assert outcomes[1].record.verdict == Verdict.MALICIOUS

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator):
        assert await orchestrator.resolve_batch([]) == []

    @pytest.mark.asyncio
    async def test_mixed_submission(self, make_orchestrator, fake_vt):
        """A duplicate and a malformed entry in one batch with one key."""
        orchestrator = make_orchestrator(secrets=[KEY_A])

        result = await orchestrator.submit(["8.8.8.8", "not-an-ioc!!", "8.8.8.8"])

        assert fake_vt.call_count == 1
        assert result.total == 3
        assert result.created == 1
        assert result.from_cache == 1
        assert len(result.errors) == 1
        assert "not-an-ioc!!" in result.errors[0]
        assert [i.identity for i in result.items] == ["8.8.8.8", "8.8.8.8"]

    @pytest.mark.asyncio
    async def test_submission_metadata(self, orchestrator, store):
        result = await orchestrator.submit(
            ["EXAMPLE.com", "http://evil.test/x#frag"],
            label="campaign-42",
            case_id="CASE-7",
        )

        assert result.created == 2
        record = store.find_by_identity("example.com", IndicatorType.DOMAIN)
        assert record.label == "campaign-42"
        assert record.case_id == "CASE-7"
        assert result.to_dict()["items"][1]["identity"] == "http://evil.test/x"

    @pytest.mark.asyncio
    async def test_quota_errors_reported_per_item(self, make_orchestrator, fake_vt):
        orchestrator = make_orchestrator(secrets=[KEY_A], quota_per_window=1)

        result = await orchestrator.submit(["8.8.8.8", "1.1.1.1"])

        assert fake_vt.call_count == 1
        assert result.created == 1
        assert len(result.errors) == 1
        assert "retry later" in result.errors[0]

    @pytest.mark.asyncio
    async def test_url_lookup_path(self, orchestrator, fake_vt):
        await orchestrator.submit(["https://evil.test/login"])

        expected = url_identifier("https://evil.test/login")
        assert fake_vt.calls[0].url.path.endswith(f"/urls/{expected}")
        assert "=" not in expected

    @pytest.mark.asyncio
    async def test_items_carry_report_links(self, orchestrator):
        result = await orchestrator.submit(["8.8.8.8", "https://evil.test/login"])

        items = result.to_dict()["items"]
        assert items[0]["vt_link"] == "https://www.virustotal.com/gui/ip-address/8.8.8.8"
        assert items[1]["vt_link"] == (
            "https://www.virustotal.com/gui/url/" + url_identifier("https://evil.test/login")
        )

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator):
        await orchestrator.submit(["8.8.8.8", "8.8.8.8", "bad!!"])
        await orchestrator.submit(["8.8.8.8"])

        stats = orchestrator.stats.to_dict()
        assert stats["live_lookups"] == 1
        assert stats["cache_hits"] + stats["shared"] == 2
        assert stats["provider_calls"] == 1


class TestUnexpectedErrors:
    """Tests for failures outside the error taxonomy."""

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated(self, store, key_pool, vt_client, clock, monkeypatch):
        orchestrator = LookupOrchestrator(store, key_pool, vt_client, clock=clock)
        original = store.insert_unique

        def flaky_insert(record):
            if record.indicator.canonical == "1.1.1.1":
                raise RuntimeError("disk full")
            return original(record)

        monkeypatch.setattr(store, "insert_unique", flaky_insert)

        outcomes = await orchestrator.resolve_batch([ip("1.1.1.1"), ip()])

        assert outcomes[0].error is not None
        assert "disk full" in outcomes[0].error.describe()
        assert outcomes[1].ok
