"""
Tests for the API key pool.
"""

import threading
from datetime import timedelta

import pytest

from iocsentry.lookup.errors import NoCredentialAvailable
from iocsentry.lookup.keypool import (
    Invalid,
    KeyPool,
    RateLimited,
    Released,
    Success,
    mask_key,
)
from iocsentry.lookup.models import CredentialStatus

KEY_A = "alpha-key-0000000001"
KEY_B = "bravo-key-0000000002"


class TestKeyPoolSetup:
    """Tests for pool construction."""

    def test_duplicates_and_blanks_dropped(self, clock):
        pool = KeyPool([KEY_A, " ", KEY_A, KEY_B], clock=clock)
        assert len(pool) == 2

    def test_ids_are_masked(self, clock):
        pool = KeyPool([KEY_A], clock=clock)
        snapshot = pool.snapshot()

        assert snapshot[0]["id"] == mask_key(KEY_A, 1)
        assert KEY_A not in str(snapshot)
        assert KEY_A not in repr(pool.get(snapshot[0]["id"]))

    def test_short_keys_expose_no_prefix(self):
        assert mask_key("short", 3) == "key3:..."

    def test_empty_pool(self, clock):
        pool = KeyPool([], clock=clock)
        assert not pool.is_configured
        with pytest.raises(NoCredentialAvailable):
            pool.acquire()


class TestSelection:
    """Tests for credential selection."""

    def test_prefers_most_remaining_quota(self, key_pool):
        first = key_pool.acquire()
        second = key_pool.acquire()

        # After one spend the other key has more quota left
        assert first.id != second.id

    def test_tie_broken_by_earliest_reset(self, clock):
        pool = KeyPool([KEY_A, KEY_B], quota_per_window=4, clock=clock)
        a = pool.acquire()
        clock.advance(10)
        b = pool.acquire()
        assert b.id != a.id

        # Both have 3 left; a's window started first and resets first
        assert pool.acquire().id == a.id

    def test_exclude(self, key_pool):
        first = key_pool.acquire()
        second = key_pool.acquire(exclude=[first.id])
        assert second.id != first.id

        with pytest.raises(NoCredentialAvailable):
            key_pool.acquire(exclude=[first.id, second.id])

    def test_quota_exhaustion_and_window_reset(self, clock):
        pool = KeyPool([KEY_A], quota_per_window=2, window_seconds=60, clock=clock)
        pool.acquire()
        pool.acquire()

        with pytest.raises(NoCredentialAvailable) as exc_info:
            pool.acquire()
        assert exc_info.value.retry_at == clock.now + timedelta(seconds=60)

        clock.advance(61)
        assert pool.acquire().remaining_quota == 1

    def test_concurrent_acquire_never_double_spends(self, clock):
        pool = KeyPool([KEY_A, KEY_B], quota_per_window=50, clock=clock)
        acquired: list[str] = []
        failures: list[Exception] = []

        def worker():
            for _ in range(30):
                try:
                    acquired.append(pool.acquire().id)
                except NoCredentialAvailable as e:
                    failures.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 120 attempts against 100 units of quota
        assert len(acquired) == 100
        assert len(failures) == 20
        assert all(c["remaining_quota"] == 0 for c in pool.snapshot())


class TestOutcomes:
    """Tests for outcome reporting."""

    def test_rate_limited_key_excluded_until_reset(self, clock):
        pool = KeyPool([KEY_A, KEY_B], quota_per_window=100, clock=clock)
        key_a = pool.acquire()
        reset_at = clock.now + timedelta(seconds=30)
        pool.report_result(key_a.id, RateLimited(reset_at))

        for _ in range(20):
            assert pool.acquire().id != key_a.id
            clock.advance(1)

        # Simulated time reaches the reset
        clock.now = reset_at
        ids = {pool.acquire().id for _ in range(5)}
        assert key_a.id in ids
        assert pool.get(key_a.id).status == CredentialStatus.OK

    def test_invalid_key_permanently_excluded(self, clock):
        pool = KeyPool([KEY_A, KEY_B], clock=clock)
        key = pool.acquire()
        pool.report_result(key.id, Invalid("HTTP 401"))

        clock.advance(3600)
        for _ in range(3):
            assert pool.acquire().id != key.id
        assert pool.get(key.id).status == CredentialStatus.INVALID
        assert pool.get(key.id).last_error == "HTTP 401"

    def test_late_rate_limit_does_not_revive_invalid_key(self, clock):
        pool = KeyPool([KEY_A], quota_per_window=100, clock=clock)
        first = pool.acquire()
        second = pool.acquire()
        assert first.id == second.id

        pool.report_result(first.id, Invalid("HTTP 401"))
        pool.report_result(second.id, RateLimited(clock.now + timedelta(seconds=30)))
        pool.report_result(second.id, Success(remaining=50))

        assert pool.get(first.id).status == CredentialStatus.INVALID
        assert pool.get(first.id).last_error == "HTTP 401"

        clock.advance(31)
        with pytest.raises(NoCredentialAvailable):
            pool.acquire()

    def test_released_refunds_quota(self, clock):
        pool = KeyPool([KEY_A], quota_per_window=2, clock=clock)
        key = pool.acquire()
        assert key.remaining_quota == 1

        pool.report_result(key.id, Released("timeout"))
        assert pool.get(key.id).remaining_quota == 2

    def test_success_applies_header_values(self, clock):
        pool = KeyPool([KEY_A], quota_per_window=4, clock=clock)
        key = pool.acquire()
        reset_at = clock.now + timedelta(seconds=5)

        pool.report_result(key.id, Success(remaining=0, reset_at=reset_at))
        with pytest.raises(NoCredentialAvailable):
            pool.acquire()

        clock.now = reset_at
        assert pool.acquire().id == key.id

    def test_unknown_key(self, key_pool):
        with pytest.raises(KeyError):
            key_pool.report_result("key9:nope...", Success())

    def test_earliest_reset(self, clock):
        pool = KeyPool([KEY_A, KEY_B], clock=clock)
        a = pool.acquire()
        b = pool.acquire()
        pool.report_result(a.id, RateLimited(clock.now + timedelta(seconds=120)))
        pool.report_result(b.id, RateLimited(clock.now + timedelta(seconds=30)))

        assert pool.earliest_reset() == clock.now + timedelta(seconds=30)
