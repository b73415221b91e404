"""
IOCSentry API Key Pool

Rotates lookups across several VirusTotal API keys while tracking each
key's quota window, rate-limit cooldown and validity.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Union

import structlog

from iocsentry.lookup.errors import NoCredentialAvailable
from iocsentry.lookup.models import ApiCredential, CredentialStatus, utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# Dispatch Outcomes
# =============================================================================


@dataclass(frozen=True)
class Success:
    """The provider served the request. Values come from response headers if present."""

    remaining: int | None = None
    reset_at: datetime | None = None


@dataclass(frozen=True)
class RateLimited:
    """The provider answered 429; the key is unusable until reset_at."""

    reset_at: datetime


@dataclass(frozen=True)
class Invalid:
    """The provider rejected the key."""

    reason: str = "authentication rejected"


@dataclass(frozen=True)
class Released:
    """The outcome is ambiguous (timeout, transport error); refund the reserved unit."""

    reason: str = "ambiguous"


Outcome = Union[Success, RateLimited, Invalid, Released]


def mask_key(secret: str, index: int) -> str:
    """Loggable identifier for a key. Never exposes the full secret."""
    prefix = secret[:6] if len(secret) > 10 else ""
    return f"key{index}:{prefix}..."


class KeyPool:
    """
    Thread-safe pool of API credentials.

    Selection and outcome reporting are serialized by one lock, and
    acquire() reserves a unit of quota before returning, so concurrent
    dispatches never spend the same unit twice.
    """

    def __init__(
        self,
        secrets: Iterable[str],
        quota_per_window: int = 4,
        window_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the pool.

        Args:
            secrets: API keys; blanks and duplicates are dropped
            quota_per_window: Requests each key may issue per window
            window_seconds: Quota window length
            clock: Time source (injectable for tests)
        """
        self.quota_per_window = quota_per_window
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._lock = threading.Lock()

        unique: list[str] = []
        for secret in secrets:
            secret = secret.strip()
            if secret and secret not in unique:
                unique.append(secret)

        now = clock()
        self._credentials: dict[str, ApiCredential] = {}
        for index, secret in enumerate(unique, start=1):
            cred = ApiCredential(
                id=mask_key(secret, index),
                secret=secret,
                remaining_quota=quota_per_window,
                quota_reset_at=now,
            )
            self._credentials[cred.id] = cred

        logger.info(
            "key_pool_initialized",
            keys=len(self._credentials),
            quota_per_window=quota_per_window,
            window_seconds=window_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Any, clock: Callable[[], datetime] = utcnow) -> "KeyPool":
        """Build a pool from application settings."""
        return cls(
            secrets=settings.virustotal_api_keys,
            quota_per_window=settings.key_quota_per_window,
            window_seconds=settings.key_window_seconds,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def is_configured(self) -> bool:
        """Check if any key was loaded."""
        return bool(self._credentials)

    # =========================================================================
    # Selection
    # =========================================================================

    def _effective_remaining(self, cred: ApiCredential, now: datetime) -> int:
        """Remaining quota, counting a finished window as replenished."""
        if cred.quota_reset_at <= now:
            return self.quota_per_window
        return cred.remaining_quota

    def _is_eligible(self, cred: ApiCredential, now: datetime) -> bool:
        if cred.status == CredentialStatus.INVALID:
            return False
        if cred.status == CredentialStatus.LIMITED:
            if cred.limited_until is not None and now < cred.limited_until:
                return False
        return self._effective_remaining(cred, now) > 0

    def acquire(self, exclude: Iterable[str] = ()) -> ApiCredential:
        """
        Reserve one request on the best available key.

        Picks the key with the most remaining quota; ties go to the key
        whose window resets first.

        Args:
            exclude: Key ids that must not be returned (already tried)

        Returns:
            The credential to use. Report the result with report_result().

        Raises:
            NoCredentialAvailable: No key can serve a request right now
        """
        excluded = set(exclude)

        with self._lock:
            now = self._clock()
            candidates = [
                c for c in self._credentials.values()
                if c.id not in excluded and self._is_eligible(c, now)
            ]

            if not candidates:
                retry_at = self._earliest_reset_locked(now)
                logger.debug("key_pool_exhausted", retry_at=retry_at, excluded=len(excluded))
                raise NoCredentialAvailable(retry_at=retry_at)

            cred = min(
                candidates,
                key=lambda c: (-self._effective_remaining(c, now), c.quota_reset_at),
            )

            # Lazy reactivation
            if cred.status == CredentialStatus.LIMITED:
                cred.status = CredentialStatus.OK
                cred.limited_until = None
                logger.info("credential_reactivated", key_id=cred.id)

            # Start a fresh window
            if cred.quota_reset_at <= now:
                cred.remaining_quota = self.quota_per_window
                cred.quota_reset_at = now + self.window

            cred.remaining_quota -= 1
            cred.requests_made += 1

            logger.debug(
                "credential_acquired",
                key_id=cred.id,
                remaining=cred.remaining_quota,
            )
            return cred

    # =========================================================================
    # Outcome Reporting
    # =========================================================================

    def report_result(self, key_id: str, outcome: Outcome) -> None:
        """
        Record what happened when a key was used.

        Args:
            key_id: Id of the credential returned by acquire()
            outcome: Success, RateLimited, Invalid or Released
        """
        with self._lock:
            cred = self._credentials.get(key_id)
            if cred is None:
                raise KeyError(f"Unknown credential: {key_id}")

            now = self._clock()

            # Invalid is terminal; late outcomes from other in-flight
            # requests on the same key must not revive it
            if cred.status == CredentialStatus.INVALID and not isinstance(outcome, Invalid):
                logger.debug(
                    "credential_outcome_ignored",
                    key_id=cred.id,
                    outcome=type(outcome).__name__,
                )
                return

            if isinstance(outcome, Success):
                if outcome.remaining is not None:
                    cred.remaining_quota = max(0, outcome.remaining)
                if outcome.reset_at is not None:
                    cred.quota_reset_at = outcome.reset_at
                cred.last_error = None

            elif isinstance(outcome, RateLimited):
                cred.status = CredentialStatus.LIMITED
                cred.limited_until = outcome.reset_at
                cred.remaining_quota = 0
                cred.quota_reset_at = outcome.reset_at
                cred.last_error = "rate limited"
                logger.info(
                    "credential_rate_limited",
                    key_id=cred.id,
                    reset_at=outcome.reset_at.isoformat(),
                )

            elif isinstance(outcome, Invalid):
                cred.status = CredentialStatus.INVALID
                cred.last_error = outcome.reason
                logger.warning(
                    "credential_invalid",
                    key_id=cred.id,
                    reason=outcome.reason,
                    active_keys=self._active_count_locked(),
                )

            elif isinstance(outcome, Released):
                # The request may not have been counted; give the unit back
                # only while the same window is still running
                if cred.quota_reset_at > now and cred.status == CredentialStatus.OK:
                    cred.remaining_quota = min(self.quota_per_window, cred.remaining_quota + 1)
                cred.last_error = outcome.reason

            else:
                raise TypeError(f"Unsupported outcome: {outcome!r}")

    # =========================================================================
    # Introspection
    # =========================================================================

    def _active_count_locked(self) -> int:
        return sum(1 for c in self._credentials.values() if c.status != CredentialStatus.INVALID)

    def _earliest_reset_locked(self, now: datetime) -> datetime | None:
        times = [
            c.limited_until if c.status == CredentialStatus.LIMITED and c.limited_until else c.quota_reset_at
            for c in self._credentials.values()
            if c.status != CredentialStatus.INVALID
        ]
        future = [t for t in times if t > now]
        return min(future) if future else None

    def earliest_reset(self) -> datetime | None:
        """When the next exhausted key becomes usable again, if any."""
        with self._lock:
            return self._earliest_reset_locked(self._clock())

    def get(self, key_id: str) -> ApiCredential | None:
        return self._credentials.get(key_id)

    def snapshot(self) -> list[dict[str, Any]]:
        """Masked per-key status for observability."""
        with self._lock:
            now = self._clock()
            entries = []
            for cred in self._credentials.values():
                data = cred.to_dict()
                data["available"] = self._is_eligible(cred, now)
                data["remaining_quota"] = self._effective_remaining(cred, now)
                entries.append(data)
            return entries
