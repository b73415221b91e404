"""
IOCSentry Lookup Orchestrator

Resolves indicators to verdicts. Handles caching, in-flight deduplication,
credential rotation, retry and fallback persistence.

Per indicator:
1. Serve a live (non-stale) record from the store
2. Join an in-flight lookup for the same identity if one exists
3. Otherwise reserve a key, call VirusTotal, normalize and persist
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

import structlog

from iocsentry.lookup.classifier import IndicatorClassifier, get_classifier
from iocsentry.lookup.errors import (
    ClassificationError,
    DuplicateIdentity,
    InvalidCredential,
    IOCSentryError,
    NoCredentialAvailable,
    ProviderRateLimited,
    QuotaExhausted,
    TransientProviderError,
)
from iocsentry.lookup.keypool import Invalid, KeyPool, RateLimited, Released, Success
from iocsentry.lookup.models import Indicator, LookupRecord, Verdict, utcnow
from iocsentry.lookup.normalizer import NormalizedResult, ResultNormalizer
from iocsentry.lookup.store import RecordStore
from iocsentry.lookup.virustotal import ProviderResponse, VirusTotalClient, gui_link

logger = structlog.get_logger(__name__)


# Initial attempt plus one retry on a different key
MAX_ATTEMPTS = 2


class OutcomeSource(str, Enum):
    """Where a lookup outcome came from."""

    CACHE = "cache"  # Live record already stored
    LIVE = "live"  # Fetched from VirusTotal and persisted
    SHARED = "shared"  # Joined another task's in-flight lookup
    FALLBACK = "fallback"  # Provider failed; 'unknown' record persisted
    STALE = "stale"  # Refresh failed; previous record served
    FAILED = "failed"  # No record


@dataclass
class LookupOutcome:
    """Result of resolving one indicator."""

    indicator: Indicator
    record: LookupRecord | None = None
    error: IOCSentryError | None = None
    source: OutcomeSource = OutcomeSource.FAILED

    @property
    def ok(self) -> bool:
        return self.record is not None and self.error is None

    @property
    def created(self) -> bool:
        """A record was written by this lookup."""
        return self.source in (OutcomeSource.LIVE, OutcomeSource.FALLBACK)

    @property
    def from_cache(self) -> bool:
        """Served without a provider call of its own."""
        return self.source in (OutcomeSource.CACHE, OutcomeSource.SHARED, OutcomeSource.STALE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator.canonical,
            "type": self.indicator.type.value,
            "source": self.source.value,
            "record": self.record.to_dict() if self.record else None,
            "error": self.error.describe() if self.error else None,
        }


@dataclass
class LookupStats:
    """Counters for lookups served by an orchestrator."""

    total_indicators: int = 0
    cache_hits: int = 0
    shared: int = 0
    live_lookups: int = 0
    provider_calls: int = 0
    retries: int = 0
    fallbacks: int = 0
    stale_served: int = 0
    quota_exhausted: int = 0
    invalid_credentials: int = 0
    duplicate_races: int = 0
    errors: int = 0
    malicious_found: int = 0
    suspicious_found: int = 0

    def record_outcome(self, outcome: LookupOutcome) -> None:
        self.total_indicators += 1
        if outcome.source == OutcomeSource.CACHE:
            self.cache_hits += 1
        elif outcome.source == OutcomeSource.SHARED:
            self.shared += 1
        elif outcome.source == OutcomeSource.LIVE:
            self.live_lookups += 1
        elif outcome.source == OutcomeSource.FALLBACK:
            self.fallbacks += 1
        elif outcome.source == OutcomeSource.STALE:
            self.stale_served += 1

        if isinstance(outcome.error, QuotaExhausted):
            self.quota_exhausted += 1
        if outcome.error is not None:
            self.errors += 1

        if outcome.record is not None:
            if outcome.record.verdict == Verdict.MALICIOUS:
                self.malicious_found += 1
            elif outcome.record.verdict == Verdict.SUSPICIOUS:
                self.suspicious_found += 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        total = self.total_indicators
        served = self.cache_hits + self.shared
        return {
            "total_indicators": total,
            "cache_hits": self.cache_hits,
            "shared": self.shared,
            "live_lookups": self.live_lookups,
            "provider_calls": self.provider_calls,
            "retries": self.retries,
            "fallbacks": self.fallbacks,
            "stale_served": self.stale_served,
            "quota_exhausted": self.quota_exhausted,
            "invalid_credentials": self.invalid_credentials,
            "duplicate_races": self.duplicate_races,
            "errors": self.errors,
            "malicious_found": self.malicious_found,
            "suspicious_found": self.suspicious_found,
            "cache_hit_rate": round(served / total, 3) if total else 0,
        }


@dataclass
class SubmissionItem:
    """One resolved entry of a submission."""

    record_id: int | None
    identity: str
    type: str
    verdict: str
    source: str
    vt_link: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "identity": self.identity,
            "type": self.type,
            "verdict": self.verdict,
            "source": self.source,
            "vt_link": self.vt_link,
        }


@dataclass
class SubmissionResult:
    """Summary returned for a batch of raw indicator strings."""

    total: int = 0
    created: int = 0
    from_cache: int = 0
    errors: list[str] = field(default_factory=list)
    items: list[SubmissionItem] = field(default_factory=list)
    stats: LookupStats = field(default_factory=LookupStats)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "total": self.total,
            "created": self.created,
            "from_cache": self.from_cache,
            "errors": self.errors,
            "items": [i.to_dict() for i in self.items],
            "stats": self.stats.to_dict(),
            "duration_seconds": round(self.duration_seconds, 2),
        }


class LookupOrchestrator:
    """
    Coordinates indicator resolution.

    Coordinates between:
    - Record store (persistent cache)
    - Key pool (credential rotation and quota)
    - VirusTotal client
    - Result normalizer
    """

    def __init__(
        self,
        store: RecordStore,
        key_pool: KeyPool,
        client: VirusTotalClient,
        normalizer: ResultNormalizer | None = None,
        classifier: IndicatorClassifier | None = None,
        ttl_seconds: int = 3600,
        fallback_ttl_seconds: int = 900,
        max_concurrent: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Record persistence
            key_pool: Credential pool, owned by the caller
            client: VirusTotal client
            normalizer: Vendor response normalizer
            classifier: Indicator classifier used by submit()
            ttl_seconds: TTL for resolved records
            fallback_ttl_seconds: TTL for 'unknown' fallback records
            max_concurrent: Maximum concurrent provider calls
            clock: Time source for staleness checks and timestamps
        """
        self.store = store
        self.key_pool = key_pool
        self.client = client
        self.normalizer = normalizer or ResultNormalizer()
        self.classifier = classifier or get_classifier()
        self.ttl_seconds = ttl_seconds
        self.fallback_ttl_seconds = fallback_ttl_seconds
        self.max_concurrent = max_concurrent
        self._clock = clock

        # Semaphore to limit concurrent provider calls
        self._semaphore = asyncio.Semaphore(max_concurrent)

        # identity -> future resolved by the task doing the lookup
        self._in_flight: dict[tuple[str, str], asyncio.Future] = {}

        self.stats = LookupStats()

    @property
    def is_configured(self) -> bool:
        return self.key_pool.is_configured

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(
        self,
        raw_strings: Iterable[str],
        label: str | None = None,
        case_id: str | None = None,
        force_refresh: bool = False,
    ) -> SubmissionResult:
        """
        Classify and resolve a batch of raw strings.

        Malformed strings and failed lookups are reported in errors; they
        never abort the batch.

        Args:
            raw_strings: User-supplied indicators
            label: Opaque label stored on new records
            case_id: Opaque case reference stored on new records
            force_refresh: Re-resolve even if a live record exists

        Returns:
            SubmissionResult with counts, errors and items in input order
        """
        start_time = time.time()
        raws = list(raw_strings)
        result = SubmissionResult(total=len(raws))

        classified = self.classifier.classify_many(raws)

        indicators = [c for c in classified if isinstance(c, Indicator)]

        logger.info(
            "submission_starting",
            total=len(raws),
            valid=len(indicators),
            rejected=len(raws) - len(indicators),
            label=label,
        )

        outcomes = iter(
            await self.resolve_batch(
                indicators,
                label=label,
                case_id=case_id,
                force_refresh=force_refresh,
            )
        )

        for entry in classified:
            if isinstance(entry, ClassificationError):
                result.errors.append(entry.describe())
                continue

            outcome = next(outcomes)
            result.stats.record_outcome(outcome)

            if outcome.created:
                result.created += 1
            elif outcome.from_cache:
                result.from_cache += 1

            if outcome.error is not None:
                result.errors.append(outcome.error.describe())

            if outcome.record is not None:
                result.items.append(SubmissionItem(
                    record_id=outcome.record.record_id,
                    identity=outcome.record.indicator.canonical,
                    type=outcome.record.indicator.type.value,
                    verdict=outcome.record.verdict.value,
                    source=outcome.source.value,
                    vt_link=gui_link(outcome.record.indicator),
                ))

        result.duration_seconds = time.time() - start_time

        logger.info(
            "submission_complete",
            total=result.total,
            created=result.created,
            from_cache=result.from_cache,
            errors=len(result.errors),
            duration=round(result.duration_seconds, 2),
        )

        return result

    async def resolve_batch(
        self,
        indicators: Iterable[Indicator],
        label: str | None = None,
        case_id: str | None = None,
        force_refresh: bool = False,
    ) -> list[LookupOutcome]:
        """
        Resolve many indicators concurrently.

        Returns:
            One LookupOutcome per input, in input order
        """
        indicators = list(indicators)
        if not indicators:
            return []

        lookups = await asyncio.gather(
            *[
                self.resolve(ind, label=label, case_id=case_id, force_refresh=force_refresh)
                for ind in indicators
            ],
            return_exceptions=True,
        )

        outcomes: list[LookupOutcome] = []
        for ind, lookup in zip(indicators, lookups):
            if isinstance(lookup, BaseException):
                if not isinstance(lookup, Exception):
                    raise lookup
                logger.error(
                    "lookup_unexpected_error",
                    indicator=ind.canonical,
                    type=ind.type.value,
                    error=str(lookup),
                    exc_info=lookup,
                )
                outcome = LookupOutcome(
                    indicator=ind,
                    error=IOCSentryError(f"Unexpected error: {lookup}", raw=ind.raw or ind.canonical),
                )
                self.stats.record_outcome(outcome)
                outcomes.append(outcome)
            else:
                outcomes.append(lookup)

        exhausted = sum(1 for o in outcomes if isinstance(o.error, QuotaExhausted))
        if exhausted:
            logger.warning(
                "lookups_quota_exhausted",
                affected=exhausted,
                batch_size=len(outcomes),
                retry_at=self.key_pool.earliest_reset(),
            )

        return outcomes

    async def resolve(
        self,
        indicator: Indicator,
        label: str | None = None,
        case_id: str | None = None,
        force_refresh: bool = False,
    ) -> LookupOutcome:
        """
        Resolve a single indicator.

        Args:
            indicator: Classified indicator
            label: Opaque label stored on a new record
            case_id: Opaque case reference stored on a new record
            force_refresh: Skip the cache even if the record is live

        Returns:
            LookupOutcome
        """
        existing = await asyncio.to_thread(
            self.store.find_by_identity, indicator.canonical, indicator.type
        )
        if existing is not None and not force_refresh and not self.is_stale(existing):
            outcome = LookupOutcome(indicator, record=existing, source=OutcomeSource.CACHE)
            self.stats.record_outcome(outcome)
            return outcome

        future, owner = self._claim(indicator)

        if not owner:
            logger.debug("lookup_deduplicated", indicator=indicator.key)
            shared = await asyncio.shield(future)
            outcome = self._share(indicator, shared)
            self.stats.record_outcome(outcome)
            return outcome

        try:
            outcome = await self._resolve_owned(indicator, label, case_id, force_refresh)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved; the owner re-raises
            future.exception()
            raise
        else:
            future.set_result(outcome)
        finally:
            self._in_flight.pop(indicator.identity, None)

        self.stats.record_outcome(outcome)
        return outcome

    # =========================================================================
    # Internals
    # =========================================================================

    def is_stale(self, record: LookupRecord) -> bool:
        """Staleness against the orchestrator clock."""
        return self.store.is_stale(record, self._clock())

    def _claim(self, indicator: Indicator) -> tuple[asyncio.Future, bool]:
        """
        Find or register the in-flight lookup for an identity.

        No suspension point between the check and the insert, so exactly
        one task becomes the owner.
        """
        future = self._in_flight.get(indicator.identity)
        if future is not None:
            return future, False

        future = asyncio.get_running_loop().create_future()
        self._in_flight[indicator.identity] = future
        return future, True

    @staticmethod
    def _share(indicator: Indicator, shared: LookupOutcome) -> LookupOutcome:
        """Re-target another task's outcome at this caller's indicator."""
        error = shared.error.with_raw(indicator.raw or indicator.canonical) if shared.error else None
        source = OutcomeSource.SHARED if shared.record is not None else OutcomeSource.FAILED
        return LookupOutcome(indicator, record=shared.record, error=error, source=source)

    async def _resolve_owned(
        self,
        indicator: Indicator,
        label: str | None,
        case_id: str | None,
        force_refresh: bool,
    ) -> LookupOutcome:
        """Lookup path for the task that owns the in-flight slot."""
        # Another task may have finished between our cache check and the claim
        existing = await asyncio.to_thread(
            self.store.find_by_identity, indicator.canonical, indicator.type
        )
        if existing is not None and not force_refresh and not self.is_stale(existing):
            return LookupOutcome(indicator, record=existing, source=OutcomeSource.CACHE)

        raw = indicator.raw or indicator.canonical

        async with self._semaphore:
            try:
                response = await self._dispatch(indicator)
            except QuotaExhausted as e:
                if existing is not None:
                    return LookupOutcome(indicator, record=existing, error=e, source=OutcomeSource.STALE)
                return LookupOutcome(indicator, error=e, source=OutcomeSource.FAILED)
            except TransientProviderError as e:
                error = e.with_raw(raw)
                if existing is not None:
                    logger.info("lookup_serving_stale", indicator=indicator.key, error=e.message)
                    return LookupOutcome(indicator, record=existing, error=error, source=OutcomeSource.STALE)

                record = self._build_record(
                    indicator,
                    self.normalizer.fallback(),
                    raw_payload={},
                    ttl_seconds=self.fallback_ttl_seconds,
                    label=label,
                    case_id=case_id,
                )
                stored, fresh = await self._persist(record, existing)
                logger.info(
                    "lookup_fallback_recorded",
                    indicator=indicator.key,
                    error=e.message,
                )
                if not fresh:
                    return LookupOutcome(indicator, record=stored, source=OutcomeSource.CACHE)
                return LookupOutcome(indicator, record=stored, error=error, source=OutcomeSource.FALLBACK)

        normalized = self.normalizer.normalize(response.payload)
        record = self._build_record(
            indicator,
            normalized,
            raw_payload=response.payload,
            ttl_seconds=self.ttl_seconds,
            label=label,
            case_id=case_id,
        )
        stored, fresh = await self._persist(record, existing)

        logger.debug(
            "indicator_resolved",
            indicator=indicator.key,
            verdict=stored.verdict.value,
            found=response.found,
        )

        source = OutcomeSource.LIVE if fresh else OutcomeSource.CACHE
        return LookupOutcome(indicator, record=stored, source=source)

    async def _dispatch(self, indicator: Indicator) -> ProviderResponse:
        """
        Call VirusTotal, retrying once on a different key.

        Raises:
            QuotaExhausted: No key could serve the request
            TransientProviderError: Every attempt failed transiently
        """
        raw = indicator.raw or indicator.canonical
        tried: list[str] = []
        last_error: IOCSentryError | None = None

        for attempt in range(MAX_ATTEMPTS):
            try:
                credential = self.key_pool.acquire(exclude=tried)
            except NoCredentialAvailable as e:
                if isinstance(last_error, TransientProviderError):
                    raise last_error
                raise QuotaExhausted(
                    "No API credential available, retry later",
                    raw=raw,
                    retry_at=e.retry_at,
                )

            tried.append(credential.id)
            if attempt > 0:
                self.stats.retries += 1
            self.stats.provider_calls += 1

            try:
                response = await self.client.lookup(indicator, credential)
            except ProviderRateLimited as e:
                self.key_pool.report_result(credential.id, RateLimited(e.reset_at))
                last_error = e
                continue
            except InvalidCredential as e:
                self.key_pool.report_result(credential.id, Invalid(e.message))
                self.stats.invalid_credentials += 1
                last_error = e
                continue
            except TransientProviderError as e:
                # Ambiguous outcome: quota not assumed consumed
                self.key_pool.report_result(credential.id, Released(e.message))
                logger.info(
                    "lookup_attempt_failed",
                    indicator=indicator.key,
                    key_id=credential.id,
                    attempt=attempt + 1,
                    error=e.message,
                )
                last_error = e
                continue

            self.key_pool.report_result(
                credential.id,
                Success(remaining=response.remaining, reset_at=response.reset_at),
            )
            return response

        if isinstance(last_error, TransientProviderError):
            raise last_error
        raise QuotaExhausted(
            "No API credential could serve the request, retry later",
            raw=raw,
            retry_at=self.key_pool.earliest_reset(),
        )

    def _build_record(
        self,
        indicator: Indicator,
        normalized: NormalizedResult,
        raw_payload: dict[str, Any],
        ttl_seconds: int,
        label: str | None,
        case_id: str | None,
    ) -> LookupRecord:
        now = self._clock()
        return LookupRecord(
            indicator=Indicator(indicator.canonical, indicator.type),
            verdict=normalized.verdict,
            stats=normalized.stats,
            provider_results=normalized.provider_results,
            fetched_at=now,
            updated_at=now,
            ttl_seconds=ttl_seconds,
            reputation=normalized.reputation,
            categories=normalized.categories,
            tags=normalized.tags,
            last_analysis_date=normalized.last_analysis_date,
            raw=raw_payload,
            label=label,
            case_id=case_id,
        )

    async def _persist(
        self,
        record: LookupRecord,
        existing: LookupRecord | None,
    ) -> tuple[LookupRecord, bool]:
        """
        Write a record.

        Returns:
            (stored record, True if written by us). A lost insert race
            returns the record already stored and False.
        """
        if existing is not None:
            record = record.with_metadata(
                record.label if record.label is not None else existing.label,
                record.case_id if record.case_id is not None else existing.case_id,
            )
            stored = await asyncio.to_thread(self.store.refresh, record)
            return stored, True

        try:
            stored = await asyncio.to_thread(self.store.insert_unique, record)
            return stored, True
        except DuplicateIdentity:
            self.stats.duplicate_races += 1
            current = await asyncio.to_thread(
                self.store.find_by_identity,
                record.indicator.canonical,
                record.indicator.type,
            )
            if current is None:  # pragma: no cover
                raise
            logger.info("lookup_duplicate_resolved", indicator=record.indicator.key)
            return current, False


# Singleton instance
_orchestrator_instance: LookupOrchestrator | None = None


def get_orchestrator() -> LookupOrchestrator:
    """Get or create the global orchestrator from settings."""
    global _orchestrator_instance
    if _orchestrator_instance is None:
        from iocsentry.config import settings
        from iocsentry.lookup.store import get_record_store
        from iocsentry.lookup.virustotal import get_virustotal_client

        _orchestrator_instance = LookupOrchestrator(
            store=get_record_store(),
            key_pool=KeyPool.from_settings(settings),
            client=get_virustotal_client(),
            ttl_seconds=settings.cache_ttl_seconds,
            fallback_ttl_seconds=settings.fallback_ttl_seconds,
            max_concurrent=settings.max_concurrent_lookups,
        )
    return _orchestrator_instance
