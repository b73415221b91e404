"""
IOCSentry Lookup Data Models

Defines the indicator, verdict, lookup record and credential structures
shared by the lookup subsystem.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class IndicatorType(str, Enum):
    """Kind of threat indicator."""

    HASH = "hash"
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"


class Verdict(str, Enum):
    """Canonical outcome of a lookup."""

    MALICIOUS = "malicious"  # At least one engine flagged it malicious
    SUSPICIOUS = "suspicious"  # No malicious hits, at least one suspicious
    HARMLESS = "harmless"  # Only harmless classifications
    UNDETECTED = "undetected"  # Scanned, nothing to report
    UNKNOWN = "unknown"  # Provider failed, no data


class CredentialStatus(str, Enum):
    """Availability state of an API credential."""

    OK = "ok"
    LIMITED = "limited"
    INVALID = "invalid"


@dataclass(frozen=True)
class Indicator:
    """
    A typed, normalized indicator.

    The (canonical, type) pair is the indicator's identity.
    """

    canonical: str
    type: IndicatorType
    raw: str = field(default="", compare=False)

    @property
    def identity(self) -> tuple[str, str]:
        """Identity tuple used for caching and deduplication."""
        return (self.canonical, self.type.value)

    @property
    def key(self) -> str:
        """String form of the identity."""
        return f"{self.type.value}:{self.canonical}"

    def __str__(self) -> str:
        return self.key


@dataclass
class DetectionStats:
    """Per-engine detection counts. Never negative, never null."""

    malicious: int = 0
    suspicious: int = 0
    harmless: int = 0
    undetected: int = 0
    timeout: int = 0

    @property
    def total(self) -> int:
        return self.malicious + self.suspicious + self.harmless + self.undetected

    @property
    def detection_ratio(self) -> str:
        """Get detection ratio string like '12/90'."""
        return f"{self.malicious}/{self.total}"

    def to_dict(self) -> dict[str, int]:
        return {
            "malicious": self.malicious,
            "suspicious": self.suspicious,
            "harmless": self.harmless,
            "undetected": self.undetected,
            "timeout": self.timeout,
        }


@dataclass
class ProviderResult:
    """Result reported by a single scanning engine."""

    engine_name: str
    category: str
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine_name": self.engine_name,
            "category": self.category,
            "result": self.result,
        }


@dataclass
class LookupRecord:
    """
    Cached resolution of an indicator.

    A record is stale once now > fetched_at + ttl_seconds.
    """

    indicator: Indicator
    verdict: Verdict
    stats: DetectionStats = field(default_factory=DetectionStats)
    provider_results: list[ProviderResult] = field(default_factory=list)

    # Timing
    fetched_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    ttl_seconds: int = 3600

    # Vendor metadata
    reputation: int | None = None
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    last_analysis_date: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    # Opaque pass-through metadata
    label: str | None = None
    case_id: str | None = None

    # Assigned by the store
    record_id: int | None = None

    @property
    def expires_at(self) -> datetime:
        return self.fetched_at + timedelta(seconds=self.ttl_seconds)

    def is_stale(self, now: datetime | None = None) -> bool:
        """Check if this record has outlived its TTL."""
        return (now or utcnow()) > self.expires_at

    def with_metadata(self, label: str | None, case_id: str | None) -> "LookupRecord":
        """Copy with caller metadata attached (existing values win if none given)."""
        return replace(
            self,
            label=label if label is not None else self.label,
            case_id=case_id if case_id is not None else self.case_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.record_id,
            "indicator": self.indicator.canonical,
            "type": self.indicator.type.value,
            "verdict": self.verdict.value,
            "stats": self.stats.to_dict(),
            "detection_ratio": self.stats.detection_ratio,
            "provider_results": [p.to_dict() for p in self.provider_results],
            "reputation": self.reputation,
            "categories": self.categories,
            "tags": self.tags,
            "last_analysis_date": (
                self.last_analysis_date.isoformat() if self.last_analysis_date else None
            ),
            "fetched_at": self.fetched_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
            "label": self.label,
            "case_id": self.case_id,
        }


@dataclass
class ApiCredential:
    """
    One VirusTotal API key and its quota state.

    Only the KeyPool mutates these fields.
    """

    id: str  # Masked form, safe for logs
    secret: str = field(repr=False)
    remaining_quota: int = 0
    quota_reset_at: datetime = field(default_factory=utcnow)
    status: CredentialStatus = CredentialStatus.OK
    limited_until: datetime | None = None
    last_error: str | None = None
    requests_made: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the secret."""
        return {
            "id": self.id,
            "status": self.status.value,
            "remaining_quota": self.remaining_quota,
            "quota_reset_at": self.quota_reset_at.isoformat(),
            "limited_until": self.limited_until.isoformat() if self.limited_until else None,
            "last_error": self.last_error,
            "requests_made": self.requests_made,
        }
