"""
IOCSentry Result Normalizer

Validates VirusTotal API v3 responses against an explicit schema and maps
them onto the canonical verdict model.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from iocsentry.lookup.models import DetectionStats, ProviderResult, Verdict

logger = structlog.get_logger(__name__)


# =============================================================================
# Vendor Schema
# =============================================================================


class VTAnalysisStats(BaseModel):
    """last_analysis_stats block. Absent or null counts become zero."""

    model_config = ConfigDict(extra="ignore")

    malicious: int = 0
    suspicious: int = 0
    harmless: int = 0
    undetected: int = 0
    timeout: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def zero_if_missing(cls, v: Any) -> int:
        if v is None:
            return 0
        return max(0, int(v))


class VTEngineResult(BaseModel):
    """One entry of last_analysis_results."""

    model_config = ConfigDict(extra="ignore")

    engine_name: str | None = None
    category: str = "undetected"
    result: str | None = None

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v: Any) -> str:
        return v or "undetected"


class VTAttributes(BaseModel):
    """Subset of object attributes used by IOCSentry."""

    model_config = ConfigDict(extra="ignore")

    last_analysis_stats: VTAnalysisStats = Field(default_factory=VTAnalysisStats)
    last_analysis_results: dict[str, VTEngineResult] = Field(default_factory=dict)
    reputation: int | None = None
    categories: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    last_analysis_date: int | None = None

    @field_validator(
        "last_analysis_stats",
        "last_analysis_results",
        "categories",
        "tags",
        mode="before",
    )
    @classmethod
    def empty_if_null(cls, v: Any, info: Any) -> Any:
        if v is None:
            return [] if info.field_name == "tags" else {}
        return v


class VTObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    type: str | None = None
    attributes: VTAttributes = Field(default_factory=VTAttributes)


class VTResponse(BaseModel):
    """Top-level VirusTotal API v3 object response."""

    model_config = ConfigDict(extra="ignore")

    data: VTObject = Field(default_factory=VTObject)

    @field_validator("data", mode="before")
    @classmethod
    def empty_if_null(cls, v: Any) -> Any:
        return v if v is not None else {}


# =============================================================================
# Normalized Result
# =============================================================================


@dataclass
class NormalizedResult:
    """LookupRecord fields derived from a provider response."""

    verdict: Verdict
    stats: DetectionStats = field(default_factory=DetectionStats)
    provider_results: list[ProviderResult] = field(default_factory=list)
    reputation: int | None = None
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    last_analysis_date: datetime | None = None


def derive_verdict(stats: DetectionStats) -> Verdict:
    """
    Verdict from detection counts, in strict priority order.

    A single malicious detection outweighs any number of harmless ones.
    """
    if stats.malicious > 0:
        return Verdict.MALICIOUS
    if stats.suspicious > 0:
        return Verdict.SUSPICIOUS
    if stats.harmless > 0:
        return Verdict.HARMLESS
    return Verdict.UNDETECTED


class ResultNormalizer:
    """Maps raw VirusTotal payloads to NormalizedResult."""

    def parse(self, payload: dict[str, Any] | None) -> VTResponse:
        """
        Validate a payload against the vendor schema.

        Malformed sections fall back to empty defaults instead of failing
        the whole lookup.
        """
        try:
            return VTResponse.model_validate(payload or {})
        except ValidationError as e:
            logger.warning("vendor_response_invalid", errors=e.error_count())
            attrs = (payload or {}).get("data", {}) or {}
            attrs = attrs.get("attributes", {}) if isinstance(attrs, dict) else {}
            try:
                stats = VTAnalysisStats.model_validate(attrs.get("last_analysis_stats") or {})
            except ValidationError:
                stats = VTAnalysisStats()
            return VTResponse(data=VTObject(attributes=VTAttributes(last_analysis_stats=stats)))

    def normalize(self, payload: dict[str, Any] | None) -> NormalizedResult:
        """
        Normalize a provider response.

        Args:
            payload: Decoded JSON body (empty dict for a 404)

        Returns:
            NormalizedResult with verdict, stats and per-engine detail
        """
        attrs = self.parse(payload).data.attributes
        vt_stats = attrs.last_analysis_stats

        stats = DetectionStats(
            malicious=vt_stats.malicious,
            suspicious=vt_stats.suspicious,
            harmless=vt_stats.harmless,
            undetected=vt_stats.undetected,
            timeout=vt_stats.timeout,
        )

        providers = [
            ProviderResult(
                engine_name=engine.engine_name or name,
                category=engine.category,
                result=engine.result,
            )
            for name, engine in sorted(attrs.last_analysis_results.items())
        ]

        last_analysis = None
        if attrs.last_analysis_date:
            last_analysis = datetime.fromtimestamp(attrs.last_analysis_date, tz=timezone.utc)

        return NormalizedResult(
            verdict=derive_verdict(stats),
            stats=stats,
            provider_results=providers,
            reputation=attrs.reputation,
            categories=sorted(set(attrs.categories.values())),
            tags=list(attrs.tags),
            last_analysis_date=last_analysis,
        )

    def fallback(self) -> NormalizedResult:
        """Result recorded when the provider could not be reached."""
        return NormalizedResult(verdict=Verdict.UNKNOWN)
