"""
IOCSentry Indicator Lookup

Core lookup pipeline:
- Indicator classification and normalization
- API key pool with quota tracking
- VirusTotal client and response normalization
- Persistent record store
- Lookup orchestration with in-flight deduplication
"""

from iocsentry.lookup.classifier import IndicatorClassifier
from iocsentry.lookup.errors import (
    ClassificationError,
    DuplicateIdentity,
    InvalidCredential,
    IOCSentryError,
    NoCredentialAvailable,
    QuotaExhausted,
    TransientProviderError,
)
from iocsentry.lookup.keypool import KeyPool
from iocsentry.lookup.models import (
    ApiCredential,
    CredentialStatus,
    DetectionStats,
    Indicator,
    IndicatorType,
    LookupRecord,
    Verdict,
)
from iocsentry.lookup.normalizer import ResultNormalizer
from iocsentry.lookup.orchestrator import (
    LookupOrchestrator,
    LookupOutcome,
    LookupStats,
    SubmissionResult,
)
from iocsentry.lookup.store import RecordQuery, RecordStore, SQLiteRecordStore
from iocsentry.lookup.virustotal import VirusTotalClient

__all__ = [
    "IndicatorClassifier",
    "ClassificationError",
    "DuplicateIdentity",
    "InvalidCredential",
    "IOCSentryError",
    "NoCredentialAvailable",
    "QuotaExhausted",
    "TransientProviderError",
    "KeyPool",
    "ApiCredential",
    "CredentialStatus",
    "DetectionStats",
    "Indicator",
    "IndicatorType",
    "LookupRecord",
    "Verdict",
    "ResultNormalizer",
    "LookupOrchestrator",
    "LookupOutcome",
    "LookupStats",
    "SubmissionResult",
    "RecordQuery",
    "RecordStore",
    "SQLiteRecordStore",
    "VirusTotalClient",
]
