"""
IOCSentry Record Store

Persistence for lookup records. The (canonical, type) identity is unique
at the storage layer, so concurrent writers from any process cannot
create duplicates.
"""

import csv
import io
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import structlog

from iocsentry.lookup.errors import DuplicateIdentity
from iocsentry.lookup.models import (
    DetectionStats,
    Indicator,
    IndicatorType,
    LookupRecord,
    ProviderResult,
    Verdict,
)

logger = structlog.get_logger(__name__)


EXPORT_COLUMNS = [
    "id",
    "indicator",
    "type",
    "verdict",
    "malicious",
    "suspicious",
    "harmless",
    "undetected",
    "label",
    "case_id",
    "fetched_at",
    "updated_at",
]


@dataclass
class RecordQuery:
    """Filters for browsing stored records."""

    q: str | None = None  # Substring of the canonical form
    type: IndicatorType | None = None
    verdict: Verdict | None = None
    label: str | None = None
    case_id: str | None = None
    fetched_from: datetime | None = None
    fetched_to: datetime | None = None
    page: int = 1
    page_size: int = 50


@dataclass
class RecordPage:
    """One page of query results."""

    items: list[LookupRecord] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 1
        return max(1, -(-self.total // self.page_size))

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [r.to_dict() for r in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
        }


class RecordStore(ABC):
    """
    Persistence contract required by the lookup orchestrator.

    Implementations must enforce (canonical, type) uniqueness atomically.
    """

    @abstractmethod
    def find_by_identity(self, canonical: str, indicator_type: IndicatorType) -> LookupRecord | None:
        """Return the stored record for an identity, if any."""

    @abstractmethod
    def insert_unique(self, record: LookupRecord) -> LookupRecord:
        """
        Insert a new record.

        Raises:
            DuplicateIdentity: A record with the same identity exists
        """

    @abstractmethod
    def refresh(self, record: LookupRecord) -> LookupRecord:
        """Overwrite the stored record for the same identity in place."""

    @abstractmethod
    def query(self, query: RecordQuery) -> RecordPage:
        """Browse stored records."""

    def is_stale(self, record: LookupRecord, now: datetime | None = None) -> bool:
        """Check whether now > fetched_at + ttl_seconds."""
        return record.is_stale(now)

    def export(self, query: RecordQuery, fmt: Literal["csv", "json"] = "json") -> str:
        """Render every record matching the query as CSV or JSON."""
        records = self.query_all(query)

        if fmt == "json":
            return json.dumps([r.to_dict() for r in records], indent=2)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for r in records:
            writer.writerow({
                "id": r.record_id,
                "indicator": r.indicator.canonical,
                "type": r.indicator.type.value,
                "verdict": r.verdict.value,
                "malicious": r.stats.malicious,
                "suspicious": r.stats.suspicious,
                "harmless": r.stats.harmless,
                "undetected": r.stats.undetected,
                "label": r.label or "",
                "case_id": r.case_id or "",
                "fetched_at": r.fetched_at.isoformat(),
                "updated_at": r.updated_at.isoformat(),
            })
        return buffer.getvalue()

    @abstractmethod
    def query_all(self, query: RecordQuery) -> list[LookupRecord]:
        """All records matching the query's filters, ignoring paging."""

    @abstractmethod
    def summary(self) -> dict[str, Any]:
        """Record counts by verdict and type."""

    def close(self) -> None:
        """Release resources."""


def _ts(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SQLiteRecordStore(RecordStore):
    """SQLite-backed record store with a UNIQUE (canonical, type) index."""

    def __init__(self, db_path: str | Path | None = None):
        """
        Open or create the database.

        Args:
            db_path: Database file. None or empty keeps records in memory.
        """
        self._lock = threading.RLock()
        self._closed = False
        self._db_path: Path | None = None

        if db_path and str(db_path).strip():
            path = Path(str(db_path).strip()).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._db_path = path
            self._conn = sqlite3.connect(str(path), timeout=5.0, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        else:
            self._conn = sqlite3.connect(":memory:", timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

        logger.info("record_store_opened", path=self.db_path or ":memory:")

    @property
    def db_path(self) -> str | None:
        if self._db_path is None:
            return None
        return str(self._db_path)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS lookup_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    canonical TEXT NOT NULL,
                    type TEXT NOT NULL,
                    verdict TEXT NOT NULL,
                    stats_json TEXT NOT NULL,
                    providers_json TEXT NOT NULL,
                    reputation INTEGER,
                    categories_json TEXT NOT NULL,
                    tags_json TEXT NOT NULL,
                    last_analysis_date TEXT,
                    raw_json TEXT NOT NULL,
                    label TEXT,
                    case_id TEXT,
                    fetched_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    ttl_seconds INTEGER NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS lookup_records_identity
                    ON lookup_records(canonical, type);
                CREATE INDEX IF NOT EXISTS lookup_records_verdict
                    ON lookup_records(verdict);
                CREATE INDEX IF NOT EXISTS lookup_records_fetched_at
                    ON lookup_records(fetched_at);
                CREATE INDEX IF NOT EXISTS lookup_records_label
                    ON lookup_records(label);
                CREATE INDEX IF NOT EXISTS lookup_records_case_id
                    ON lookup_records(case_id);
                """
            )

    # =========================================================================
    # Row Mapping
    # =========================================================================

    @staticmethod
    def _to_row(record: LookupRecord) -> dict[str, Any]:
        return {
            "canonical": record.indicator.canonical,
            "type": record.indicator.type.value,
            "verdict": record.verdict.value,
            "stats_json": json.dumps(record.stats.to_dict(), separators=(",", ":")),
            "providers_json": json.dumps(
                [p.to_dict() for p in record.provider_results], separators=(",", ":")
            ),
            "reputation": record.reputation,
            "categories_json": json.dumps(record.categories),
            "tags_json": json.dumps(record.tags),
            "last_analysis_date": (
                _ts(record.last_analysis_date) if record.last_analysis_date else None
            ),
            "raw_json": json.dumps(record.raw, separators=(",", ":"), default=str),
            "label": record.label,
            "case_id": record.case_id,
            "fetched_at": _ts(record.fetched_at),
            "updated_at": _ts(record.updated_at),
            "ttl_seconds": int(record.ttl_seconds),
        }

    @staticmethod
    def _from_row(row: sqlite3.Row) -> LookupRecord:
        stats = json.loads(row["stats_json"])
        providers = json.loads(row["providers_json"])
        return LookupRecord(
            indicator=Indicator(row["canonical"], IndicatorType(row["type"])),
            verdict=Verdict(row["verdict"]),
            stats=DetectionStats(**{k: int(stats.get(k) or 0) for k in DetectionStats().to_dict()}),
            provider_results=[ProviderResult(**p) for p in providers],
            fetched_at=_parse_ts(row["fetched_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            ttl_seconds=row["ttl_seconds"],
            reputation=row["reputation"],
            categories=json.loads(row["categories_json"]),
            tags=json.loads(row["tags_json"]),
            last_analysis_date=_parse_ts(row["last_analysis_date"]),
            raw=json.loads(row["raw_json"]),
            label=row["label"],
            case_id=row["case_id"],
            record_id=row["id"],
        )

    # =========================================================================
    # Contract
    # =========================================================================

    def _find_locked(self, canonical: str, indicator_type: str) -> LookupRecord | None:
        row = self._conn.execute(
            "SELECT * FROM lookup_records WHERE canonical = ? AND type = ?",
            (canonical, indicator_type),
        ).fetchone()
        if row is None:
            return None
        return self._from_row(row)

    def find_by_identity(self, canonical: str, indicator_type: IndicatorType) -> LookupRecord | None:
        with self._lock:
            return self._find_locked(canonical, IndicatorType(indicator_type).value)

    def insert_unique(self, record: LookupRecord) -> LookupRecord:
        row = self._to_row(record)
        columns = ", ".join(row)
        placeholders = ", ".join(f":{c}" for c in row)

        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        f"INSERT INTO lookup_records ({columns}) VALUES ({placeholders})",
                        row,
                    )
            except sqlite3.IntegrityError:
                logger.debug(
                    "record_duplicate_identity",
                    indicator=record.indicator.canonical,
                    type=record.indicator.type.value,
                )
                raise DuplicateIdentity(record.indicator.canonical, record.indicator.type.value)

            stored = self._find_locked(row["canonical"], row["type"])
            if stored is None:  # pragma: no cover
                raise RuntimeError("failed to load newly inserted record")
            return stored

    def refresh(self, record: LookupRecord) -> LookupRecord:
        row = self._to_row(record)
        assignments = ", ".join(f"{c} = :{c}" for c in row if c not in ("canonical", "type"))

        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    f"UPDATE lookup_records SET {assignments} "
                    "WHERE canonical = :canonical AND type = :type",
                    row,
                )
            if cursor.rowcount == 0:
                return self.insert_unique(record)

            stored = self._find_locked(row["canonical"], row["type"])
            if stored is None:  # pragma: no cover
                raise RuntimeError("failed to load refreshed record")
            return stored

    # =========================================================================
    # Browsing
    # =========================================================================

    @staticmethod
    def _where(query: RecordQuery) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if query.q:
            escaped = query.q.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            clauses.append("canonical LIKE ? ESCAPE '\\'")
            params.append(f"%{escaped}%")
        if query.type is not None:
            clauses.append("type = ?")
            params.append(IndicatorType(query.type).value)
        if query.verdict is not None:
            clauses.append("verdict = ?")
            params.append(Verdict(query.verdict).value)
        if query.label:
            clauses.append("label = ?")
            params.append(query.label)
        if query.case_id:
            clauses.append("case_id = ?")
            params.append(query.case_id)
        if query.fetched_from is not None:
            clauses.append("fetched_at >= ?")
            params.append(_ts(query.fetched_from))
        if query.fetched_to is not None:
            clauses.append("fetched_at <= ?")
            params.append(_ts(query.fetched_to))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query(self, query: RecordQuery) -> RecordPage:
        where, params = self._where(query)
        page = max(1, query.page)
        page_size = max(1, min(query.page_size, 1000))

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(1) AS count FROM lookup_records{where}", params
            ).fetchone()["count"]
            rows = self._conn.execute(
                f"SELECT * FROM lookup_records{where} ORDER BY fetched_at DESC, id DESC LIMIT ? OFFSET ?",
                [*params, page_size, (page - 1) * page_size],
            ).fetchall()

        return RecordPage(
            items=[self._from_row(r) for r in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def query_all(self, query: RecordQuery) -> list[LookupRecord]:
        where, params = self._where(query)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM lookup_records{where} ORDER BY fetched_at DESC, id DESC", params
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(1) AS count FROM lookup_records").fetchone()["count"]

    def summary(self) -> dict[str, Any]:
        """Record counts by verdict and by indicator type."""
        with self._lock:
            by_verdict = self._conn.execute(
                "SELECT verdict, COUNT(1) AS count FROM lookup_records GROUP BY verdict"
            ).fetchall()
            by_type = self._conn.execute(
                "SELECT type, COUNT(1) AS count FROM lookup_records GROUP BY type"
            ).fetchall()

        verdicts = {v.value: 0 for v in Verdict}
        verdicts.update({r["verdict"]: r["count"] for r in by_verdict})
        types = {t.value: 0 for t in IndicatorType}
        types.update({r["type"]: r["count"] for r in by_type})

        return {
            "total": sum(verdicts.values()),
            "threats": verdicts[Verdict.MALICIOUS.value] + verdicts[Verdict.SUSPICIOUS.value],
            "by_verdict": verdicts,
            "by_type": types,
        }


# Global store instance
_store_instance: SQLiteRecordStore | None = None


def get_record_store() -> SQLiteRecordStore:
    """Get or create the global record store."""
    global _store_instance
    if _store_instance is None:
        from iocsentry.config import settings

        _store_instance = SQLiteRecordStore(settings.ensure_database_dir())
    return _store_instance
