"""
Cache Store - Versioned, quota-aware storage of tenant-month chunks

One entry per (schema version, tenant, year, month):

    daily_accounts_{schema_version}_{tenant}_{year}_{MM}

Entry payload is JSON:
    {"schemaVersion", "tenantId", "year", "month", "cachedAt", "records"}

Rules:
- A chunk is fresh while now - cachedAt < TTL (24h by default). Stale
  chunks and chunks written under another schema version read as absent.
- The current calendar month is never reusable; it is still accumulating.
- Before a write, the store estimates total bytes used. If the write would
  exceed capacity, the tenant's oldest chunks (by year, month) are evicted
  one at a time until it fits.
- A chunk larger than max_entry_bytes is not cached. put() returns False
  instead of raising; callers keep the records in memory.

Backends:
- MemoryCacheBackend: dict-backed, used in tests and with MF_CACHE_URL=memory://
- SqlCacheBackend: SQLAlchemy table, one row per entry, each put in its own
  transaction

Usage:
    from services.cache_store import CacheStore, SqlCacheBackend

    store = CacheStore(SqlCacheBackend('sqlite:///mf_cache.db'))
    if not store.put('mito', 2024, 3, records):
        logger.warning("chunk not cached")
    chunk = store.get('mito', 2024, 3)
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from services.daily_account_mapper import DailyAccountRecord

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

KEY_PREFIX = "daily_accounts"
DEFAULT_SCHEMA_VERSION = "v4"
DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024
DEFAULT_MAX_ENTRY_BYTES = 512 * 1024
DEFAULT_TTL = timedelta(hours=24)

CACHE_TABLE = "mf_cache_entries"


def _utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class QuotaExceededError(Exception):
    """A cache write could not fit within the configured capacity."""
    pass


# =============================================================================
# Chunk
# =============================================================================

@dataclass
class CacheChunk:
    """One tenant-month of records."""
    tenant_id: str
    year: int
    month: int
    records: List[DailyAccountRecord] = field(default_factory=list)
    cached_at: datetime = field(default_factory=_utcnow)
    schema_version: str = DEFAULT_SCHEMA_VERSION

    def is_fresh(self, now: datetime, ttl: timedelta = DEFAULT_TTL) -> bool:
        return now - self.cached_at < ttl

    def is_current_month(self, today: date) -> bool:
        return (self.year, self.month) == (today.year, today.month)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "tenantId": self.tenant_id,
            "year": self.year,
            "month": self.month,
            "cachedAt": self.cached_at.isoformat(),
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'CacheChunk':
        return cls(
            tenant_id=payload["tenantId"],
            year=int(payload["year"]),
            month=int(payload["month"]),
            records=[DailyAccountRecord.from_dict(r) for r in payload.get("records") or []],
            cached_at=datetime.fromisoformat(payload["cachedAt"]),
            schema_version=payload.get("schemaVersion", ""),
        )


# =============================================================================
# Backends
# =============================================================================

class MemoryCacheBackend:
    """In-process backend. Enforces capacity like a browser storage quota."""

    def __init__(self, capacity_bytes: Optional[int] = None):
        self.capacity_bytes = capacity_bytes
        self._entries: Dict[str, str] = {}
        self._sizes: Dict[str, int] = {}

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def put(self, key: str, payload: str, size_bytes: int) -> None:
        if self.capacity_bytes is not None:
            used = self.total_bytes(exclude_key=key)
            if used + size_bytes > self.capacity_bytes:
                raise QuotaExceededError(
                    f"Writing {key} ({size_bytes} bytes) exceeds capacity "
                    f"({used}/{self.capacity_bytes} bytes used)"
                )
        self._entries[key] = payload
        self._sizes[key] = size_bytes

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._sizes.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._entries)

    def total_bytes(self, exclude_key: Optional[str] = None) -> int:
        return sum(size for key, size in self._sizes.items() if key != exclude_key)


class SqlCacheBackend:
    """
    SQLAlchemy-backed store (SQLite by default).

    Table: mf_cache_entries(cache_key PK, payload, size_bytes, updated_at)
    """

    def __init__(self, url_or_engine: Any = "sqlite:///mf_cache.db",
                 capacity_bytes: Optional[int] = None):
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = create_engine(url_or_engine, future=True)
        self.capacity_bytes = capacity_bytes
        self._ensure_table()

    def _ensure_table(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {CACHE_TABLE} (
                    cache_key VARCHAR(255) PRIMARY KEY,
                    payload TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    updated_at VARCHAR(40) NOT NULL
                )
            """))

    def get(self, key: str) -> Optional[str]:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT payload FROM {CACHE_TABLE} WHERE cache_key = :key"),
                {"key": key},
            ).fetchone()
        return row[0] if row else None

    def put(self, key: str, payload: str, size_bytes: int) -> None:
        with self.engine.begin() as conn:
            if self.capacity_bytes is not None:
                used = conn.execute(
                    text(f"""
                        SELECT COALESCE(SUM(size_bytes), 0) FROM {CACHE_TABLE}
                        WHERE cache_key != :key
                    """),
                    {"key": key},
                ).scalar()
                if used + size_bytes > self.capacity_bytes:
                    raise QuotaExceededError(
                        f"Writing {key} ({size_bytes} bytes) exceeds capacity "
                        f"({used}/{self.capacity_bytes} bytes used)"
                    )
            conn.execute(
                text(f"DELETE FROM {CACHE_TABLE} WHERE cache_key = :key"),
                {"key": key},
            )
            conn.execute(
                text(f"""
                    INSERT INTO {CACHE_TABLE} (cache_key, payload, size_bytes, updated_at)
                    VALUES (:key, :payload, :size_bytes, :updated_at)
                """),
                {
                    "key": key,
                    "payload": payload,
                    "size_bytes": size_bytes,
                    "updated_at": _utcnow().isoformat(),
                },
            )

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(f"DELETE FROM {CACHE_TABLE} WHERE cache_key = :key"),
                {"key": key},
            )

    def keys(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(text(f"SELECT cache_key FROM {CACHE_TABLE}")).fetchall()
        return [r[0] for r in rows]

    def total_bytes(self, exclude_key: Optional[str] = None) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(
                text(f"""
                    SELECT COALESCE(SUM(size_bytes), 0) FROM {CACHE_TABLE}
                    WHERE cache_key != :key
                """),
                {"key": exclude_key or ""},
            ).scalar())


def create_cache_backend(url: str, capacity_bytes: Optional[int] = None):
    """Build a backend from MF_CACHE_URL ('memory://' or a SQLAlchemy URL)."""
    if url.startswith("memory://"):
        return MemoryCacheBackend(capacity_bytes)
    return SqlCacheBackend(url, capacity_bytes)


# =============================================================================
# Store
# =============================================================================

class CacheStore:
    """
    Versioned chunk cache on top of a backend.

    Example:
        store = CacheStore(MemoryCacheBackend(), capacity_bytes=5 * 1024 * 1024)
        store.put('yokohama', 2024, 1, records)
        chunk = store.get('yokohama', 2024, 1)
    """

    def __init__(
        self,
        backend: Any,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
        max_entry_bytes: int = DEFAULT_MAX_ENTRY_BYTES,
        ttl: timedelta = DEFAULT_TTL,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.backend = backend
        self.capacity_bytes = capacity_bytes
        self.max_entry_bytes = max_entry_bytes
        self.ttl = ttl
        self.schema_version = schema_version
        self._clock = clock
        self._lock = threading.RLock()

    # =========================================================================
    # Keys
    # =========================================================================

    def make_key(self, tenant_id: str, year: int, month: int) -> str:
        return f"{KEY_PREFIX}_{self.schema_version}_{tenant_id}_{year}_{month:02d}"

    def _tenant_prefix(self, tenant_id: str) -> str:
        return f"{KEY_PREFIX}_{self.schema_version}_{tenant_id}_"

    def _version_prefix(self) -> str:
        return f"{KEY_PREFIX}_{self.schema_version}_"

    @staticmethod
    def _parse_year_month(key: str) -> Optional[Tuple[int, int]]:
        try:
            _, year, month = key.rsplit("_", 2)
            return int(year), int(month)
        except ValueError:
            return None

    def _tenant_keys_oldest_first(self, tenant_id: str) -> List[str]:
        prefix = self._tenant_prefix(tenant_id)
        keyed = []
        for key in self.backend.keys():
            if not key.startswith(prefix):
                continue
            ym = self._parse_year_month(key)
            if ym is not None:
                keyed.append((ym, key))
        return [key for _, key in sorted(keyed)]

    # =========================================================================
    # Read / Write
    # =========================================================================

    def get(self, tenant_id: str, year: int, month: int) -> Optional[CacheChunk]:
        """
        Read a fresh chunk.

        Returns:
            CacheChunk, or None if missing, stale, unreadable or from
            another schema version.
        """
        raw = self.backend.get(self.make_key(tenant_id, year, month))
        if raw is None:
            return None

        try:
            chunk = CacheChunk.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[{tenant_id}] Unreadable cache entry {year}-{month:02d}: {e}")
            return None

        if chunk.schema_version != self.schema_version:
            return None
        if not chunk.is_fresh(self._clock(), self.ttl):
            logger.debug(f"[{tenant_id}] Cache entry {year}-{month:02d} is stale")
            return None

        logger.debug(f"[{tenant_id}] Cache hit {year}-{month:02d} ({len(chunk.records)} records)")
        return chunk

    def is_reusable(self, chunk: CacheChunk, today: date) -> bool:
        """Completed months only; the current month is always refetched."""
        return not chunk.is_current_month(today) and chunk.is_fresh(self._clock(), self.ttl)

    def put(self, tenant_id: str, year: int, month: int,
            records: List[DailyAccountRecord]) -> bool:
        """
        Write a chunk, evicting the tenant's oldest chunks if needed.

        Returns:
            True if the chunk was persisted, False if it was skipped
            (too large, or still over quota after eviction).
        """
        key = self.make_key(tenant_id, year, month)
        chunk = CacheChunk(
            tenant_id=tenant_id,
            year=year,
            month=month,
            records=list(records),
            cached_at=self._clock(),
            schema_version=self.schema_version,
        )
        payload = json.dumps(chunk.to_payload(), ensure_ascii=False, separators=(",", ":"))
        size = len(payload.encode("utf-8"))

        if size > self.max_entry_bytes:
            logger.warning(
                f"[{tenant_id}] Chunk {year}-{month:02d} is {size} bytes "
                f"(max {self.max_entry_bytes}), not cached"
            )
            return False

        with self._lock:
            if not self._evict_until_fits(tenant_id, key, size):
                logger.warning(
                    f"[{tenant_id}] Chunk {year}-{month:02d} not cached: "
                    f"{size} bytes do not fit in {self.capacity_bytes}"
                )
                return False
            try:
                self.backend.put(key, payload, size)
            except QuotaExceededError as e:
                logger.warning(f"[{tenant_id}] {e}; evicting and retrying once")
                if not self._evict_oldest(tenant_id, keep_key=key):
                    logger.warning(f"[{tenant_id}] Chunk {year}-{month:02d} not cached (quota)")
                    return False
                try:
                    self.backend.put(key, payload, size)
                except QuotaExceededError:
                    logger.warning(f"[{tenant_id}] Chunk {year}-{month:02d} not cached (quota)")
                    return False

        logger.info(
            f"[{tenant_id}] Cached {year}-{month:02d}: {len(records)} records, {size} bytes"
        )
        return True

    def _evict_until_fits(self, tenant_id: str, key: str, size: int) -> bool:
        while self.backend.total_bytes(exclude_key=key) + size > self.capacity_bytes:
            if not self._evict_oldest(tenant_id, keep_key=key):
                return False
        return True

    def _evict_oldest(self, tenant_id: str, keep_key: str) -> bool:
        for old_key in self._tenant_keys_oldest_first(tenant_id):
            if old_key == keep_key:
                continue
            self.backend.delete(old_key)
            logger.warning(f"[{tenant_id}] Evicted cache entry {old_key} (quota)")
            return True
        return False

    # =========================================================================
    # Maintenance
    # =========================================================================

    def purge_other_versions(self) -> int:
        """Delete entries written under any other schema version."""
        current = self._version_prefix()
        removed = 0
        with self._lock:
            for key in self.backend.keys():
                if key.startswith(KEY_PREFIX + "_") and not key.startswith(current):
                    self.backend.delete(key)
                    removed += 1
        if removed:
            logger.info(f"Purged {removed} cache entries from old schema versions")
        return removed

    def clear(self, tenant_id: Optional[str] = None) -> int:
        """Delete a tenant's entries, or every chunk entry."""
        prefix = self._tenant_prefix(tenant_id) if tenant_id else KEY_PREFIX + "_"
        removed = 0
        with self._lock:
            for key in self.backend.keys():
                if key.startswith(prefix):
                    self.backend.delete(key)
                    removed += 1
        logger.info(f"Cleared {removed} cache entries" + (f" for {tenant_id}" if tenant_id else ""))
        return removed

    def info(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        prefix = self._tenant_prefix(tenant_id) if tenant_id else self._version_prefix()
        keys = sorted(k for k in self.backend.keys() if k.startswith(prefix))
        return {
            "schema_version": self.schema_version,
            "entries": len(keys),
            "bytes_used": self.backend.total_bytes(),
            "capacity_bytes": self.capacity_bytes,
            "max_entry_bytes": self.max_entry_bytes,
            "keys": keys,
        }
