"""
Content-addressed cache for external matching calls.

Entries are keyed by a SHA-256 fingerprint of the competitor record, the
catalog context sent with the call, and a schema version. Identical
requests therefore share one entry, and writes are idempotent upserts:
concurrent writers of the same key store the same payload, so
last-writer-wins is safe without locking.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from config.logging import logger
from crosswalk.models import ResponseCacheEntry
from crosswalk.matching.types import CatalogRecord, CompetitorRecord

AI_NAMESPACE = "ai_match"
WEB_RESEARCH_NAMESPACE = "web_research"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_fingerprint(
    competitor: CompetitorRecord,
    context: list[CatalogRecord],
    namespace: str = AI_NAMESPACE,
    schema_version: str = "1.0",
) -> str:
    """
    Build the cache key for an external call.

    Args:
        competitor: Competitor record being matched
        context: Catalog records sent with the call, already in a
            deterministic order
        namespace: Stage prefix (ai_match, web_research)
        schema_version: Bumped to invalidate every existing entry

    Returns:
        ``<namespace>_<16 hex chars>``
    """
    cache_data = {
        "competitor": {
            "sku": competitor.sku,
            "company": competitor.company,
            "model": competitor.model,
            "specifications": competitor.specs.to_dict(),
        },
        "context": [
            {
                "sku": record.sku,
                "model": record.model,
                "type": record.type,
                "tonnage": record.specs.tonnage,
                "seer": record.specs.seer,
            }
            for record in context
        ],
        "version": schema_version,
    }
    encoded = json.dumps(cache_data, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    return f"{namespace}_{digest[:16]}"


@dataclass
class CacheEntry:
    """Detached snapshot of a cache row."""
    key: str
    payload: dict
    created_at: datetime
    expires_at: datetime
    hit_count: int
    last_accessed: datetime

    @classmethod
    def from_row(cls, row: ResponseCacheEntry) -> "CacheEntry":
        return cls(
            key=row.cache_key,
            payload=json.loads(row.payload),
            created_at=row.created_at,
            expires_at=row.expires_at,
            hit_count=row.hit_count,
            last_accessed=row.last_accessed,
        )


@dataclass
class CacheStats:
    """Cache size and effectiveness."""
    total_entries: int = 0
    expired_entries: int = 0
    total_hits: int = 0
    session_hits: int = 0
    session_misses: int = 0
    cache_size_bytes: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None

    @property
    def hit_rate(self) -> float:
        lookups = self.session_hits + self.session_misses
        return self.session_hits / lookups * 100 if lookups else 0.0

    @property
    def miss_rate(self) -> float:
        lookups = self.session_hits + self.session_misses
        return self.session_misses / lookups * 100 if lookups else 0.0


class ResponseCache:
    """
    TTL + LRU cache of external-call payloads.

    Usage:
        cache = ResponseCache(session_factory)
        key = build_fingerprint(competitor, context)
        entry = cache.get(key)
        if entry is None:
            payload = await call_external(...)
            cache.put(key, competitor, payload)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_days: float = 30,
        max_entries: int = 10000,
        sweep_interval_hours: float = 24,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(days=ttl_days)
        self.max_entries = max_entries
        self.sweep_interval_hours = sweep_interval_hours
        self.clock = clock or utcnow
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Look up an unexpired entry.

        A hit increments the entry's hit count and refreshes its
        last-accessed time.
        """
        now = self.clock()
        with self.session_factory() as db:
            row = (
                db.query(ResponseCacheEntry)
                .filter(
                    ResponseCacheEntry.cache_key == key,
                    ResponseCacheEntry.expires_at > now,
                )
                .first()
            )
            if row is None:
                self._misses += 1
                logger.debug(f"Cache miss: {key}")
                return None

            row.hit_count += 1
            row.last_accessed = now
            db.commit()
            self._hits += 1

            logger.debug(f"Cache hit: {key} ({row.competitor_sku}, hits={row.hit_count})")
            return CacheEntry.from_row(row)

    def put(self, key: str, competitor: CompetitorRecord, payload: dict) -> CacheEntry:
        """Store (or replace) the payload for ``key`` and enforce capacity."""
        now = self.clock()
        row = ResponseCacheEntry(
            cache_key=key,
            competitor_sku=competitor.sku,
            competitor_company=competitor.company,
            payload=json.dumps(payload, sort_keys=True, default=str),
            created_at=now,
            expires_at=now + self.ttl,
            hit_count=0,
            last_accessed=now,
        )
        with self.session_factory() as db:
            row = db.merge(row)
            db.commit()
            entry = CacheEntry.from_row(row)

        logger.debug(f"Cached response: {key} ({competitor.sku}, expires {entry.expires_at:%Y-%m-%d})")
        self.enforce_capacity()
        return entry

    def enforce_capacity(self) -> int:
        """
        Evict least-recently-used entries until the count is back at the cap.

        Ties on last access are broken by the lowest hit count.
        """
        with self.session_factory() as db:
            total = db.query(func.count(ResponseCacheEntry.cache_key)).scalar() or 0
            excess = total - self.max_entries
            if excess <= 0:
                return 0

            victims = [
                key
                for (key,) in db.query(ResponseCacheEntry.cache_key)
                .order_by(
                    ResponseCacheEntry.last_accessed.asc(),
                    ResponseCacheEntry.hit_count.asc(),
                )
                .limit(excess)
                .all()
            ]
            db.query(ResponseCacheEntry).filter(
                ResponseCacheEntry.cache_key.in_(victims)
            ).delete(synchronize_session=False)
            db.commit()

        logger.info(f"Cache over capacity: evicted {len(victims)} least-recently-used entries")
        return len(victims)

    def remove_expired(self) -> int:
        """Delete every entry past its TTL."""
        now = self.clock()
        with self.session_factory() as db:
            removed = (
                db.query(ResponseCacheEntry)
                .filter(ResponseCacheEntry.expires_at <= now)
                .delete(synchronize_session=False)
            )
            db.commit()
        return removed or 0

    def sweep(self) -> tuple[int, int]:
        """
        Periodic cleanup: expired entries first, then capacity.

        Returns:
            Tuple of (removed_expired, removed_lru)
        """
        removed_expired = self.remove_expired()
        removed_lru = self.enforce_capacity()
        if removed_expired or removed_lru:
            logger.info(
                f"Cache sweep complete: {removed_expired} expired, {removed_lru} evicted"
            )
        return removed_expired, removed_lru

    async def run_periodic_sweep(self, stop: asyncio.Event):
        """Sweep every ``sweep_interval_hours`` until ``stop`` is set."""
        interval = self.sweep_interval_hours * 3600
        self.sweep()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.sweep()

    def stats(self) -> CacheStats:
        """Return cache statistics."""
        now = self.clock()
        with self.session_factory() as db:
            total, total_hits, size, oldest, newest = db.query(
                func.count(ResponseCacheEntry.cache_key),
                func.sum(ResponseCacheEntry.hit_count),
                func.sum(func.length(ResponseCacheEntry.payload)),
                func.min(ResponseCacheEntry.created_at),
                func.max(ResponseCacheEntry.created_at),
            ).one()
            expired = (
                db.query(func.count(ResponseCacheEntry.cache_key))
                .filter(ResponseCacheEntry.expires_at <= now)
                .scalar()
            )

        return CacheStats(
            total_entries=total or 0,
            expired_entries=expired or 0,
            total_hits=total_hits or 0,
            session_hits=self._hits,
            session_misses=self._misses,
            cache_size_bytes=size or 0,
            oldest_entry=oldest,
            newest_entry=newest,
        )

    def clear(self) -> int:
        """Delete every entry and reset hit/miss counters."""
        with self.session_factory() as db:
            removed = db.query(ResponseCacheEntry).delete(synchronize_session=False)
            db.commit()

        self._hits = 0
        self._misses = 0
        logger.info(f"Cache cleared: {removed} entries removed")
        return removed or 0
