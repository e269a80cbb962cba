"""
Shared test fixtures: catalog builders and fake external clients.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from crosswalk.database import create_cache_engine, init_db, make_session_factory
from crosswalk.matching.cache import ResponseCache
from crosswalk.matching.types import CatalogRecord, CompetitorRecord


def make_catalog() -> list[CatalogRecord]:
    """Small catalog covering the main equipment classes."""
    rows = [
        {
            "sku": "TUD100C936V2",
            "model": "TUD100C936V2",
            "brand": "Trane",
            "type": "Gas Furnace",
            "afue": 80,
            "price": 1450.00,
        },
        {
            "sku": "ACI-AC-36-16",
            "model": "4A7A6036",
            "brand": "ACI",
            "type": "Air Conditioner",
            "tonnage": 3.0,
            "seer": 16.2,
            "refrigerant": "R-410A",
            "price": 2100.00,
        },
        {
            "sku": "ACI-HP-48-18",
            "model": "4TWR8048",
            "brand": "ACI",
            "type": "Heat Pump",
            "tonnage": 4.0,
            "seer": 18.0,
            "hspf": 9.5,
            "refrigerant": "R-410A",
            "price": 3400.00,
        },
        {
            "sku": "ACI-FUR-96",
            "model": "S9V2B080",
            "brand": "ACI",
            "type": "Furnace",
            "afue": 96,
            "price": 1900.00,
        },
    ]
    return [CatalogRecord.from_dict(row) for row in rows]


def competitor(sku: str, company: str = "Goodman", **kwargs) -> CompetitorRecord:
    data = {"sku": sku, "company": company}
    specs = kwargs.pop("specifications", None)
    data.update(kwargs)
    if specs:
        data["specifications"] = specs
    return CompetitorRecord.from_dict(data)


def make_cache(clock=None, max_entries: int = 10000, ttl_days: float = 30) -> ResponseCache:
    """Response cache on a fresh in-memory SQLite database."""
    engine = create_cache_engine("sqlite://")
    init_db(engine)
    return ResponseCache(
        make_session_factory(engine),
        ttl_days=ttl_days,
        max_entries=max_entries,
        clock=clock,
    )


class FakeClock:
    """Manually advanced clock for cache tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeAIClient:
    """AI client returning canned responses and recording prompts."""

    def __init__(self, response: Optional[dict] = None, error: Optional[Exception] = None):
        self.response = response if response is not None else {"match_found": False}
        self.error = error
        self.calls: list[str] = []

    async def complete(self, prompt: str, json_schema: dict) -> dict:
        self.calls.append(prompt)
        if self.error:
            raise self.error
        return dict(self.response)


class FakeWebResearchClient:
    """Web research client returning canned findings."""

    def __init__(self, response: Optional[dict] = None, error: Optional[Exception] = None):
        self.response = response if response is not None else {"needs_manual_review": True}
        self.error = error
        self.calls: list[tuple] = []

    async def research(self, competitor, uncertain_matches) -> dict:
        self.calls.append((competitor, list(uncertain_matches)))
        if self.error:
            raise self.error
        return dict(self.response)
