"""
HVAC Crosswalk Matching Engine - Database Models

SQLAlchemy ORM models for the response cache store.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ResponseCacheEntry(Base):
    """
    Content-addressed cache of external matching calls (AI, web research).

    Rows are keyed by a fingerprint of the competitor record plus the
    catalog context the call saw, so identical requests share one row.
    """

    __tablename__ = "response_cache"

    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    competitor_sku: Mapped[str] = mapped_column(Text, nullable=False)
    competitor_company: Mapped[str] = mapped_column(Text, nullable=False)

    # Serialized stage payload (JSON text)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    hit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_accessed: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_response_cache_competitor", "competitor_sku", "competitor_company"),
    )

    def __repr__(self) -> str:
        return f"<ResponseCacheEntry(key={self.cache_key}, sku={self.competitor_sku}, hits={self.hit_count})>"
