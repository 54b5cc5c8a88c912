"""
SQLAlchemy database models for Newsdesk.
Uses SQLAlchemy 2.0 async patterns.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from newsdesk.models.domain import (
    Article,
    Category,
    DeliveryRecord,
    DigestKind,
    EnrichmentStatus,
    ScheduleKind,
    ScheduleState,
    ScheduleStatus,
    SourceKind,
)


# =============================================================================
# Base
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""
    pass


# =============================================================================
# Articles
# =============================================================================

class DBArticle(Base):
    """Stored canonical article, keyed by fingerprint."""
    __tablename__ = "articles"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Core metadata
    title: Mapped[str] = mapped_column(Text, nullable=False)
    abstract: Mapped[Optional[str]] = mapped_column(Text)
    identifier: Mapped[Optional[str]] = mapped_column(String(255))
    source_urls: Mapped[list] = mapped_column(JSON, default=list)
    source_types: Mapped[list] = mapped_column(JSON, default=list)
    source_names: Mapped[list] = mapped_column(JSON, default=list)

    # Timestamps
    published_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Enrichment
    category: Mapped[Optional[str]] = mapped_column(String(50))
    relevance_score: Mapped[Optional[float]] = mapped_column(Float)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    key_takeaways: Mapped[list] = mapped_column(JSON, default=list)
    enrichment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EnrichmentStatus.PENDING.value
    )
    enrichment_error: Mapped[Optional[str]] = mapped_column(Text)
    enriched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Indexes
    __table_args__ = (
        Index("ix_articles_expires_at", "expires_at"),
        Index("ix_articles_fetched_at", "fetched_at"),
        Index("ix_articles_published_at", "published_at"),
        Index("ix_articles_category", "category"),
    )

    @classmethod
    def from_domain(cls, article: Article) -> "DBArticle":
        return cls(
            fingerprint=article.fingerprint,
            title=article.title,
            abstract=article.abstract,
            identifier=article.identifier,
            source_urls=sorted(article.source_urls),
            source_types=sorted(k.value for k in article.source_types),
            source_names=sorted(article.source_names),
            published_at=article.published_at,
            fetched_at=article.fetched_at,
            last_seen_at=article.last_seen_at,
            expires_at=article.expires_at,
            category=article.category.value if article.category else None,
            relevance_score=article.relevance_score,
            summary=article.summary,
            key_takeaways=list(article.key_takeaways),
            enrichment_status=article.enrichment_status.value,
            enrichment_error=article.enrichment_error,
            enriched_at=article.enriched_at,
        )

    def to_domain(self) -> Article:
        return Article(
            fingerprint=self.fingerprint,
            title=self.title,
            abstract=self.abstract,
            identifier=self.identifier,
            source_urls=set(self.source_urls or []),
            source_types={SourceKind(k) for k in self.source_types or []},
            source_names=set(self.source_names or []),
            published_at=self.published_at,
            fetched_at=self.fetched_at,
            last_seen_at=self.last_seen_at,
            expires_at=self.expires_at,
            category=Category(self.category) if self.category else None,
            relevance_score=self.relevance_score,
            summary=self.summary,
            key_takeaways=list(self.key_takeaways or []),
            enrichment_status=EnrichmentStatus(self.enrichment_status),
            enrichment_error=self.enrichment_error,
            enriched_at=self.enriched_at,
        )


# =============================================================================
# Delivery log & scheduler state
# =============================================================================

class DBDeliveryRecord(Base):
    """One row per digest slot that actually went out."""
    __tablename__ = "delivery_records"

    digest_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    article_fingerprints: Mapped[list] = mapped_column(JSON, default=list)
    recipients: Mapped[list] = mapped_column(JSON, default=list)

    @classmethod
    def from_domain(cls, record: DeliveryRecord) -> "DBDeliveryRecord":
        return cls(
            digest_key=record.digest_key,
            kind=record.kind.value,
            window_start=record.window_start,
            window_end=record.window_end,
            sent_at=record.sent_at,
            article_fingerprints=list(record.article_fingerprints),
            recipients=list(record.recipients),
        )

    def to_domain(self) -> DeliveryRecord:
        return DeliveryRecord(
            digest_key=self.digest_key,
            kind=DigestKind(self.kind),
            window_start=self.window_start,
            window_end=self.window_end,
            sent_at=self.sent_at,
            article_fingerprints=list(self.article_fingerprints or []),
            recipients=list(self.recipients or []),
        )


class DBScheduleState(Base):
    """Durable scheduler bookkeeping, one row per schedule kind."""
    __tablename__ = "schedule_state"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ScheduleStatus.IDLE.value)
    last_completed_slot: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    pending_slot: Mapped[Optional[datetime]] = mapped_column(DateTime)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    abandoned_slot: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def apply(self, state: ScheduleState) -> None:
        self.status = state.status.value
        self.last_completed_slot = state.last_completed_slot
        self.last_completed_at = state.last_completed_at
        self.pending_slot = state.pending_slot
        self.attempts = state.attempts
        self.next_retry_at = state.next_retry_at
        self.last_error = state.last_error
        self.abandoned_slot = state.abandoned_slot

    def to_domain(self) -> ScheduleState:
        return ScheduleState(
            kind=ScheduleKind(self.kind),
            status=ScheduleStatus(self.status),
            last_completed_slot=self.last_completed_slot,
            last_completed_at=self.last_completed_at,
            pending_slot=self.pending_slot,
            attempts=self.attempts or 0,
            next_retry_at=self.next_retry_at,
            last_error=self.last_error,
            abandoned_slot=self.abandoned_slot,
        )


# =============================================================================
# Database Connection
# =============================================================================

class Database:
    """Database connection manager."""

    def __init__(self, database_url: str):
        self.engine = create_async_engine(
            database_url,
            echo=False,  # Set to True for SQL logging
        )
        self.async_session = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self):
        """Drop all tables (use with caution!)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self):
        await self.engine.dispose()
