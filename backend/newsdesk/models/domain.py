"""
Domain models for Newsdesk.
These are the core business entities, independent of database/API representation.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from newsdesk.core.timeutil import utcnow


# =============================================================================
# Enums
# =============================================================================

class SourceKind(str, Enum):
    """Kind of connector an item came from."""
    API = "api"
    FEED = "feed"
    SCRAPE = "scrape"


class Category(str, Enum):
    """Fixed taxonomy. Assigned by the enricher, never by a source."""
    RESEARCH_PAPER = "research-paper"
    PRODUCT_NEWS = "product-news"
    TOOLING = "tooling"
    INDUSTRY = "industry"
    POLICY = "policy"
    OTHER = "other"


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    ENRICHED = "enriched"
    FAILED = "failed"


class DigestKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class ScheduleKind(str, Enum):
    COLLECTION = "collection"
    DAILY_DIGEST = "daily_digest"
    WEEKLY_DIGEST = "weekly_digest"

    @property
    def digest_kind(self) -> Optional[DigestKind]:
        return {
            ScheduleKind.DAILY_DIGEST: DigestKind.DAILY,
            ScheduleKind.WEEKLY_DIGEST: DigestKind.WEEKLY,
        }.get(self)


class ScheduleStatus(str, Enum):
    IDLE = "idle"
    DUE = "due"
    RUNNING = "running"
    FAILED = "failed"


# =============================================================================
# Articles
# =============================================================================

class ArticleDraft(BaseModel):
    """A normalized item that has not been merged or persisted yet."""
    fingerprint: str
    title: str  # Display form, original casing
    title_key: str  # Case-folded comparison form
    abstract: Optional[str] = None
    identifier: Optional[str] = None  # arxiv:<id> or doi:<doi>
    source_urls: set[str] = Field(default_factory=set)
    source_types: set[SourceKind] = Field(default_factory=set)
    source_names: set[str] = Field(default_factory=set)
    published_at: datetime
    fetched_at: datetime = Field(default_factory=utcnow)


class Article(BaseModel):
    """Canonical record for one piece of content."""
    fingerprint: str
    title: str
    abstract: Optional[str] = None
    identifier: Optional[str] = None
    source_urls: set[str] = Field(default_factory=set)
    source_types: set[SourceKind] = Field(default_factory=set)
    source_names: set[str] = Field(default_factory=set)

    published_at: datetime
    fetched_at: datetime
    last_seen_at: datetime
    expires_at: datetime

    # Enrichment
    category: Optional[Category] = None
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    summary: Optional[str] = None
    key_takeaways: list[str] = Field(default_factory=list)
    enrichment_status: EnrichmentStatus = EnrichmentStatus.PENDING
    enrichment_error: Optional[str] = None
    enriched_at: Optional[datetime] = None

    @classmethod
    def from_draft(cls, draft: ArticleDraft, retention: timedelta) -> "Article":
        return cls(
            fingerprint=draft.fingerprint,
            title=draft.title,
            abstract=draft.abstract,
            identifier=draft.identifier,
            source_urls=set(draft.source_urls),
            source_types=set(draft.source_types),
            source_names=set(draft.source_names),
            published_at=draft.published_at,
            fetched_at=draft.fetched_at,
            last_seen_at=draft.fetched_at,
            expires_at=draft.fetched_at + retention,
        )

    @property
    def is_enriched(self) -> bool:
        return self.enrichment_status == EnrichmentStatus.ENRICHED

    def needs_enrichment(self, now: datetime, stale_after: timedelta) -> bool:
        if not self.is_enriched or self.enriched_at is None:
            return True
        return now - self.enriched_at > stale_after

    @property
    def primary_url(self) -> Optional[str]:
        return min(self.source_urls) if self.source_urls else None


class ArticleFilter(BaseModel):
    """Read-side filters for window and recent-article queries."""
    category: Optional[Category] = None
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    source_kind: Optional[SourceKind] = None
    enriched_only: bool = False
    limit: Optional[int] = Field(default=None, ge=1)


# =============================================================================
# Delivery & schedule state
# =============================================================================

class DeliveryRecord(BaseModel):
    """Evidence that a digest went out. Written once, never mutated."""
    digest_key: str
    kind: DigestKind
    window_start: datetime
    window_end: datetime
    sent_at: datetime
    article_fingerprints: list[str] = Field(default_factory=list)
    recipients: list[str] = Field(default_factory=list)


class ScheduleState(BaseModel):
    """Durable per-kind scheduler bookkeeping; survives restarts."""
    kind: ScheduleKind
    status: ScheduleStatus = ScheduleStatus.IDLE
    last_completed_slot: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    pending_slot: Optional[datetime] = None
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    abandoned_slot: Optional[datetime] = None


# =============================================================================
# Digests
# =============================================================================

class DigestSlot(BaseModel):
    """The calendar period one digest covers."""
    kind: DigestKind
    digest_key: str
    slot_time: datetime
    window_start: datetime
    window_end: datetime


class DigestEntry(BaseModel):
    fingerprint: str
    title: str
    url: Optional[str] = None
    category: Optional[Category] = None
    relevance_score: Optional[float] = None
    summary: Optional[str] = None
    key_takeaways: list[str] = Field(default_factory=list)
    published_at: datetime


class DigestPayload(BaseModel):
    slot: DigestSlot
    subject: str
    entries: list[DigestEntry] = Field(default_factory=list)
    text_body: str = ""
    html_body: str = ""

    @property
    def fingerprints(self) -> list[str]:
        return [e.fingerprint for e in self.entries]

    @property
    def is_empty(self) -> bool:
        return not self.entries
