"""
Persistence Gateway - the only component that talks to the document store.

``upsert`` is idempotent on fingerprint. Writers for one fingerprint are
serialized in-process; an insert race with another process surfaces as an
IntegrityError and is resolved by re-reading and merging.
"""
import asyncio
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from newsdesk.core.errors import PersistenceConflict, PersistenceUnavailable
from newsdesk.core.timeutil import utcnow
from newsdesk.models.database import (
    Database,
    DBArticle,
    DBDeliveryRecord,
    DBScheduleState,
)
from newsdesk.models.domain import (
    Article,
    ArticleFilter,
    DeliveryRecord,
    EnrichmentStatus,
    ScheduleKind,
    ScheduleState,
)

logger = structlog.get_logger()

T = TypeVar("T")

LOCK_STRIPES = 64


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


def merge_article(row: DBArticle, incoming: Article) -> None:
    """
    Merge an incoming article into its stored row.

    Source sets only grow, ``last_seen_at`` never moves backwards, first-seen
    values are kept, and enrichment is only replaced by a newer successful
    enrichment. Enrichment fields are never cleared.
    """
    row.source_urls = sorted(set(row.source_urls or []) | incoming.source_urls)
    row.source_types = sorted(
        set(row.source_types or []) | {k.value for k in incoming.source_types}
    )
    row.source_names = sorted(set(row.source_names or []) | incoming.source_names)
    row.last_seen_at = max(row.last_seen_at, incoming.last_seen_at)
    row.published_at = min(row.published_at, incoming.published_at)
    if not row.abstract and incoming.abstract:
        row.abstract = incoming.abstract
    if not row.identifier and incoming.identifier:
        row.identifier = incoming.identifier

    stored_enriched = row.enrichment_status == EnrichmentStatus.ENRICHED.value
    if incoming.is_enriched:
        newer = (
            not stored_enriched
            or row.enriched_at is None
            or (incoming.enriched_at is not None and incoming.enriched_at > row.enriched_at)
        )
        if newer:
            row.summary = incoming.summary
            row.key_takeaways = list(incoming.key_takeaways)
            row.category = incoming.category.value if incoming.category else None
            row.relevance_score = incoming.relevance_score
            row.enrichment_status = EnrichmentStatus.ENRICHED.value
            row.enrichment_error = None
            row.enriched_at = incoming.enriched_at
    elif not stored_enriched and incoming.enrichment_status == EnrichmentStatus.FAILED:
        row.enrichment_status = EnrichmentStatus.FAILED.value
        row.enrichment_error = incoming.enrichment_error


class PersistenceGateway:
    """Articles, delivery records and scheduler state."""

    def __init__(
        self,
        database: Database,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.timeout = timeout
        self.clock = clock
        # Fixed pool; fingerprints sharing a stripe just serialize.
        self._locks = [asyncio.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, fingerprint: str) -> asyncio.Lock:
        return self._locks[hash(fingerprint) % len(self._locks)]

    async def _bounded(self, operation: str, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceUnavailable(f"{operation} timed out after {self.timeout:.0f}s") from e
        except SQLAlchemyError as e:
            raise PersistenceUnavailable(f"{operation} failed: {e}") from e

    # =========================================================================
    # Articles
    # =========================================================================

    async def upsert(self, article: Article) -> UpsertOutcome:
        """Insert or merge one article. Idempotent on fingerprint."""
        async with self._lock_for(article.fingerprint):
            return await self._bounded("upsert", self._upsert(article))

    async def _upsert(self, article: Article) -> UpsertOutcome:
        async with self.database.async_session() as session:
            row = await session.get(DBArticle, article.fingerprint)
            if row is None:
                session.add(DBArticle.from_domain(article))
                try:
                    await session.commit()
                    return UpsertOutcome.CREATED
                except IntegrityError:
                    await session.rollback()
                    conflict = PersistenceConflict(article.fingerprint)
                    logger.debug("Resolving insert race by merge", error=str(conflict))
                    row = await session.get(DBArticle, article.fingerprint)
                    if row is None:
                        raise

            merge_article(row, article)
            await session.commit()
            return UpsertOutcome.UPDATED

    async def get(self, fingerprint: str) -> Optional[Article]:
        async def _get():
            async with self.database.async_session() as session:
                row = await session.get(DBArticle, fingerprint)
                return row.to_domain() if row else None

        return await self._bounded("get", _get())

    async def get_many(self, fingerprints: list[str]) -> dict[str, Article]:
        """Load persisted articles by fingerprint, expired ones included."""
        if not fingerprints:
            return {}

        async def _get_many():
            found: dict[str, Article] = {}
            async with self.database.async_session() as session:
                # Chunk to stay under SQLite's bound-parameter limit
                for i in range(0, len(fingerprints), 500):
                    chunk = fingerprints[i:i + 500]
                    result = await session.execute(
                        select(DBArticle).where(DBArticle.fingerprint.in_(chunk))
                    )
                    for row in result.scalars():
                        found[row.fingerprint] = row.to_domain()
            return found

        return await self._bounded("get_many", _get_many())

    async def query_window(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[ArticleFilter] = None,
        field: str = "fetched_at",
    ) -> list[Article]:
        """
        Articles whose ``field`` falls in ``[start, end)``.

        Expired articles are always excluded, whether or not they have been
        purged yet.
        """
        if field not in ("fetched_at", "published_at"):
            raise ValueError(f"Cannot query window on {field!r}")
        column = getattr(DBArticle, field)
        filters = filters or ArticleFilter()

        async def _query():
            stmt = (
                select(DBArticle)
                .where(column >= start, column < end)
                .where(DBArticle.expires_at > self.clock())
                .order_by(column.desc())
            )
            stmt = self._apply_filters(stmt, filters)
            async with self.database.async_session() as session:
                result = await session.execute(stmt)
                articles = [row.to_domain() for row in result.scalars()]
            return self._post_filter(articles, filters)

        return await self._bounded("query_window", _query())

    async def recent(self, filters: Optional[ArticleFilter] = None) -> list[Article]:
        """Most recently fetched live articles."""
        filters = filters or ArticleFilter(limit=50)

        async def _recent():
            stmt = (
                select(DBArticle)
                .where(DBArticle.expires_at > self.clock())
                .order_by(DBArticle.fetched_at.desc(), DBArticle.published_at.desc())
            )
            stmt = self._apply_filters(stmt, filters)
            async with self.database.async_session() as session:
                result = await session.execute(stmt)
                articles = [row.to_domain() for row in result.scalars()]
            return self._post_filter(articles, filters)

        return await self._bounded("recent", _recent())

    @staticmethod
    def _apply_filters(stmt, filters: ArticleFilter):
        if filters.category is not None:
            stmt = stmt.where(DBArticle.category == filters.category.value)
        if filters.min_score is not None:
            stmt = stmt.where(DBArticle.relevance_score >= filters.min_score)
        if filters.enriched_only:
            stmt = stmt.where(DBArticle.enrichment_status == EnrichmentStatus.ENRICHED.value)
        return stmt

    @staticmethod
    def _post_filter(articles: list[Article], filters: ArticleFilter) -> list[Article]:
        # Source kinds live in a JSON list, so this filter runs in Python.
        if filters.source_kind is not None:
            articles = [a for a in articles if filters.source_kind in a.source_types]
        if filters.limit is not None:
            articles = articles[: filters.limit]
        return articles

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete articles past their expiry. Returns the number removed."""
        cutoff = now or self.clock()

        async def _purge():
            async with self.database.async_session() as session:
                result = await session.execute(
                    delete(DBArticle).where(DBArticle.expires_at <= cutoff)
                )
                await session.commit()
                return result.rowcount or 0

        removed = await self._bounded("purge_expired", _purge())
        logger.info("Purged expired articles", removed=removed, cutoff=cutoff.isoformat())
        return removed

    async def stats(self) -> dict:
        now = self.clock()

        async def _stats():
            async with self.database.async_session() as session:
                live = await session.scalar(
                    select(func.count()).select_from(DBArticle).where(DBArticle.expires_at > now)
                )
                pending = await session.scalar(
                    select(func.count())
                    .select_from(DBArticle)
                    .where(DBArticle.expires_at > now)
                    .where(DBArticle.enrichment_status != EnrichmentStatus.ENRICHED.value)
                )
                deliveries = await session.scalar(
                    select(func.count()).select_from(DBDeliveryRecord)
                )
            return {
                "live_articles": live or 0,
                "pending_enrichment": pending or 0,
                "deliveries": deliveries or 0,
            }

        return await self._bounded("stats", _stats())

    # =========================================================================
    # Delivery records
    # =========================================================================

    async def get_delivery(self, digest_key: str) -> Optional[DeliveryRecord]:
        async def _get():
            async with self.database.async_session() as session:
                row = await session.get(DBDeliveryRecord, digest_key)
                return row.to_domain() if row else None

        return await self._bounded("get_delivery", _get())

    async def record_delivery(self, record: DeliveryRecord) -> bool:
        """
        Write a delivery record once.

        Returns False, without touching the stored row, when a record for
        the digest key already exists.
        """
        async def _record():
            async with self.database.async_session() as session:
                if await session.get(DBDeliveryRecord, record.digest_key) is not None:
                    return False
                session.add(DBDeliveryRecord.from_domain(record))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
                return True

        return await self._bounded("record_delivery", _record())

    # =========================================================================
    # Scheduler state
    # =========================================================================

    async def load_schedule_state(self, kind: ScheduleKind) -> ScheduleState:
        async def _load():
            async with self.database.async_session() as session:
                row = await session.get(DBScheduleState, kind.value)
                return row.to_domain() if row else ScheduleState(kind=kind)

        return await self._bounded("load_schedule_state", _load())

    async def save_schedule_state(self, state: ScheduleState) -> None:
        async def _save():
            async with self.database.async_session() as session:
                row = await session.get(DBScheduleState, state.kind.value)
                if row is None:
                    row = DBScheduleState(kind=state.kind.value)
                    session.add(row)
                row.apply(state)
                await session.commit()

        await self._bounded("save_schedule_state", _save())
