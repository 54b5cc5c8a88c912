"""
Runtime wiring for Newsdesk.

Builds every service from Settings and exposes the entry points the HTTP
shell and the CLI delegate to.
"""
from datetime import datetime, timedelta
from typing import Optional

import structlog

from newsdesk.config import Settings, get_settings
from newsdesk.core.errors import NewsdeskError
from newsdesk.core.schedule import DailyCadence, IntervalCadence, WeeklyCadence
from newsdesk.core.timeutil import to_naive_utc, utcnow
from newsdesk.jobs.collection import CollectionJob
from newsdesk.jobs.digest import DigestJob
from newsdesk.models.database import Database
from newsdesk.models.domain import (
    Article,
    ArticleFilter,
    Category,
    DigestKind,
    ScheduleKind,
    SourceKind,
)
from newsdesk.services.delivery import DeliveryGateway, EmailTransport
from newsdesk.services.digest import DigestComposer
from newsdesk.services.enrichment import Enricher, build_provider
from newsdesk.services.ingestion import (
    ArxivConnector,
    FeedConnector,
    FeedSpec,
    ScrapeConnector,
    SourceCollector,
    SourceConnector,
)
from newsdesk.services.ingestion.arxiv import create_arxiv_config
from newsdesk.services.ingestion.feeds import create_feed_config
from newsdesk.services.normalizer import Normalizer
from newsdesk.services.persistence import PersistenceGateway
from newsdesk.services.scheduler import ScheduledCycle, Scheduler

logger = structlog.get_logger()

DIGEST_SCHEDULES = {
    DigestKind.DAILY: ScheduleKind.DAILY_DIGEST,
    DigestKind.WEEKLY: ScheduleKind.WEEKLY_DIGEST,
}


def build_connectors(settings: Settings) -> list[SourceConnector]:
    connectors: list[SourceConnector] = []
    if settings.arxiv_enabled:
        connectors.append(ArxivConnector(
            categories=settings.arxiv_categories,
            config=create_arxiv_config(settings.arxiv_max_results),
        ))
    if settings.feeds_enabled and settings.feed_urls:
        connectors.append(FeedConnector(
            feeds=[FeedSpec.from_url(url) for url in settings.feed_urls],
            config=create_feed_config(settings.feed_max_items),
        ))
    if settings.scrape_enabled and settings.scrape_pages:
        connectors.append(ScrapeConnector(pages=settings.scrape_pages))
    return connectors


class NewsdeskRuntime:
    """Owns the database, services and scheduler for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        database: Optional[Database] = None,
        connectors: Optional[list[SourceConnector]] = None,
        enricher: Optional[Enricher] = None,
        transport: Optional[EmailTransport] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.database = database or Database(s.database_url)
        self.repository = PersistenceGateway(self.database, timeout=s.persist_timeout_seconds)

        self.collector = SourceCollector(
            connectors if connectors is not None else build_connectors(s),
            connector_timeout=s.connector_timeout_seconds,
            request_timeout=s.fetch_timeout_seconds,
            max_concurrent=s.max_concurrent_fetches,
        )
        self.enricher = enricher or Enricher(
            build_provider(s),
            timeout=s.enrichment_timeout_seconds,
            retry_policy=s.enrichment_retry.to_policy(),
            max_concurrency=s.enrichment_max_concurrency,
            max_words=s.summary_max_words,
        )
        self.collection_job = CollectionJob(
            collector=self.collector,
            normalizer=Normalizer(),
            enricher=self.enricher,
            repository=self.repository,
            retention=timedelta(days=s.retention_days),
            stale_after=timedelta(days=s.enrichment_stale_after_days),
            lookback=timedelta(hours=s.collection_lookback_hours),
        )

        self.composer = DigestComposer(
            self.repository,
            max_articles=s.digest_max_articles,
            title=s.app_name,
        )
        if transport is None and s.smtp_configured:
            transport = EmailTransport.from_settings(s)
        self.digest_job: Optional[DigestJob] = None
        if transport is not None:
            gateway = DeliveryGateway(
                transport,
                self.repository,
                retry_policy=s.delivery_retry.to_policy(),
                timeout=s.send_timeout_seconds,
            )
            self.digest_job = DigestJob(
                self.composer,
                gateway,
                recipients=s.digest_recipients,
                send_empty=s.digest_send_empty,
            )

        self.scheduler = Scheduler(
            self.repository,
            self._build_cycles(),
            retry_policy=s.scheduler_retry.to_policy(),
            run_on_startup=s.run_on_startup,
        )

    def _build_cycles(self) -> list[ScheduledCycle]:
        s = self.settings
        cycles = [
            ScheduledCycle(
                kind=ScheduleKind.COLLECTION,
                cadence=IntervalCadence(timedelta(minutes=s.collection_interval_minutes)),
                runner=self._collection_cycle,
            )
        ]
        if self.digest_job is None:
            logger.warning("SMTP not configured, digest schedules disabled")
            return cycles

        if s.daily_digest_enabled:
            cycles.append(ScheduledCycle(
                kind=ScheduleKind.DAILY_DIGEST,
                cadence=DailyCadence(s.daily_digest_time),
                runner=self._daily_digest_cycle,
            ))
        if s.weekly_digest_enabled:
            cycles.append(ScheduledCycle(
                kind=ScheduleKind.WEEKLY_DIGEST,
                cadence=WeeklyCadence(s.weekly_digest_day, s.weekly_digest_time),
                runner=self._weekly_digest_cycle,
            ))
        return cycles

    # =========================================================================
    # Cycle runners
    # =========================================================================

    async def _collection_cycle(self, slot: datetime):
        report = await self.collection_job.run(
            last_completed_at=self.scheduler.last_completed_at(ScheduleKind.COLLECTION),
        )
        await self.repository.purge_expired()
        return report

    async def _daily_digest_cycle(self, slot: datetime):
        return await self.digest_job.run(DigestKind.DAILY, slot)

    async def _weekly_digest_cycle(self, slot: datetime):
        return await self.digest_job.run(DigestKind.WEEKLY, slot)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        logger.info("Initializing database", url=self.settings.database_url)
        await self.database.create_tables()

    async def start(self) -> None:
        await self.scheduler.start()

    async def tick(self) -> None:
        await self.scheduler.tick()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.database.dispose()
        logger.info("Runtime shut down")

    # =========================================================================
    # Entry points
    # =========================================================================

    async def trigger_collection(self) -> dict:
        """Run a collection cycle now. No-op when one is already running."""
        report = await self.scheduler.run_now(ScheduleKind.COLLECTION)
        if report is None:
            return {"status": "already_running"}
        return {"status": "completed", **report.to_dict()}

    async def query_articles(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        category: Optional[Category] = None,
        min_score: Optional[float] = None,
        source_kind: Optional[SourceKind] = None,
        enriched_only: bool = False,
        limit: int = 50,
    ) -> list[Article]:
        """
        Read live articles.

        With ``since`` the fetch-time window ``[since, until)`` is queried;
        otherwise the most recently fetched articles are returned.
        """
        filters = ArticleFilter(
            category=category,
            min_score=min_score,
            source_kind=source_kind,
            enriched_only=enriched_only,
            limit=limit,
        )
        if since is None:
            return await self.repository.recent(filters)
        end = to_naive_utc(until) if until else utcnow() + timedelta(seconds=1)
        return await self.repository.query_window(to_naive_utc(since), end, filters)

    async def run_digest(self, kind: DigestKind) -> dict:
        """Run the digest for the current slot of ``kind`` now."""
        schedule_kind = DIGEST_SCHEDULES[kind]
        if schedule_kind not in self.scheduler.cycles:
            raise NewsdeskError(f"{kind.value} digest is not enabled (check SMTP and digest settings)")
        report = await self.scheduler.run_now(schedule_kind)
        if report is None:
            return {"status": "already_running"}
        return report.to_dict()

    async def purge_expired(self) -> int:
        return await self.repository.purge_expired()

    async def status(self) -> dict:
        return {
            "app": self.settings.app_name,
            "version": self.settings.app_version,
            "scheduler": self.scheduler.status(),
            "store": await self.repository.stats(),
            "sources": self.collector.get_source_stats(),
            "enrichment_enabled": self.enricher.enabled,
        }

    async def health_check(self) -> dict[str, bool]:
        return await self.collector.health_check()
