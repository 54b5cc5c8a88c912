"""
Collection cycle: fetch -> normalize -> deduplicate -> persist -> enrich.

Runs once per collection slot (and on demand). Per-source and per-item
failures are recorded on the report and the cycle carries on; only a
persistence outage fails the cycle.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from newsdesk.core.errors import MalformedItem
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import Article, EnrichmentStatus
from newsdesk.services.deduplicator import CycleDeduplicator, resolve_against_existing
from newsdesk.services.enrichment import Enricher
from newsdesk.services.ingestion.base import FetchResult
from newsdesk.services.ingestion.collector import SourceCollector
from newsdesk.services.normalizer import Normalizer
from newsdesk.services.persistence import PersistenceGateway, UpsertOutcome

logger = structlog.get_logger()


@dataclass
class CycleReport:
    """What one collection cycle did."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    fetched: int = 0
    malformed: int = 0
    duplicates_in_cycle: int = 0
    new: int = 0
    resighted: int = 0
    enriched: int = 0
    failed_enrichment: int = 0
    source_errors: dict[str, list[str]] = field(default_factory=dict)

    @property
    def partial_failure(self) -> bool:
        return bool(self.source_errors)

    @property
    def notes(self) -> list[str]:
        return [
            f"{source}: {error}"
            for source, errors in self.source_errors.items()
            for error in errors
        ]

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "fetched": self.fetched,
            "malformed": self.malformed,
            "duplicates_in_cycle": self.duplicates_in_cycle,
            "new": self.new,
            "resighted": self.resighted,
            "enriched": self.enriched,
            "failed_enrichment": self.failed_enrichment,
            "partial_failure": self.partial_failure,
            "notes": self.notes,
        }


class CollectionJob:
    """
    Orchestrates one collection cycle.

    Pipeline stages:
    1. Fetch raw items from every connector concurrently
    2. Normalize each item as its connector's result lands
    3. Collapse duplicates within the cycle (one serialized map)
    4. Split against persisted records: new vs. re-sighted
    5. Upsert every article (each write commits on its own)
    6. Enrich new, unenriched and stale articles, storing each as it lands
    """

    def __init__(
        self,
        collector: SourceCollector,
        normalizer: Normalizer,
        enricher: Enricher,
        repository: PersistenceGateway,
        retention: timedelta = timedelta(days=90),
        stale_after: timedelta = timedelta(days=30),
        lookback: timedelta = timedelta(hours=48),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.collector = collector
        self.normalizer = normalizer
        self.enricher = enricher
        self.repository = repository
        self.retention = retention
        self.stale_after = stale_after
        self.lookback = lookback
        self.clock = clock

    def window_start(self, started: datetime, last_completed_at: Optional[datetime] = None) -> datetime:
        """Fetch from the older of the lookback horizon and the last completed cycle."""
        horizon = started - self.lookback
        if last_completed_at is not None and last_completed_at < horizon:
            return last_completed_at
        return horizon

    async def run(
        self,
        since: Optional[datetime] = None,
        last_completed_at: Optional[datetime] = None,
    ) -> CycleReport:
        """
        Execute one collection cycle.

        ``last_completed_at`` is the finish time of the previous successful
        cycle; after a long outage the fetch window reaches back to it so
        nothing published during the gap is skipped.
        """
        started = self.clock()
        report = CycleReport(started_at=started)
        dedup = CycleDeduplicator()
        since = since or self.window_start(started, last_completed_at)
        logger.info(
            "Starting collection cycle",
            start_time=started.isoformat(),
            since=since.isoformat(),
        )

        async def on_result(result: FetchResult) -> None:
            await self._absorb(result, dedup, report)

        results = await self.collector.collect(since=since, on_result=on_result)
        for result in results:
            if result.errors:
                report.source_errors[result.source_name] = list(result.errors)
        report.duplicates_in_cycle = dedup.merged

        # Stage 4: split against the store
        existing = await self.repository.get_many(dedup.fingerprints())
        now = self.clock()
        resolution = resolve_against_existing(
            dedup.drafts(), existing, now, self.retention, self.stale_after
        )

        # Stage 5: persist every article before enrichment starts
        for article in resolution.new + resolution.resighted:
            outcome = await self.repository.upsert(article)
            if outcome == UpsertOutcome.CREATED:
                report.new += 1
            else:
                report.resighted += 1

        # Stage 6: enrichment (best-effort); each result is stored as it lands
        async def store_enrichment(article: Article) -> None:
            if article.enrichment_status == EnrichmentStatus.FAILED:
                report.failed_enrichment += 1
            elif article.is_enriched and article.enriched_at and article.enriched_at >= now:
                report.enriched += 1
            else:
                return
            await self.repository.upsert(article)

        await self.enricher.enrich_many(resolution.to_enrich, on_result=store_enrichment)

        report.finished_at = self.clock()
        duration = (report.finished_at - started).total_seconds()
        log = logger.warning if report.partial_failure else logger.info
        log(
            "Collection cycle completed",
            duration_seconds=round(duration, 1),
            **{k: v for k, v in report.to_dict().items() if k not in ("started_at", "finished_at")},
        )
        return report

    async def _absorb(
        self,
        result: FetchResult,
        dedup: CycleDeduplicator,
        report: CycleReport,
    ) -> None:
        report.fetched += len(result.items)

        for item in result.items:
            try:
                draft = self.normalizer.normalize(item)
            except MalformedItem as e:
                report.malformed += 1
                logger.debug("Dropped malformed item", source=e.source, reason=e.reason)
                continue
            await dedup.add(draft)
