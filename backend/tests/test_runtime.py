"""
Tests for runtime wiring: settings in, working entry points out.
"""

import asyncio
from datetime import timedelta

import pytest

from newsdesk.config import Settings
from newsdesk.core.errors import NewsdeskError
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import DigestKind, ScheduleKind, ScheduleState, SourceKind
from newsdesk.runtime import NewsdeskRuntime, build_connectors
from newsdesk.services.delivery import DigestTransport
from newsdesk.services.ingestion.base import ApiItem, FetchResult, SourceConfig, SourceConnector


class OnePaperConnector(SourceConnector):
    def __init__(self):
        super().__init__(SourceConfig(name="arxiv", kind=SourceKind.API))

    async def fetch(self, context, since=None) -> FetchResult:
        result = self._result()
        result.items.append(ApiItem(
            source_name="arxiv",
            external_id="2401.00001",
            title="A Paper",
            url="https://arxiv.org/abs/2401.00001",
            published="2024-01-15T12:00:00Z",
        ))
        return result


class RecordingConnector(SourceConnector):
    def __init__(self):
        super().__init__(SourceConfig(name="arxiv", kind=SourceKind.API))
        self.since = None

    async def fetch(self, context, since=None) -> FetchResult:
        self.since = since
        return self._result()


class NullTransport(DigestTransport):
    name = "null"

    async def send(self, payload, recipients):
        return None


def settings_for(db_url: str, **overrides) -> Settings:
    fields = dict(
        database_url=db_url,
        enrichment_enabled=False,
        arxiv_enabled=False,
        feeds_enabled=False,
        weekly_digest_enabled=False,
        digest_recipients=["team@example.com"],
    )
    fields.update(overrides)
    return Settings(**fields)


class TestBuildConnectors:
    def test_enabled_sources(self):
        settings = Settings(
            arxiv_enabled=True,
            feeds_enabled=True,
            feed_urls=["https://huggingface.co/papers/rss"],
            scrape_enabled=False,
        )
        kinds = [c.kind for c in build_connectors(settings)]
        assert kinds == [SourceKind.API, SourceKind.FEED]

    def test_everything_disabled(self):
        settings = Settings(arxiv_enabled=False, feeds_enabled=False, scrape_enabled=False)
        assert build_connectors(settings) == []


class TestRuntime:
    def test_digests_disabled_without_transport(self, db_url):
        runtime = NewsdeskRuntime(settings_for(db_url), connectors=[])

        async def run():
            await runtime.initialize()
            try:
                await runtime.run_digest(DigestKind.DAILY)
            finally:
                await runtime.shutdown()

        assert runtime.digest_job is None
        assert list(runtime.scheduler.cycles) == [ScheduleKind.COLLECTION]
        with pytest.raises(NewsdeskError, match="not enabled"):
            asyncio.run(run())

    def test_collect_query_and_digest(self, db_url):
        runtime = NewsdeskRuntime(
            settings_for(db_url),
            connectors=[OnePaperConnector()],
            transport=NullTransport(),
        )

        async def run():
            await runtime.initialize()
            collected = await runtime.trigger_collection()
            articles = await runtime.query_articles()
            digest = await runtime.run_digest(DigestKind.DAILY)
            status = await runtime.status()
            await runtime.shutdown()
            return collected, articles, digest, status

        collected, articles, digest, status = asyncio.run(run())

        assert collected["status"] == "completed"
        assert collected["new"] == 1
        assert [a.title for a in articles] == ["A Paper"]
        # Freshly fetched articles belong to the next daily window
        assert digest["outcome"] == "empty"
        assert status["store"]["live_articles"] == 1
        assert status["enrichment_enabled"] is False
        assert set(status["scheduler"]) == {"collection", "daily_digest"}
        assert status["scheduler"]["collection"]["last_completed_slot"] is not None

    def test_weekly_not_scheduled_when_disabled(self, db_url):
        runtime = NewsdeskRuntime(settings_for(db_url), connectors=[], transport=NullTransport())

        async def run():
            await runtime.initialize()
            try:
                await runtime.run_digest(DigestKind.WEEKLY)
            finally:
                await runtime.shutdown()

        with pytest.raises(NewsdeskError):
            asyncio.run(run())

    def test_collection_resumes_from_last_completed_cycle(self, db_url):
        connector = RecordingConnector()
        runtime = NewsdeskRuntime(settings_for(db_url), connectors=[connector])
        last_run = (utcnow() - timedelta(days=10)).replace(microsecond=0)

        async def run():
            await runtime.initialize()
            await runtime.repository.save_schedule_state(ScheduleState(
                kind=ScheduleKind.COLLECTION,
                last_completed_slot=last_run,
                last_completed_at=last_run,
            ))
            collected = await runtime.trigger_collection()
            await runtime.shutdown()
            return collected

        collected = asyncio.run(run())
        assert collected["status"] == "completed"
        assert connector.since == last_run
