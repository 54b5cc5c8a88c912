"""
Tests for the persistence gateway against a temporary SQLite database.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from newsdesk.core.errors import PersistenceUnavailable
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import (
    ArticleFilter,
    Category,
    DeliveryRecord,
    DigestKind,
    EnrichmentStatus,
    ScheduleKind,
    ScheduleState,
    ScheduleStatus,
    SourceKind,
)
from newsdesk.services.persistence import LOCK_STRIPES, UpsertOutcome


class TestUpsert:
    def test_upsert_is_idempotent(self, open_gateway, make_article):
        article = make_article()

        async def run():
            repo = await open_gateway()
            first = await repo.upsert(article)
            second = await repo.upsert(article)
            stored = await repo.get_many([article.fingerprint])
            await repo.database.dispose()
            return first, second, stored

        first, second, stored = asyncio.run(run())
        assert first == UpsertOutcome.CREATED
        assert second == UpsertOutcome.UPDATED
        assert list(stored) == [article.fingerprint]
        assert stored[article.fingerprint].source_urls == article.source_urls

    def test_merge_unions_sources_and_keeps_first_seen(self, open_gateway, make_article):
        first_seen = utcnow() - timedelta(days=3)
        original = make_article(fetched_at=first_seen)
        resighting = make_article(
            fetched_at=utcnow(),
            source_urls={"https://huggingface.co/papers/1706.03762"},
            source_types={SourceKind.FEED},
            source_names={"huggingface.co"},
            published_at=datetime(2024, 1, 15, 9, 0),
        )

        async def run():
            repo = await open_gateway()
            await repo.upsert(original)
            await repo.upsert(resighting)
            stored = await repo.get(original.fingerprint)
            await repo.database.dispose()
            return stored

        stored = asyncio.run(run())
        assert stored.source_urls == {
            "https://arxiv.org/abs/1706.03762",
            "https://huggingface.co/papers/1706.03762",
        }
        assert stored.source_types == {SourceKind.API, SourceKind.FEED}
        assert stored.fetched_at == first_seen
        assert stored.last_seen_at == resighting.last_seen_at
        assert stored.published_at == datetime(2024, 1, 15, 9, 0)

    def test_last_seen_never_moves_backwards(self, open_gateway, make_article):
        recent = make_article(fetched_at=utcnow())
        older = make_article(fetched_at=utcnow() - timedelta(days=5))

        async def run():
            repo = await open_gateway()
            await repo.upsert(recent)
            await repo.upsert(older)
            stored = await repo.get(recent.fingerprint)
            await repo.database.dispose()
            return stored

        assert asyncio.run(run()).last_seen_at == recent.last_seen_at

    def test_enrichment_is_never_cleared(self, open_gateway, make_article):
        enriched = make_article(
            enrichment_status=EnrichmentStatus.ENRICHED,
            enriched_at=utcnow(),
            summary="A summary.",
            key_takeaways=["one"],
            category=Category.RESEARCH_PAPER,
            relevance_score=0.7,
        )
        failed_retry = make_article(
            enrichment_status=EnrichmentStatus.FAILED,
            enrichment_error="timed out",
        )

        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched)
            await repo.upsert(failed_retry)
            await repo.upsert(make_article())
            stored = await repo.get(enriched.fingerprint)
            await repo.database.dispose()
            return stored

        stored = asyncio.run(run())
        assert stored.enrichment_status == EnrichmentStatus.ENRICHED
        assert stored.summary == "A summary."
        assert stored.key_takeaways == ["one"]
        assert stored.relevance_score == 0.7

    def test_newer_enrichment_replaces_older(self, open_gateway, make_article):
        old = make_article(
            enrichment_status=EnrichmentStatus.ENRICHED,
            enriched_at=utcnow() - timedelta(days=40),
            summary="Old.",
            relevance_score=0.2,
        )
        new = make_article(
            enrichment_status=EnrichmentStatus.ENRICHED,
            enriched_at=utcnow(),
            summary="New.",
            relevance_score=0.9,
        )

        async def run():
            repo = await open_gateway()
            await repo.upsert(old)
            await repo.upsert(new)
            stored = await repo.get(old.fingerprint)
            await repo.database.dispose()
            return stored

        stored = asyncio.run(run())
        assert stored.summary == "New."
        assert stored.relevance_score == 0.9

    def test_concurrent_upserts_of_one_fingerprint(self, open_gateway, make_article):
        variants = [
            make_article(source_urls={f"https://mirror{i}.example.com/paper"}, source_names={f"m{i}"})
            for i in range(5)
        ]

        async def run():
            repo = await open_gateway()
            outcomes = await asyncio.gather(*(repo.upsert(a) for a in variants))
            stored = await repo.get(variants[0].fingerprint)
            await repo.database.dispose()
            return outcomes, stored

        outcomes, stored = asyncio.run(run())
        assert outcomes.count(UpsertOutcome.CREATED) == 1
        assert len(stored.source_urls) == 5

    def test_lock_pool_does_not_grow_with_fingerprints(self, open_gateway, make_article):
        articles = [make_article(fingerprint=f"fp-{i}") for i in range(200)]

        async def run():
            repo = await open_gateway()
            before = list(repo._locks)
            outcomes = [await repo.upsert(a) for a in articles]
            after = list(repo._locks)
            await repo.database.dispose()
            return before, after, outcomes

        before, after, outcomes = asyncio.run(run())
        assert len(after) == len(before) == LOCK_STRIPES
        assert all(a is b for a, b in zip(before, after))
        assert outcomes.count(UpsertOutcome.CREATED) == 200


class TestQueries:
    def test_expired_articles_are_excluded(self, open_gateway, make_article):
        now = utcnow()
        live = make_article(fingerprint="live", fetched_at=now - timedelta(hours=2))
        expired = make_article(
            fingerprint="expired",
            fetched_at=now - timedelta(hours=2),
            expires_in=timedelta(seconds=-1),
        )

        async def run():
            repo = await open_gateway()
            await repo.upsert(live)
            await repo.upsert(expired)
            window = await repo.query_window(now - timedelta(days=1), now)
            recent = await repo.recent()
            removed = await repo.purge_expired()
            remaining = await repo.get_many(["live", "expired"])
            await repo.database.dispose()
            return window, recent, removed, remaining

        window, recent, removed, remaining = asyncio.run(run())
        assert [a.fingerprint for a in window] == ["live"]
        assert [a.fingerprint for a in recent] == ["live"]
        assert removed == 1
        assert list(remaining) == ["live"]

    def test_window_is_half_open(self, open_gateway, make_article):
        start = datetime(2024, 1, 15, 7, 30)
        end = datetime(2024, 1, 16, 7, 30)
        articles = [
            make_article(fingerprint="at-start", fetched_at=start),
            make_article(fingerprint="inside", fetched_at=start + timedelta(hours=5)),
            make_article(fingerprint="at-end", fetched_at=end),
        ]

        async def run():
            repo = await open_gateway()
            for a in articles:
                await repo.upsert(a)
            window = await repo.query_window(start, end)
            await repo.database.dispose()
            return window

        assert sorted(a.fingerprint for a in asyncio.run(run())) == ["at-start", "inside"]

    def test_filters(self, open_gateway, make_article):
        now = utcnow()
        articles = [
            make_article(
                fingerprint="paper",
                category=Category.RESEARCH_PAPER,
                relevance_score=0.9,
                enrichment_status=EnrichmentStatus.ENRICHED,
                enriched_at=now,
            ),
            make_article(
                fingerprint="blog",
                category=Category.PRODUCT_NEWS,
                relevance_score=0.3,
                enrichment_status=EnrichmentStatus.ENRICHED,
                enriched_at=now,
                source_types={SourceKind.FEED},
            ),
            make_article(fingerprint="pending"),
        ]

        async def run():
            repo = await open_gateway()
            for a in articles:
                await repo.upsert(a)
            results = {
                "category": await repo.recent(ArticleFilter(category=Category.PRODUCT_NEWS)),
                "score": await repo.recent(ArticleFilter(min_score=0.5)),
                "kind": await repo.recent(ArticleFilter(source_kind=SourceKind.FEED)),
                "enriched": await repo.recent(ArticleFilter(enriched_only=True)),
                "limit": await repo.recent(ArticleFilter(limit=1)),
                "stats": await repo.stats(),
            }
            await repo.database.dispose()
            return results

        results = asyncio.run(run())
        assert [a.fingerprint for a in results["category"]] == ["blog"]
        assert [a.fingerprint for a in results["score"]] == ["paper"]
        assert [a.fingerprint for a in results["kind"]] == ["blog"]
        assert sorted(a.fingerprint for a in results["enriched"]) == ["blog", "paper"]
        assert len(results["limit"]) == 1
        assert results["stats"]["live_articles"] == 3
        assert results["stats"]["pending_enrichment"] == 1

    def test_unknown_window_field_rejected(self, open_gateway):
        async def run():
            repo = await open_gateway()
            try:
                await repo.query_window(datetime(2024, 1, 1), datetime(2024, 1, 2), field="title")
            finally:
                await repo.database.dispose()

        with pytest.raises(ValueError):
            asyncio.run(run())


class TestDeliveryRecords:
    def record(self, key="daily:2024-01-16") -> DeliveryRecord:
        return DeliveryRecord(
            digest_key=key,
            kind=DigestKind.DAILY,
            window_start=datetime(2024, 1, 15, 7, 30),
            window_end=datetime(2024, 1, 16, 7, 30),
            sent_at=datetime(2024, 1, 16, 7, 31),
            article_fingerprints=["a", "b"],
            recipients=["team@example.com"],
        )

    def test_record_written_once(self, open_gateway):
        async def run():
            repo = await open_gateway()
            first = await repo.record_delivery(self.record())
            second = await repo.record_delivery(self.record())
            stored = await repo.get_delivery("daily:2024-01-16")
            missing = await repo.get_delivery("daily:2024-01-17")
            await repo.database.dispose()
            return first, second, stored, missing

        first, second, stored, missing = asyncio.run(run())
        assert first is True
        assert second is False
        assert stored.article_fingerprints == ["a", "b"]
        assert missing is None


class TestScheduleState:
    def test_state_roundtrip(self, open_gateway):
        state = ScheduleState(
            kind=ScheduleKind.DAILY_DIGEST,
            status=ScheduleStatus.FAILED,
            last_completed_slot=datetime(2024, 1, 15, 7, 30),
            pending_slot=datetime(2024, 1, 16, 7, 30),
            attempts=2,
            next_retry_at=datetime(2024, 1, 16, 7, 34),
            last_error="DeliveryFailed('smtp down')",
        )

        async def run():
            repo = await open_gateway()
            default = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)
            await repo.save_schedule_state(state)
            state.attempts = 3
            await repo.save_schedule_state(state)
            loaded = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)
            await repo.database.dispose()
            return default, loaded

        default, loaded = asyncio.run(run())
        assert default.status == ScheduleStatus.IDLE
        assert default.last_completed_slot is None
        assert loaded == state.model_copy(update={"attempts": 3})


class TestTimeouts:
    def test_slow_store_raises_persistence_unavailable(self, open_gateway, make_article):
        async def run():
            repo = await open_gateway(timeout=0.05)

            async def stall(article):
                await asyncio.sleep(5)

            repo._upsert = stall
            try:
                await repo.upsert(make_article())
            finally:
                await repo.database.dispose()

        with pytest.raises(PersistenceUnavailable, match="timed out"):
            asyncio.run(run())
