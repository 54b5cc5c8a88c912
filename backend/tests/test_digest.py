"""
Tests for digest composition, the digest job and the delivery gateway.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from newsdesk.core.errors import DeliveryFailed
from newsdesk.core.retry import RetryPolicy
from newsdesk.jobs.digest import DigestJob, DigestOutcome
from newsdesk.models.domain import Category, DigestKind, EnrichmentStatus
from newsdesk.services.delivery import DeliveryGateway, DigestTransport, EmailTransport
from newsdesk.services.digest import DigestComposer

SLOT = datetime(2024, 1, 16, 7, 30)
IN_WINDOW = datetime(2024, 1, 15, 20, 0)
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0)


def enriched(make_article, fingerprint, score, **overrides):
    return make_article(
        fingerprint=fingerprint,
        fetched_at=overrides.pop("fetched_at", IN_WINDOW),
        enrichment_status=EnrichmentStatus.ENRICHED,
        enriched_at=IN_WINDOW,
        relevance_score=score,
        category=Category.RESEARCH_PAPER,
        summary=f"Summary of {fingerprint}.",
        **overrides,
    )


def mock_transport(side_effect=None) -> DigestTransport:
    transport = AsyncMock(spec=DigestTransport)
    transport.name = "mock"
    transport.send = AsyncMock(side_effect=side_effect)
    return transport


class TestComposer:
    def test_slot_windows(self, open_gateway):
        async def run():
            repo = await open_gateway()
            composer = DigestComposer(repo)
            daily = composer.slot_for(DigestKind.DAILY, SLOT)
            weekly = composer.slot_for(DigestKind.WEEKLY, datetime(2024, 1, 15, 8, 0))
            await repo.database.dispose()
            return daily, weekly

        daily, weekly = asyncio.run(run())
        assert daily.digest_key == "daily:2024-01-16"
        assert daily.window_start == datetime(2024, 1, 15, 7, 30)
        assert daily.window_end == SLOT
        assert weekly.digest_key == "weekly:2024-W03"
        assert weekly.window_start == datetime(2024, 1, 8, 8, 0)

    def test_ordering_cap_and_window(self, open_gateway, make_article):
        articles = [
            enriched(make_article, "low", 0.2),
            enriched(make_article, "high", 0.9),
            enriched(make_article, "mid", 0.5),
            make_article(fingerprint="unscored", fetched_at=IN_WINDOW, abstract="Raw abstract."),
            enriched(make_article, "too-old", 1.0, fetched_at=datetime(2024, 1, 14, 12, 0)),
            enriched(make_article, "at-slot", 1.0, fetched_at=SLOT),
        ]

        async def run():
            repo = await open_gateway()
            for a in articles:
                await repo.upsert(a)
            composer = DigestComposer(repo)
            full = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            capped = await DigestComposer(repo, max_articles=2).compose(
                composer.slot_for(DigestKind.DAILY, SLOT)
            )
            await repo.database.dispose()
            return full, capped

        full, capped = asyncio.run(run())
        assert full.fingerprints == ["high", "mid", "low", "unscored"]
        assert full.entries[-1].summary == "Raw abstract."
        assert capped.fingerprints == ["high", "mid"]
        assert "(4 items)" in full.subject
        assert "Daily digest for 2024-01-16" in full.text_body
        assert "1. Attention Is All You Need" in full.text_body

    def test_html_is_escaped(self, open_gateway, make_article):
        article = enriched(make_article, "xss", 0.5, title="<script>alert(1)</script> & friends")

        async def run():
            repo = await open_gateway()
            await repo.upsert(article)
            composer = DigestComposer(repo)
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            await repo.database.dispose()
            return payload

        payload = asyncio.run(run())
        assert "<script>" not in payload.html_body
        assert "&lt;script&gt;" in payload.html_body
        assert "<script>alert(1)</script> & friends" in payload.text_body

    def test_empty_window(self, open_gateway):
        async def run():
            repo = await open_gateway()
            composer = DigestComposer(repo)
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            await repo.database.dispose()
            return payload

        payload = asyncio.run(run())
        assert payload.is_empty
        assert "No new items" in payload.text_body


class TestDeliveryGateway:
    def test_success_writes_record(self, open_gateway, make_article):
        transport = mock_transport()

        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched(make_article, "a", 0.5))
            composer = DigestComposer(repo)
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            gateway = DeliveryGateway(transport, repo, retry_policy=NO_WAIT, clock=lambda: SLOT)
            record = await gateway.send(payload, ["team@example.com"])
            again = await gateway.send(payload, ["team@example.com"])
            stored = await repo.get_delivery("daily:2024-01-16")
            await repo.database.dispose()
            return record, again, stored

        record, again, stored = asyncio.run(run())
        assert record.article_fingerprints == ["a"]
        assert record.sent_at == SLOT
        assert again is None
        assert stored == record
        assert transport.send.await_count == 1

    def test_retries_then_fails_without_record(self, open_gateway, make_article):
        transport = mock_transport(side_effect=ConnectionError("connection refused"))

        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched(make_article, "a", 0.5))
            composer = DigestComposer(repo)
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            gateway = DeliveryGateway(transport, repo, retry_policy=NO_WAIT)
            try:
                await gateway.send(payload, ["team@example.com"])
            finally:
                stored = await repo.get_delivery("daily:2024-01-16")
                await repo.database.dispose()
            return stored

        with pytest.raises(DeliveryFailed) as excinfo:
            asyncio.run(run())
        assert excinfo.value.attempts == 3
        assert excinfo.value.digest_key == "daily:2024-01-16"
        assert transport.send.await_count == 3

    def test_retry_then_success(self, open_gateway, make_article):
        transport = mock_transport(side_effect=[ConnectionError("blip"), None])

        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched(make_article, "a", 0.5))
            composer = DigestComposer(repo)
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            record = await DeliveryGateway(transport, repo, retry_policy=NO_WAIT).send(
                payload, ["team@example.com"]
            )
            await repo.database.dispose()
            return record

        assert asyncio.run(run()) is not None
        assert transport.send.await_count == 2

    def test_no_recipients_is_rejected(self, open_gateway):
        async def run():
            repo = await open_gateway()
            composer = DigestComposer(repo)
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            try:
                await DeliveryGateway(mock_transport(), repo).send(payload, [])
            finally:
                await repo.database.dispose()

        with pytest.raises(DeliveryFailed, match="no recipients"):
            asyncio.run(run())


class TestDigestJob:
    def build(self, repo, transport, recipients=("team@example.com",), send_empty=False):
        return DigestJob(
            DigestComposer(repo),
            DeliveryGateway(transport, repo, retry_policy=NO_WAIT),
            recipients=list(recipients),
            send_empty=send_empty,
        )

    def test_sends_once_per_slot(self, open_gateway, make_article):
        transport = mock_transport()

        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched(make_article, "a", 0.5))
            job = self.build(repo, transport)
            first = await job.run(DigestKind.DAILY, SLOT)
            second = await job.run(DigestKind.DAILY, SLOT)
            await repo.database.dispose()
            return first, second

        first, second = asyncio.run(run())
        assert first.outcome == DigestOutcome.SENT
        assert first.articles == 1
        assert first.to_dict()["sent_at"] is not None
        assert second.outcome == DigestOutcome.ALREADY_DELIVERED
        assert transport.send.await_count == 1

    def test_empty_digest_is_skipped(self, open_gateway):
        transport = mock_transport()

        async def run():
            repo = await open_gateway()
            report = await self.build(repo, transport).run(DigestKind.DAILY, SLOT)
            recorded = await repo.get_delivery("daily:2024-01-16")
            await repo.database.dispose()
            return report, recorded

        report, recorded = asyncio.run(run())
        assert report.outcome == DigestOutcome.EMPTY
        assert recorded is None
        transport.send.assert_not_awaited()

    def test_empty_digest_sent_when_configured(self, open_gateway):
        transport = mock_transport()

        async def run():
            repo = await open_gateway()
            report = await self.build(repo, transport, send_empty=True).run(DigestKind.DAILY, SLOT)
            await repo.database.dispose()
            return report

        assert asyncio.run(run()).outcome == DigestOutcome.SENT
        assert transport.send.await_count == 1

    def test_no_recipients(self, open_gateway, make_article):
        transport = mock_transport()

        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched(make_article, "a", 0.5))
            report = await self.build(repo, transport, recipients=()).run(DigestKind.DAILY, SLOT)
            await repo.database.dispose()
            return report

        assert asyncio.run(run()).outcome == DigestOutcome.NO_RECIPIENTS
        transport.send.assert_not_awaited()


class TestEmailTransport:
    def test_build_message(self, open_gateway, make_article):
        async def run():
            repo = await open_gateway()
            await repo.upsert(enriched(make_article, "a", 0.5))
            composer = DigestComposer(repo, title="Research Radar")
            payload = await composer.compose(composer.slot_for(DigestKind.DAILY, SLOT))
            await repo.database.dispose()
            return payload

        payload = asyncio.run(run())
        transport = EmailTransport("smtp.example.com", sender="radar@example.com")
        msg = transport.build_message(payload, ["a@example.com", "b@example.com"])

        assert msg["Subject"].startswith("Research Radar - Daily digest for 2024-01-16")
        assert msg["To"] == "a@example.com, b@example.com"
        parts = msg.get_payload()
        assert [p.get_content_type() for p in parts] == ["text/plain", "text/html"]
