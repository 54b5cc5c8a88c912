"""
Deduplicator - collapses duplicate coverage of one item.

Identity is an exact fingerprint over the case-folded title, the publish
day and, when one exists, a cross-source identifier. Reworded titles for
the same work (near-duplicates) are not detected; that is a known
limitation, not a bug.
"""
import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from newsdesk.core.timeutil import truncate_to_day
from newsdesk.models.domain import Article, ArticleDraft

logger = structlog.get_logger()


def compute_fingerprint(
    title_key: str,
    published_at: datetime,
    identifier: Optional[str] = None,
) -> str:
    """Stable identity hash for an article."""
    day = truncate_to_day(published_at).isoformat()
    material = "\x1f".join([title_key, day, identifier or ""])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def merge_drafts(existing: ArticleDraft, incoming: ArticleDraft) -> ArticleDraft:
    """Merge two drafts sharing a fingerprint within one cycle."""
    abstract = existing.abstract
    if incoming.abstract and len(incoming.abstract) > len(abstract or ""):
        abstract = incoming.abstract

    return existing.model_copy(update={
        "abstract": abstract,
        "identifier": existing.identifier or incoming.identifier,
        "source_urls": existing.source_urls | incoming.source_urls,
        "source_types": existing.source_types | incoming.source_types,
        "source_names": existing.source_names | incoming.source_names,
        "published_at": min(existing.published_at, incoming.published_at),
        "fetched_at": max(existing.fetched_at, incoming.fetched_at),
    })


class CycleDeduplicator:
    """
    The seen-fingerprint map for one collection cycle.

    Connectors deliver concurrently; every mutation goes through a single
    lock so one fingerprint always resolves to one canonical draft.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._drafts: dict[str, ArticleDraft] = {}
        self.received = 0
        self.merged = 0

    async def add(self, draft: ArticleDraft) -> ArticleDraft:
        """Record a draft; returns the canonical draft for its fingerprint."""
        async with self._lock:
            self.received += 1
            current = self._drafts.get(draft.fingerprint)
            if current is None:
                self._drafts[draft.fingerprint] = draft
                return draft

            merged = merge_drafts(current, draft)
            self._drafts[draft.fingerprint] = merged
            self.merged += 1
            return merged

    async def add_many(self, drafts: Iterable[ArticleDraft]) -> None:
        for draft in drafts:
            await self.add(draft)

    def drafts(self) -> list[ArticleDraft]:
        return list(self._drafts.values())

    def fingerprints(self) -> list[str]:
        return list(self._drafts)

    def __len__(self) -> int:
        return len(self._drafts)


@dataclass
class Resolution:
    """Drafts of one cycle split against what is already persisted."""
    new: list[Article] = field(default_factory=list)
    resighted: list[Article] = field(default_factory=list)
    to_enrich: list[Article] = field(default_factory=list)


def resolve_against_existing(
    drafts: list[ArticleDraft],
    existing: dict[str, Article],
    now: datetime,
    retention: timedelta,
    stale_after: timedelta,
) -> Resolution:
    """
    Turn cycle drafts into Articles ready for upsert.

    A draft matching a persisted record is a re-sighting: the source sets
    are unioned and ``last_seen_at`` refreshed, while enrichment fields are
    carried over untouched. Enrichment is scheduled only for new records
    and for records that are unenriched or stale.
    """
    resolution = Resolution()

    for draft in drafts:
        current = existing.get(draft.fingerprint)
        if current is None:
            article = Article.from_draft(draft, retention)
            resolution.new.append(article)
            resolution.to_enrich.append(article)
            continue

        article = current.model_copy(update={
            "source_urls": current.source_urls | draft.source_urls,
            "source_types": current.source_types | draft.source_types,
            "source_names": current.source_names | draft.source_names,
            "published_at": min(current.published_at, draft.published_at),
            "last_seen_at": max(current.last_seen_at, draft.fetched_at),
            "abstract": current.abstract or draft.abstract,
            "identifier": current.identifier or draft.identifier,
        })
        resolution.resighted.append(article)
        if article.needs_enrichment(now, stale_after):
            resolution.to_enrich.append(article)

    logger.debug(
        "Resolved drafts against store",
        new=len(resolution.new),
        resighted=len(resolution.resighted),
        to_enrich=len(resolution.to_enrich),
    )
    return resolution
