"""
RSS/Atom feed connector.

Handles fetching and parsing feeds from labs, blogs and paper
aggregators. One broken feed never hides items from the others.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse
from xml.etree import ElementTree
import logging

import httpx

from newsdesk.models.domain import SourceKind
from newsdesk.services.ingestion.base import (
    FeedItem,
    FetchContext,
    FetchResult,
    SourceConfig,
    SourceConnector,
    Stopwatch,
)
from newsdesk.services.ingestion.dates import parse_rss_date
from newsdesk.services.ingestion.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

# XML namespaces for Atom feeds
ATOM_NS = "{http://www.w3.org/2005/Atom}"
DC_NS = "{http://purl.org/dc/elements/1.1/}"
CONTENT_NS = "{http://purl.org/rss/1.0/modules/content/}"

USER_AGENT = "Newsdesk/0.1 (research feed aggregator)"


@dataclass
class FeedSpec:
    name: str
    url: str

    @classmethod
    def from_url(cls, url: str) -> "FeedSpec":
        host = urlparse(url).netloc or url
        return cls(name=host.removeprefix("www."), url=url)


def create_feed_config(max_items: int = 50) -> SourceConfig:
    """Create default feed source configuration."""
    return SourceConfig(
        name="feeds",
        kind=SourceKind.FEED,
        rate_limit_requests=10,
        rate_limit_period=1,
        max_results=max_items,
    )


class FeedConnector(SourceConnector):
    """Fetches every configured feed concurrently."""

    def __init__(
        self,
        feeds: list[FeedSpec],
        config: Optional[SourceConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(config or create_feed_config())
        self.feeds = feeds
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.rate_limiter.set_limit(
            self.name, self.config.rate_limit_requests, self.config.rate_limit_period
        )

    async def fetch(
        self,
        context: FetchContext,
        since: Optional[datetime] = None,
    ) -> FetchResult:
        result = self._result()
        watch = Stopwatch()

        tasks = [self._fetch_feed(context, feed) for feed in self.feeds]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for feed, outcome in zip(self.feeds, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"Feed {feed.name} failed: {outcome!r}")
                result.errors.append(f"{feed.name}: {outcome!r}")
                continue

            items = outcome[: self.config.max_results]
            if since is not None:
                items = [i for i in items if self._is_newer(i, since)]
            result.items.extend(items)

        result.duration_seconds = watch.elapsed
        return result

    async def _fetch_feed(self, context: FetchContext, feed: FeedSpec) -> list[FeedItem]:
        """Fetch and parse a single feed. Raises on transport or parse errors."""
        await self.rate_limiter.acquire(self.name, timeout=None)

        response = await context.client.get(
            feed.url,
            headers={"User-Agent": USER_AGENT},
            timeout=context.request_timeout,
            follow_redirects=True,
        )
        response.raise_for_status()

        items = self.parse(response.text, feed)
        logger.debug(f"Fetched {len(items)} items from {feed.name}")
        return items

    def parse(self, xml_content: str, feed: FeedSpec) -> list[FeedItem]:
        """Detect feed type and parse."""
        root = ElementTree.fromstring(xml_content)
        if root.tag == f"{ATOM_NS}feed":
            return self._parse_atom(root, feed)
        return self._parse_rss(root, feed)

    def _parse_rss(self, root: ElementTree.Element, feed: FeedSpec) -> list[FeedItem]:
        """Parse RSS 2.0 items."""
        items = []
        for element in root.findall(".//item"):
            title = (element.findtext("title") or "").strip()
            if not title:
                continue

            description = element.findtext(f"{CONTENT_NS}encoded") or element.findtext("description") or ""
            published = element.findtext("pubDate") or element.findtext(f"{DC_NS}date")

            items.append(FeedItem(
                source_name=feed.name,
                feed_url=feed.url,
                title=title,
                link=(element.findtext("link") or "").strip() or None,
                guid=(element.findtext("guid") or "").strip() or None,
                description=description,
                published=published,
                categories=[c.text for c in element.findall("category") if c.text],
            ))
        return items

    def _parse_atom(self, root: ElementTree.Element, feed: FeedSpec) -> list[FeedItem]:
        """Parse Atom entries."""
        items = []
        for entry in root.findall(f"{ATOM_NS}entry"):
            title = " ".join((entry.findtext(f"{ATOM_NS}title") or "").split())
            if not title:
                continue

            link = None
            for link_elem in entry.findall(f"{ATOM_NS}link"):
                if link_elem.get("rel", "alternate") == "alternate":
                    link = link_elem.get("href")
                    break

            content = entry.findtext(f"{ATOM_NS}content") or entry.findtext(f"{ATOM_NS}summary") or ""
            published = entry.findtext(f"{ATOM_NS}published") or entry.findtext(f"{ATOM_NS}updated")

            categories = []
            for cat in entry.findall(f"{ATOM_NS}category"):
                term = cat.get("term") or cat.get("label")
                if term:
                    categories.append(term)

            items.append(FeedItem(
                source_name=feed.name,
                feed_url=feed.url,
                title=title,
                link=link,
                guid=entry.findtext(f"{ATOM_NS}id"),
                description=content,
                published=published,
                categories=categories,
            ))
        return items

    @staticmethod
    def _is_newer(item: FeedItem, since: datetime) -> bool:
        published = parse_rss_date(item.published)
        return published is None or published > since

    async def health_check(self, context: FetchContext) -> bool:
        result = await self.fetch(context)
        return bool(result.items) or result.success
