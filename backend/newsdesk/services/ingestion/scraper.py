"""
Page-scraping connector for sources without a feed or API.

Each configured listing page is fetched and split into items with CSS
selectors. Only raw text is extracted here; dates and titles are
resolved by the normalizer.
"""

import asyncio
from datetime import datetime
from typing import Optional
from urllib.parse import urljoin
import logging

from bs4 import BeautifulSoup

from newsdesk.config import ScrapePageConfig
from newsdesk.models.domain import SourceKind
from newsdesk.services.ingestion.base import (
    FetchContext,
    FetchResult,
    ScrapedItem,
    SourceConfig,
    SourceConnector,
    Stopwatch,
)
from newsdesk.services.ingestion.dates import parse_loose_date
from newsdesk.services.ingestion.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    ),
    "Accept-Language": "en;q=0.9",
}


def create_scrape_config(max_items: int = 30) -> SourceConfig:
    return SourceConfig(
        name="scrape",
        kind=SourceKind.SCRAPE,
        rate_limit_requests=2,
        rate_limit_period=1,
        max_results=max_items,
    )


def _clean_text(text: Optional[str], max_len: int = 2000) -> str:
    if not text:
        return ""
    return " ".join(text.split())[:max_len]


class ScrapeConnector(SourceConnector):
    """Scrapes listing pages with BeautifulSoup."""

    def __init__(
        self,
        pages: list[ScrapePageConfig],
        config: Optional[SourceConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(config or create_scrape_config())
        self.pages = pages
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

        tasks = [self._scrape_page(context, page) for page in self.pages]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for page, outcome in zip(self.pages, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"[WEB] {page.name} failed: {outcome!r}")
                result.errors.append(f"{page.name}: {outcome!r}")
                continue

            items = outcome
            if since is not None:
                items = [i for i in items if self._is_newer(i, since)]
            result.items.extend(items)

        result.duration_seconds = watch.elapsed
        return result

    async def _scrape_page(self, context: FetchContext, page: ScrapePageConfig) -> list[ScrapedItem]:
        await self.rate_limiter.acquire(self.name, timeout=None)
        logger.info(f"[WEB] Fetching {page.name}: {page.url}")

        response = await context.client.get(
            page.url,
            headers=HEADERS,
            timeout=context.request_timeout,
            follow_redirects=True,
        )
        response.raise_for_status()
        return self.parse(response.text, page)

    def parse(self, html: str, page: ScrapePageConfig) -> list[ScrapedItem]:
        """Split a listing page into raw items using the page's selectors."""
        soup = BeautifulSoup(html, "html.parser")
        items: list[ScrapedItem] = []
        seen_links: set[str] = set()

        for block in soup.select(page.item_selector):
            title_el = block.select_one(page.title_selector) or block
            title = _clean_text(title_el.get_text(" "), max_len=500)
            if not title:
                continue

            link = None
            link_el = block if block.name == "a" else block.select_one(page.link_selector)
            if link_el is not None and link_el.get("href"):
                link = urljoin(page.url, link_el["href"])
            if link and link in seen_links:
                continue
            if link:
                seen_links.add(link)

            date_text = None
            if page.date_selector:
                date_el = block.select_one(page.date_selector)
                if date_el is not None:
                    date_text = date_el.get("datetime") or date_el.get_text(" ")

            body = ""
            if page.text_selector:
                text_el = block.select_one(page.text_selector)
                if text_el is not None:
                    body = _clean_text(text_el.get_text(" "))

            items.append(ScrapedItem(
                source_name=page.name,
                page_url=page.url,
                url=link,
                title_text=title,
                body_text=body,
                date_text=_clean_text(date_text, max_len=100) or None,
            ))

            if len(items) >= self.config.max_results:
                break

        return items

    @staticmethod
    def _is_newer(item: ScrapedItem, since: datetime) -> bool:
        published = parse_loose_date(item.date_text)
        return published is None or published.date() >= since.date()
