"""
arXiv API integration.

arXiv provides free access to preprints in physics, mathematics,
computer science, and other fields.

API Documentation: https://info.arxiv.org/help/api/basics.html
"""

import re
from datetime import datetime
from typing import Optional
from xml.etree import ElementTree
import logging

import httpx

from newsdesk.models.domain import SourceKind
from newsdesk.services.ingestion.base import (
    ApiItem,
    FetchContext,
    FetchResult,
    SourceConfig,
    SourceConnector,
    Stopwatch,
)
from newsdesk.services.ingestion.dates import parse_iso_date
from newsdesk.services.ingestion.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"
ARXIV_NS = "{http://arxiv.org/schemas/atom}"

DEFAULT_CATEGORIES = ["cs.AI", "cs.LG", "cs.CL"]


def create_arxiv_config(max_results: int = 100) -> SourceConfig:
    """Create default arXiv source configuration."""
    return SourceConfig(
        name="arxiv",
        kind=SourceKind.API,
        base_url="http://export.arxiv.org/api/query",
        rate_limit_requests=1,
        rate_limit_period=3,
        max_results=max_results,
    )


class ArxivConnector(SourceConnector):
    """
    Structured-API connector for arXiv.

    Queries the Atom API for the newest submissions in the configured
    categories.
    """

    def __init__(
        self,
        categories: Optional[list[str]] = None,
        config: Optional[SourceConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(config or create_arxiv_config())
        self.categories = categories or list(DEFAULT_CATEGORIES)
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.rate_limiter.set_limit(
            self.name, self.config.rate_limit_requests, self.config.rate_limit_period
        )

    def build_query(self) -> dict:
        cat_query = " OR ".join(f"cat:{cat}" for cat in self.categories)
        return {
            "search_query": cat_query,
            "start": 0,
            "max_results": self.config.max_results,
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }

    async def fetch(
        self,
        context: FetchContext,
        since: Optional[datetime] = None,
    ) -> FetchResult:
        result = self._result()
        watch = Stopwatch()

        if not await self.rate_limiter.acquire(self.name, timeout=context.request_timeout):
            result.errors.append("rate limit wait exceeded request timeout")
            return result

        try:
            response = await context.client.get(
                self.config.base_url,
                params=self.build_query(),
                timeout=context.request_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"arXiv API error: {e!r}")
            result.errors.append(f"transport error: {e!r}")
            result.duration_seconds = watch.elapsed
            return result

        try:
            items = self.parse_feed(response.text)
        except ElementTree.ParseError as e:
            logger.error(f"Failed to parse arXiv XML: {e}")
            result.errors.append(f"unparseable response: {e}")
            items = []

        if since is not None:
            items = [i for i in items if self._is_newer(i, since)]

        result.items.extend(items)
        result.duration_seconds = watch.elapsed
        return result

    def parse_feed(self, xml_content: str) -> list[ApiItem]:
        """Parse an arXiv Atom feed into ApiItems."""
        root = ElementTree.fromstring(xml_content)
        items = []

        for entry in root.findall(f"{ATOM_NS}entry"):
            try:
                item = self._parse_entry(entry)
            except Exception as e:
                logger.warning(f"Failed to parse arXiv entry: {e}")
                continue
            if item:
                items.append(item)

        return items

    def _parse_entry(self, entry: ElementTree.Element) -> Optional[ApiItem]:
        """Parse a single Atom entry."""
        entry_id = entry.findtext(f"{ATOM_NS}id", "")
        arxiv_id = extract_arxiv_id(entry_id)
        if not arxiv_id:
            return None

        title = " ".join(entry.findtext(f"{ATOM_NS}title", "").split())
        summary = " ".join(entry.findtext(f"{ATOM_NS}summary", "").split())

        authors = []
        for author in entry.findall(f"{ATOM_NS}author"):
            name = author.findtext(f"{ATOM_NS}name")
            if name:
                authors.append(name)

        categories = [
            c.get("term") for c in entry.findall(f"{ATOM_NS}category") if c.get("term")
        ]

        return ApiItem(
            source_name=self.name,
            external_id=arxiv_id,
            title=title,
            url=f"https://arxiv.org/abs/{arxiv_id}",
            summary=summary,
            published=entry.findtext(f"{ATOM_NS}published"),
            updated=entry.findtext(f"{ATOM_NS}updated"),
            doi=entry.findtext(f"{ARXIV_NS}doi"),
            authors=authors,
            categories=categories,
        )

    @staticmethod
    def _is_newer(item: ApiItem, since: datetime) -> bool:
        published = parse_iso_date(item.published)
        # Undated entries are kept; the normalizer rejects them with a reason.
        return published is None or published > since


def extract_arxiv_id(value: Optional[str]) -> Optional[str]:
    """Extract a version-less arXiv ID from an entry ID, URL or GUID."""
    if not value:
        return None

    # http://arxiv.org/abs/2401.12345v1, https://arxiv.org/pdf/2401.12345v2
    match = re.search(r"arxiv\.org/(?:abs|pdf)/([^\s?#]+?)(?:v\d+)?(?:\.pdf)?$", value)
    if match:
        return match.group(1)

    # Hugging Face paper pages are keyed by arXiv ID
    match = re.search(r"huggingface\.co/papers/(\d{4}\.\d{4,5})", value)
    if match:
        return match.group(1)

    # oai:arXiv.org:2401.12345, arXiv:2401.12345v1
    if "arxiv" in value.lower():
        match = re.search(r"(\d{4}\.\d{4,5})(?:v\d+)?", value)
        if match:
            return match.group(1)

    return None
