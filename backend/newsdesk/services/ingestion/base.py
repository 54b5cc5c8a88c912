"""
Base classes and raw item shapes for source connectors.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

import httpx

from newsdesk.models.domain import SourceKind


# =============================================================================
# Raw items - one variant per source kind, tagged by ``kind``
# =============================================================================

@dataclass
class ApiItem:
    """An entry returned by a structured research API (arXiv)."""
    source_name: str
    external_id: str
    title: str
    url: str
    summary: str = ""
    published: Optional[str] = None
    updated: Optional[str] = None
    doi: Optional[str] = None
    authors: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    kind: SourceKind = field(default=SourceKind.API, init=False)


@dataclass
class FeedItem:
    """An RSS item or Atom entry."""
    source_name: str
    feed_url: str
    title: str
    link: Optional[str] = None
    guid: Optional[str] = None
    description: str = ""
    published: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    kind: SourceKind = field(default=SourceKind.FEED, init=False)


@dataclass
class ScrapedItem:
    """Text extracted from one block of a scraped listing page."""
    source_name: str
    page_url: str
    url: Optional[str]
    title_text: str
    body_text: str = ""
    date_text: Optional[str] = None
    kind: SourceKind = field(default=SourceKind.SCRAPE, init=False)


RawItem = Union[ApiItem, FeedItem, ScrapedItem]


# =============================================================================
# Connector contract
# =============================================================================

@dataclass
class SourceConfig:
    """Configuration for a data source."""
    name: str
    kind: SourceKind
    base_url: str = ""
    rate_limit_requests: int = 60
    rate_limit_period: int = 60  # seconds
    max_results: int = 100
    enabled: bool = True


@dataclass
class FetchContext:
    """Shared per-cycle resources handed to every connector."""
    client: httpx.AsyncClient
    request_timeout: float = 20.0


@dataclass
class FetchResult:
    """Items from one connector plus any error markers.

    A result with both items and errors is a partial failure.
    """
    source_name: str
    kind: SourceKind
    items: list[RawItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def partial(self) -> bool:
        return bool(self.errors) and bool(self.items)

    def __str__(self) -> str:
        if self.success:
            status = "ok"
        elif self.partial:
            status = "partial"
        else:
            status = "failed"
        return (
            f"[{status}] {self.source_name}: items={len(self.items)}, "
            f"errors={len(self.errors)}, time={self.duration_seconds:.1f}s"
        )


class SourceConnector(ABC):
    """
    Abstract base class for source connectors.

    Each connector fetches raw items from one kind of source and never
    raises for transport problems: failures come back as error markers
    on the FetchResult so sibling connectors keep running.
    """

    def __init__(self, config: SourceConfig):
        self.config = config
        self.name = config.name

    @property
    def kind(self) -> SourceKind:
        return self.config.kind

    @abstractmethod
    async def fetch(
        self,
        context: FetchContext,
        since: Optional[datetime] = None,
    ) -> FetchResult:
        """
        Fetch items published after ``since``.

        Args:
            context: Shared HTTP client and request timeout
            since: Only return items newer than this (naive UTC)

        Returns:
            FetchResult with zero or more items and error markers
        """
        pass

    async def health_check(self, context: FetchContext) -> bool:
        """Check if the source is accessible."""
        result = await self.fetch(context)
        return result.success

    def _result(self) -> FetchResult:
        return FetchResult(source_name=self.name, kind=self.kind)


class Stopwatch:
    def __init__(self):
        self._start = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start
