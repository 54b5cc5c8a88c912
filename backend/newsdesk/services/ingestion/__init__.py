"""
Source connectors for Newsdesk.

This module provides connectors to fetch raw items from various sources:
- Structured research APIs (arXiv)
- RSS/Atom feeds
- Scraped listing pages
- Rate limiting and concurrent collection
"""

from newsdesk.services.ingestion.base import (
    ApiItem,
    FeedItem,
    FetchContext,
    FetchResult,
    RawItem,
    ScrapedItem,
    SourceConfig,
    SourceConnector,
)
from newsdesk.services.ingestion.rate_limiter import RateLimiter
from newsdesk.services.ingestion.arxiv import ArxivConnector
from newsdesk.services.ingestion.feeds import FeedConnector, FeedSpec
from newsdesk.services.ingestion.scraper import ScrapeConnector
from newsdesk.services.ingestion.collector import SourceCollector

__all__ = [
    "ApiItem",
    "FeedItem",
    "ScrapedItem",
    "RawItem",
    "FetchContext",
    "FetchResult",
    "SourceConfig",
    "SourceConnector",
    "RateLimiter",
    "ArxivConnector",
    "FeedConnector",
    "FeedSpec",
    "ScrapeConnector",
    "SourceCollector",
]
