"""
Normalizer - maps each source's raw item shape onto an ArticleDraft.

Dispatch happens on the item's ``kind`` tag, so adding a source kind means
adding one mapping function, not a subclass.
"""
import html
import re
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from newsdesk.core.errors import MalformedItem
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import ArticleDraft, SourceKind
from newsdesk.services.deduplicator import compute_fingerprint
from newsdesk.services.ingestion.arxiv import extract_arxiv_id
from newsdesk.services.ingestion.base import ApiItem, FeedItem, RawItem, ScrapedItem
from newsdesk.services.ingestion.dates import parse_iso_date, parse_loose_date, parse_rss_date

TRACKING_PARAMS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "ref", "source", "via", "fbclid", "gclid", "mc_cid", "mc_eid",
}

DOI_PATTERN = re.compile(r"\b(10\.\d{4,9}/[^\s\"<>?#]+)", re.IGNORECASE)
MAX_ABSTRACT_CHARS = 4000


def normalize_title(title: str) -> str:
    """Trim and collapse whitespace. Keeps original casing for display."""
    return " ".join(title.split())


def title_key(title: str) -> str:
    """Comparison form of a title: whitespace-collapsed and case-folded."""
    return normalize_title(title).casefold()


def canonicalize_url(url: str) -> str:
    """Drop tracking parameters and fragments; lowercase scheme and host."""
    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return url.strip()

    params = [
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    ]
    path = parsed.path.rstrip("/") or "/"

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        "",
        urlencode(sorted(params)),
        "",
    ))


def clean_html(text: Optional[str]) -> str:
    """Strip HTML tags and entities from content."""
    if not text:
        return ""
    clean = re.sub(r"<[^>]+>", " ", text)
    clean = html.unescape(clean)
    return " ".join(clean.split())


def extract_doi(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if not value:
            continue
        match = DOI_PATTERN.search(value)
        if match:
            return match.group(1).rstrip(".").lower()
    return None


def resolve_identifier(
    arxiv_candidates: list[Optional[str]],
    doi_candidates: list[Optional[str]],
) -> Optional[str]:
    """
    Pick the cross-source identifier for an item.

    Only identifiers that mean the same thing in every source take part
    (arXiv IDs, DOIs). Feed-local GUIDs would split one paper into one
    record per feed, so they are never used.
    """
    for candidate in arxiv_candidates:
        arxiv_id = extract_arxiv_id(candidate)
        if arxiv_id:
            return f"arxiv:{arxiv_id}"

    doi = extract_doi(*doi_candidates)
    if doi:
        return f"doi:{doi}"
    return None


class Normalizer:
    """Turns RawItems into ArticleDrafts or rejects them with MalformedItem."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._mappers = {
            SourceKind.API: self._from_api,
            SourceKind.FEED: self._from_feed,
            SourceKind.SCRAPE: self._from_scrape,
        }

    def normalize(self, item: RawItem) -> ArticleDraft:
        mapper = self._mappers.get(item.kind)
        if mapper is None:
            raise MalformedItem(item.source_name, f"unknown source kind {item.kind!r}")
        try:
            return mapper(item)
        except ValueError as e:
            # Unparseable links or dates reject the item, never the cycle.
            raise MalformedItem(item.source_name, f"unparseable field: {e}") from e

    def _from_api(self, item: ApiItem) -> ArticleDraft:
        return self._build(
            source_name=item.source_name,
            kind=item.kind,
            title=item.title,
            abstract=item.summary,
            url=item.url,
            published_at=parse_iso_date(item.published) or parse_iso_date(item.updated),
            identifier=resolve_identifier([item.external_id, item.url], [item.doi]),
        )

    def _from_feed(self, item: FeedItem) -> ArticleDraft:
        return self._build(
            source_name=item.source_name,
            kind=item.kind,
            title=item.title,
            abstract=item.description,
            url=item.link or (item.guid if item.guid and item.guid.startswith("http") else None),
            published_at=parse_rss_date(item.published),
            identifier=resolve_identifier([item.link, item.guid], [item.guid, item.link]),
        )

    def _from_scrape(self, item: ScrapedItem) -> ArticleDraft:
        return self._build(
            source_name=item.source_name,
            kind=item.kind,
            title=item.title_text,
            abstract=item.body_text,
            url=item.url,
            published_at=parse_loose_date(item.date_text),
            # Teasers cite other papers; only the item's own link identifies it.
            identifier=resolve_identifier([item.url], [item.url]),
        )

    def _build(
        self,
        source_name: str,
        kind: SourceKind,
        title: Optional[str],
        abstract: Optional[str],
        url: Optional[str],
        published_at: Optional[datetime],
        identifier: Optional[str],
    ) -> ArticleDraft:
        display_title = normalize_title(clean_html(title))
        if not display_title:
            raise MalformedItem(source_name, "missing title")
        if published_at is None:
            raise MalformedItem(source_name, f"no resolvable publish date for {display_title!r}")

        key = title_key(display_title)
        body = clean_html(abstract)[:MAX_ABSTRACT_CHARS] or None

        return ArticleDraft(
            fingerprint=compute_fingerprint(key, published_at, identifier),
            title=display_title,
            title_key=key,
            abstract=body,
            identifier=identifier,
            source_urls={canonicalize_url(url)} if url else set(),
            source_types={kind},
            source_names={source_name},
            published_at=published_at,
            fetched_at=self.clock(),
        )
