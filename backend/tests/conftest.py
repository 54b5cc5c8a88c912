"""
Shared fixtures: temporary SQLite databases and article factories.
"""
from datetime import datetime, timedelta

import pytest

from newsdesk.core.timeutil import utcnow
from newsdesk.models.database import Database
from newsdesk.models.domain import Article, EnrichmentStatus, SourceKind
from newsdesk.services.persistence import PersistenceGateway


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/test.db"


@pytest.fixture
def open_gateway(db_url):
    """Async factory: a fresh gateway over an empty database."""
    async def _open(**kwargs) -> PersistenceGateway:
        database = Database(db_url)
        await database.create_tables()
        return PersistenceGateway(database, **kwargs)

    return _open


@pytest.fixture
def make_article():
    def _make(
        fingerprint: str = "fp-1",
        title: str = "Attention Is All You Need",
        published_at: datetime = datetime(2024, 1, 15, 12, 0),
        fetched_at: datetime = None,
        expires_in: timedelta = timedelta(days=90),
        source_urls: set = None,
        source_types: set = None,
        source_names: set = None,
        **overrides,
    ) -> Article:
        fetched = fetched_at or utcnow()
        fields = dict(
            fingerprint=fingerprint,
            title=title,
            source_urls=source_urls if source_urls is not None else {"https://arxiv.org/abs/1706.03762"},
            source_types=source_types if source_types is not None else {SourceKind.API},
            source_names=source_names if source_names is not None else {"arxiv"},
            published_at=published_at,
            fetched_at=fetched,
            last_seen_at=fetched,
            expires_at=utcnow() + expires_in,
            enrichment_status=EnrichmentStatus.PENDING,
        )
        fields.update(overrides)
        return Article(**fields)

    return _make
