"""
Digest Composer - turns a schedule slot into a rendered digest.

A slot covers ``[slot_time - period, slot_time)`` in fetch time. Composing
is read-only; whether a slot was already delivered is the delivery
gateway's concern.
"""
from datetime import datetime, timedelta

import structlog
from jinja2 import Template

from newsdesk.core.schedule import daily_digest_key, weekly_digest_key
from newsdesk.models.domain import (
    Article,
    ArticleFilter,
    DigestEntry,
    DigestKind,
    DigestPayload,
    DigestSlot,
)
from newsdesk.services.persistence import PersistenceGateway

logger = structlog.get_logger()

PERIODS = {
    DigestKind.DAILY: timedelta(days=1),
    DigestKind.WEEKLY: timedelta(days=7),
}

KEY_BUILDERS = {
    DigestKind.DAILY: daily_digest_key,
    DigestKind.WEEKLY: weekly_digest_key,
}


SUBJECT_TEMPLATE = Template(
    "{{ title }} - {{ label }} ({{ count }} item{{ '' if count == 1 else 's' }})"
)

TEXT_TEMPLATE = Template(
    """\
{{ title }}
{{ label }}
Window: {{ window_start }} to {{ window_end }} UTC
{% if not entries %}
No new items in this window.
{% endif %}
{%- for entry in entries %}
{{ loop.index }}. {{ entry.title }}
{%- if entry.category %}   [{{ entry.category.value }}]{% endif %}
{%- if entry.relevance_score is not none %}   relevance {{ '%.2f' % entry.relevance_score }}{% endif %}
{% if entry.summary %}   {{ entry.summary }}
{% endif %}
{%- for takeaway in entry.key_takeaways %}   - {{ takeaway }}
{% endfor %}
{%- if entry.url %}   {{ entry.url }}
{% endif %}
{%- endfor %}
""",
    keep_trailing_newline=True,
)

HTML_TEMPLATE = Template(
    """\
<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
         max-width: 720px; margin: 0 auto; padding: 20px; color: #1f2937; }
  .header { border-bottom: 2px solid #0f5db8; padding-bottom: 12px; margin-bottom: 16px; }
  .header h1 { margin: 0; font-size: 22px; }
  .header .window { font-size: 13px; color: #667085; margin-top: 6px; }
  .article { border: 1px solid #dbe3ee; border-radius: 10px; padding: 14px; margin-bottom: 12px; }
  .category { display: inline-block; background: #eaf2ff; color: #144a9e;
              padding: 2px 8px; border-radius: 999px; font-size: 12px; font-weight: 600; }
  .score { font-size: 12px; color: #667085; margin-left: 6px; }
  .article h3 { margin: 8px 0 6px; font-size: 17px; }
  .summary { font-size: 14px; line-height: 1.6; }
  .article a { color: #175cd3; text-decoration: none; font-size: 13px; }
  .empty { color: #667085; }
</style>
</head>
<body>
  <div class="header">
    <h1>{{ title }}</h1>
    <div class="window">{{ label }} | {{ window_start }} to {{ window_end }} UTC</div>
  </div>
  {% if not entries %}
  <p class="empty">No new items in this window.</p>
  {% endif %}
  {% for entry in entries %}
  <div class="article">
    {% if entry.category %}<span class="category">{{ entry.category.value }}</span>{% endif %}
    {% if entry.relevance_score is not none %}<span class="score">relevance {{ '%.2f' % entry.relevance_score }}</span>{% endif %}
    <h3>{{ entry.title }}</h3>
    {% if entry.summary %}<div class="summary">{{ entry.summary }}</div>{% endif %}
    {% if entry.key_takeaways %}
    <ul>
      {% for takeaway in entry.key_takeaways %}<li>{{ takeaway }}</li>{% endfor %}
    </ul>
    {% endif %}
    {% if entry.url %}<a href="{{ entry.url }}">Read original</a>{% endif %}
  </div>
  {% endfor %}
</body>
</html>
""",
    autoescape=True,
)


def digest_order_key(article: Article) -> tuple:
    """Relevance descending with unscored last, then newest first."""
    unscored = article.relevance_score is None
    return (
        unscored,
        -(article.relevance_score or 0.0),
        -article.published_at.timestamp(),
    )


class DigestComposer:
    """Builds digest payloads from the persisted article window."""

    def __init__(
        self,
        repository: PersistenceGateway,
        max_articles: int = 25,
        title: str = "Newsdesk",
    ):
        self.repository = repository
        self.max_articles = max_articles
        self.title = title

    def slot_for(self, kind: DigestKind, slot_time: datetime) -> DigestSlot:
        period = PERIODS[kind]
        return DigestSlot(
            kind=kind,
            digest_key=KEY_BUILDERS[kind](slot_time),
            slot_time=slot_time,
            window_start=slot_time - period,
            window_end=slot_time,
        )

    async def compose(self, slot: DigestSlot) -> DigestPayload:
        articles = await self.repository.query_window(
            slot.window_start,
            slot.window_end,
            ArticleFilter(),
            field="fetched_at",
        )
        selected = sorted(articles, key=digest_order_key)[: self.max_articles]
        entries = [self._entry(a) for a in selected]

        context = {
            "title": self.title,
            "label": self._label(slot),
            "window_start": slot.window_start.strftime("%Y-%m-%d %H:%M"),
            "window_end": slot.window_end.strftime("%Y-%m-%d %H:%M"),
            "entries": entries,
            "count": len(entries),
        }

        logger.info(
            "Digest composed",
            digest_key=slot.digest_key,
            candidates=len(articles),
            entries=len(entries),
        )

        return DigestPayload(
            slot=slot,
            subject=SUBJECT_TEMPLATE.render(**context),
            entries=entries,
            text_body=TEXT_TEMPLATE.render(**context),
            html_body=HTML_TEMPLATE.render(**context),
        )

    @staticmethod
    def _entry(article: Article) -> DigestEntry:
        return DigestEntry(
            fingerprint=article.fingerprint,
            title=article.title,
            url=article.primary_url,
            category=article.category,
            relevance_score=article.relevance_score,
            summary=article.summary or article.abstract,
            key_takeaways=list(article.key_takeaways),
            published_at=article.published_at,
        )

    @staticmethod
    def _label(slot: DigestSlot) -> str:
        if slot.kind == DigestKind.DAILY:
            return f"Daily digest for {slot.slot_time:%Y-%m-%d}"
        year, week, _ = slot.slot_time.isocalendar()
        return f"Weekly digest {year}-W{week:02d}"
