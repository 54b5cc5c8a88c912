"""
Enrichment service using LLMs (Claude or GPT).

Attaches a summary, key takeaways, a category from the fixed taxonomy and
a relevance score to each article. Enrichment is best-effort: a failed
call leaves the article persisted and marked for another attempt.
"""
import asyncio
import json
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from newsdesk.config import Settings
from newsdesk.core.errors import EnrichmentFailed
from newsdesk.core.retry import RetryPolicy
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import Article, Category, EnrichmentStatus

logger = structlog.get_logger()

MAX_TAKEAWAYS = 5

CATEGORY_ALIASES = {
    "research": Category.RESEARCH_PAPER,
    "paper": Category.RESEARCH_PAPER,
    "research-paper": Category.RESEARCH_PAPER,
    "preprint": Category.RESEARCH_PAPER,
    "academic": Category.RESEARCH_PAPER,
    "product": Category.PRODUCT_NEWS,
    "product-launch": Category.PRODUCT_NEWS,
    "release": Category.PRODUCT_NEWS,
    "announcement": Category.PRODUCT_NEWS,
    "news": Category.PRODUCT_NEWS,
    "tool": Category.TOOLING,
    "tools": Category.TOOLING,
    "library": Category.TOOLING,
    "framework": Category.TOOLING,
    "open-source": Category.TOOLING,
    "developer-tools": Category.TOOLING,
    "business": Category.INDUSTRY,
    "funding": Category.INDUSTRY,
    "industry-news": Category.INDUSTRY,
    "regulation": Category.POLICY,
    "government": Category.POLICY,
    "law": Category.POLICY,
}


def map_category(label: Any) -> Category:
    """Map free-form collaborator output onto the fixed taxonomy."""
    if not isinstance(label, str):
        return Category.OTHER
    key = "-".join(label.strip().lower().replace("_", " ").split())
    try:
        return Category(key)
    except ValueError:
        return CATEGORY_ALIASES.get(key, Category.OTHER)


def clamp_score(value: Any) -> float:
    """Coerce a collaborator score into [0, 1]. Garbage becomes 0.0."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return max(0.0, min(1.0, score))


def truncate_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words]).rstrip(",;:") + "..."


def parse_enrichment(raw: str, max_words: int) -> dict:
    """Parse the collaborator's JSON reply into enrichment fields."""
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        raise EnrichmentFailed("response contained no JSON object")
    try:
        data = json.loads(raw[start:end + 1])
    except json.JSONDecodeError as e:
        raise EnrichmentFailed(f"invalid JSON in response: {e}") from e

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise EnrichmentFailed("response missing summary")

    takeaways = data.get("key_takeaways") or data.get("takeaways") or []
    if not isinstance(takeaways, list):
        takeaways = [takeaways]
    takeaways = [" ".join(str(t).split()) for t in takeaways if str(t).strip()]

    return {
        "summary": truncate_words(summary, max_words),
        "key_takeaways": takeaways[:MAX_TAKEAWAYS],
        "category": map_category(data.get("category")),
        "relevance_score": clamp_score(data.get("relevance", data.get("relevance_score"))),
    }


# =============================================================================
# Providers
# =============================================================================

class EnrichmentProvider(ABC):
    """The AI-summarization collaborator."""

    name: str = "provider"

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the raw model reply for a prompt."""
        pass


class AnthropicProvider(EnrichmentProvider):
    name = "anthropic"
    default_model = "claude-3-5-haiku-latest"  # Fast and cheap for summaries

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model or self.default_model

    async def complete(self, prompt: str) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=600,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text.strip()


class OpenAIProvider(EnrichmentProvider):
    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model or self.default_model

    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=600,
            messages=[{"role": "user", "content": prompt}],
        )
        return (response.choices[0].message.content or "").strip()


def build_provider(settings: Settings) -> Optional[EnrichmentProvider]:
    """Pick a provider from the configured keys, or None when disabled."""
    if not settings.enrichment_enabled:
        return None
    if settings.anthropic_api_key:
        return AnthropicProvider(settings.anthropic_api_key, settings.enrichment_model)
    if settings.openai_api_key:
        return OpenAIProvider(settings.openai_api_key, settings.enrichment_model)
    return None


# =============================================================================
# Enricher
# =============================================================================

class Enricher:
    """
    Service for enriching articles with AI-derived metadata.

    Each call is bounded by a timeout and a retry policy. The result is
    always an article that can be persisted.
    """

    def __init__(
        self,
        provider: Optional[EnrichmentProvider],
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 5,
        max_words: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2)
        self.max_concurrency = max_concurrency
        self.max_words = max_words
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def enrich(self, article: Article) -> Article:
        """Return the article enriched, or marked failed when the call fails."""
        if self.provider is None:
            return article

        try:
            fields = await self.retry_policy.call(
                lambda: self._request(article),
                retry_on=(EnrichmentFailed,),
                label=f"enrich:{article.fingerprint[:12]}",
            )
        except EnrichmentFailed as e:
            logger.warning(
                "Enrichment failed",
                fingerprint=article.fingerprint,
                provider=self.provider.name,
                error=str(e),
            )
            if article.is_enriched:
                # Keep the stale enrichment rather than downgrading it.
                return article
            return article.model_copy(update={
                "enrichment_status": EnrichmentStatus.FAILED,
                "enrichment_error": str(e),
            })

        return article.model_copy(update={
            **fields,
            "enrichment_status": EnrichmentStatus.ENRICHED,
            "enrichment_error": None,
            "enriched_at": self.clock(),
        })

    async def enrich_many(
        self,
        articles: list[Article],
        on_result: Optional[Callable[[Article], Awaitable[None]]] = None,
    ) -> list[Article]:
        """
        Enrich articles with bounded concurrency, preserving order.

        ``on_result`` is awaited with each article as soon as its own
        enrichment finishes, so callers can persist it without waiting
        for the rest of the batch.
        """
        if not articles or self.provider is None:
            return list(articles)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(article: Article) -> Article:
            async with semaphore:
                enriched = await self.enrich(article)
            if on_result is not None:
                await on_result(enriched)
            return enriched

        return list(await asyncio.gather(*(run(a) for a in articles)))

    async def _request(self, article: Article) -> dict:
        prompt = self._build_prompt(article)
        try:
            raw = await asyncio.wait_for(self.provider.complete(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise EnrichmentFailed(f"timed out after {self.timeout:.0f}s") from e
        except Exception as e:
            raise EnrichmentFailed(f"{self.provider.name} error: {e!r}") from e
        return parse_enrichment(raw, self.max_words)

    def _build_prompt(self, article: Article) -> str:
        """Build the enrichment prompt."""
        categories = ", ".join(c.value for c in Category)
        return f"""You are triaging AI research papers and news for a technical digest.
Read the item below and reply with ONLY a JSON object with these keys:
  "summary": 2-3 plain sentences, at most {self.max_words} words, stating the key finding or news
  "key_takeaways": a list of 2-4 short strings
  "category": one of [{categories}]
  "relevance": a number between 0 and 1 for how much a practitioner should care

Title: {article.title}

Abstract/Content:
{article.abstract or 'No abstract available.'}
"""
