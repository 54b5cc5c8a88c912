"""
Services layer - the pipeline stages of Newsdesk.

1. Ingestion (ingestion/):
   - Source connectors for research APIs, RSS/Atom feeds and scraped pages
   - Concurrent collection with per-connector timeouts

2. Normalizer (normalizer.py):
   - Maps each raw item shape onto one ArticleDraft

3. Deduplicator (deduplicator.py):
   - Fingerprints and merges duplicate coverage

4. Enrichment (enrichment.py):
   - LLM-powered summary, takeaways, category and relevance

5. Persistence (persistence.py):
   - Idempotent upserts, windowed reads, retention, delivery log

6. Scheduler (scheduler.py):
   - Durable cadence state, catch-up and retries

7. Digest & Delivery (digest.py, delivery.py):
   - Renders digests and delivers each slot at most once
"""
