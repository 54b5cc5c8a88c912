"""
Source Collector - runs every enabled connector for one collection cycle.

Connectors run concurrently with a bounded number of in-flight fetches
and a wall-clock budget each. A slow or failing connector produces an
error marker on its FetchResult and never cancels its siblings.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional
import logging

import httpx

from newsdesk.core.errors import SourceUnavailable
from newsdesk.services.ingestion.base import FetchContext, FetchResult, SourceConnector

logger = logging.getLogger(__name__)

ResultHandler = Callable[[FetchResult], Awaitable[None]]


class SourceCollector:
    """Fans a collection cycle out over all connectors."""

    def __init__(
        self,
        connectors: list[SourceConnector],
        connector_timeout: float = 60.0,
        request_timeout: float = 20.0,
        max_concurrent: int = 4,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.connectors = connectors
        self.connector_timeout = connector_timeout
        self.request_timeout = request_timeout
        self.max_concurrent = max_concurrent
        self._client = client

        logger.info(f"Initialized collector with {len(self.connectors)} connectors")

    async def collect(
        self,
        since: Optional[datetime] = None,
        on_result: Optional[ResultHandler] = None,
    ) -> list[FetchResult]:
        """
        Fetch from all connectors concurrently.

        Args:
            since: Only fetch items newer than this
            on_result: Awaited with each connector's result as soon as it lands

        Returns:
            One FetchResult per connector, in connector order
        """
        if self._client is not None:
            return await self._collect_with(self._client, since, on_result)

        async with httpx.AsyncClient(proxy=None) as client:
            return await self._collect_with(client, since, on_result)

    async def _collect_with(
        self,
        client: httpx.AsyncClient,
        since: Optional[datetime],
        on_result: Optional[ResultHandler],
    ) -> list[FetchResult]:
        context = FetchContext(client=client, request_timeout=self.request_timeout)
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def run(connector: SourceConnector) -> FetchResult:
            async with semaphore:
                result = await self._fetch_one(connector, context, since)
            if on_result is not None:
                await on_result(result)
            return result

        outcomes = await asyncio.gather(
            *(run(c) for c in self.connectors),
            return_exceptions=True,
        )

        results = []
        for connector, outcome in zip(self.connectors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                # The fetch itself never raises; this is the result handler failing.
                logger.error(f"Result handling failed for {connector.name}: {outcome!r}")
                outcome = FetchResult(
                    source_name=connector.name,
                    kind=connector.kind,
                    errors=[f"result handling failed: {outcome!r}"],
                )
            results.append(outcome)
        return results

    async def _fetch_one(
        self,
        connector: SourceConnector,
        context: FetchContext,
        since: Optional[datetime],
    ) -> FetchResult:
        try:
            result = await asyncio.wait_for(
                connector.fetch(context, since),
                timeout=self.connector_timeout,
            )
        except asyncio.TimeoutError:
            error = SourceUnavailable(connector.name, f"timed out after {self.connector_timeout:.0f}s")
            result = FetchResult(source_name=connector.name, kind=connector.kind, errors=[str(error)])
        except Exception as e:
            error = SourceUnavailable(connector.name, repr(e))
            result = FetchResult(source_name=connector.name, kind=connector.kind, errors=[str(error)])

        if result.success:
            logger.info(str(result))
        else:
            logger.warning(str(result) + " " + "; ".join(result.errors))
        return result

    async def health_check(self) -> dict[str, bool]:
        """Check health of all connectors."""
        results = {}

        async with httpx.AsyncClient(proxy=None) as client:
            context = FetchContext(client=client, request_timeout=self.request_timeout)
            for connector in self.connectors:
                try:
                    results[connector.name] = await asyncio.wait_for(
                        connector.health_check(context),
                        timeout=self.connector_timeout,
                    )
                except Exception as e:
                    logger.error(f"Health check failed for {connector.name}: {e!r}")
                    results[connector.name] = False

        return results

    def get_source_stats(self) -> dict:
        """Get statistics about configured connectors."""
        return {
            "total_sources": len(self.connectors),
            "sources": [
                {"name": c.name, "kind": c.kind.value, "max_results": c.config.max_results}
                for c in self.connectors
            ],
        }
