"""
Bounded-attempt retry policy shared by enrichment, delivery and the scheduler.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential back-off with a hard attempt cap.

    The delay before attempt ``n + 1`` is ``base_delay * multiplier ** (n - 1)``
    seconds, capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 300.0

    def delay_for(self, attempt: int) -> timedelta:
        """Back-off to wait after the given (1-based) failed attempt."""
        if attempt < 1:
            return timedelta(0)
        seconds = self.base_delay * self.multiplier ** (attempt - 1)
        return timedelta(seconds=min(seconds, self.max_delay))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def _retrying(self, retry_on: tuple[type[BaseException], ...], label: str) -> AsyncRetrying:
        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Retrying call",
                call=label,
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(exc),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay,
                exp_base=self.multiplier,
                max=self.max_delay,
            ),
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        label: str = "call",
    ) -> T:
        """Run ``fn`` until it succeeds or attempts run out; re-raise the last error."""
        async for attempt in self._retrying(retry_on, label):
            with attempt:
                return await fn()
        raise RuntimeError("unreachable")  # pragma: no cover
