"""
Scheduler - drives collection and digest cycles from durable state.

Each schedule kind moves through idle -> due -> running -> idle, or
running -> failed -> (retry) when a cycle raises. State lives in the
store, so a restart resumes where the last process stopped: a slot is
marked complete only after its cycle returned.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from newsdesk.core.errors import PersistenceUnavailable, ScheduleCatchupAmbiguity
from newsdesk.core.retry import RetryPolicy
from newsdesk.core.schedule import Cadence
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import ScheduleKind, ScheduleState, ScheduleStatus
from newsdesk.services.persistence import PersistenceGateway

logger = structlog.get_logger()

CycleRunner = Callable[[datetime], Awaitable[Any]]


@dataclass
class ScheduledCycle:
    """One schedule kind: when it fires and what it runs."""
    kind: ScheduleKind
    cadence: Cadence
    runner: CycleRunner


class Scheduler:
    """
    Fires cycles on their cadence, at most one in flight per kind.

    Features:
    - Durable per-kind state (survives restarts)
    - Catch-up of the latest missed slot only
    - Bounded retries with exponential back-off, then abandonment
    """

    def __init__(
        self,
        repository: PersistenceGateway,
        cycles: list[ScheduledCycle],
        retry_policy: Optional[RetryPolicy] = None,
        run_on_startup: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.cycles = {c.kind: c for c in cycles}
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, base_delay=60.0, max_delay=3600.0)
        self.run_on_startup = run_on_startup
        self.clock = clock

        self._states: dict[ScheduleKind, ScheduleState] = {}
        self._tasks: dict[ScheduleKind, asyncio.Task] = {}
        self._tick_lock = asyncio.Lock()
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, now: Optional[datetime] = None) -> list[ScheduleKind]:
        """Load state, resolve catch-up, and run the first tick."""
        if self._started:
            logger.warning("Scheduler already started")
            return []

        now = now or self.clock()
        for kind, cycle in self.cycles.items():
            state = await self.repository.load_schedule_state(kind)

            if state.status in (ScheduleStatus.RUNNING, ScheduleStatus.DUE):
                # The previous process died mid-cycle; the slot is still open.
                logger.warning(
                    "Found interrupted cycle",
                    kind=kind.value,
                    pending_slot=state.pending_slot.isoformat() if state.pending_slot else None,
                )
                state.status = ScheduleStatus.IDLE

            if state.last_completed_slot is None and state.pending_slot is None:
                if not self.run_on_startup:
                    state.last_completed_slot = cycle.cadence.latest_slot(now)
                    logger.info(
                        "No schedule history, starting from current slot",
                        kind=kind.value,
                        baseline=state.last_completed_slot.isoformat(),
                    )
            elif state.last_completed_slot is not None:
                missed = cycle.cadence.slots_between(state.last_completed_slot, now)
                if missed > 1:
                    warning = ScheduleCatchupAmbiguity(kind.value, missed)
                    logger.warning(
                        "Multiple slots missed, catching up latest only",
                        kind=kind.value,
                        missed=missed,
                        error=str(warning),
                    )

            self._states[kind] = state
            await self._save(state)

        self._started = True
        logger.info(
            "Scheduler started",
            cycles={k.value: c.cadence.describe() for k, c in self.cycles.items()},
        )
        return await self.tick(now)

    async def stop(self) -> None:
        """Cancel in-flight cycles. Work already committed stays committed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._started = False
        logger.info("Scheduler stopped", cancelled=len(tasks))

    async def wait_idle(self) -> None:
        """Wait for every in-flight cycle to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # =========================================================================
    # Ticking
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> list[ScheduleKind]:
        """Start every due cycle. Returns the kinds that were launched."""
        now = now or self.clock()
        launched = []
        async with self._tick_lock:
            for kind, cycle in self.cycles.items():
                slot = await self._due_slot(kind, cycle, now)
                if slot is None:
                    continue
                await self._launch(kind, slot)
                launched.append(kind)
        return launched

    async def _due_slot(
        self,
        kind: ScheduleKind,
        cycle: ScheduledCycle,
        now: datetime,
    ) -> Optional[datetime]:
        if kind in self._tasks:
            return None

        state = self._state(kind)
        latest = cycle.cadence.latest_slot(now)

        if state.last_completed_slot is not None and latest <= state.last_completed_slot:
            return None
        if state.abandoned_slot is not None and latest <= state.abandoned_slot:
            return None

        if state.status == ScheduleStatus.FAILED:
            if state.pending_slot == latest:
                if state.next_retry_at is not None and now < state.next_retry_at:
                    return None
            else:
                logger.warning(
                    "Newer slot arrived while retrying, moving on",
                    kind=kind.value,
                    dropped_slot=state.pending_slot.isoformat() if state.pending_slot else None,
                    slot=latest.isoformat(),
                )
                state.attempts = 0
                state.next_retry_at = None

        state.status = ScheduleStatus.DUE
        state.pending_slot = latest
        return latest

    async def _launch(
        self,
        kind: ScheduleKind,
        slot: datetime,
        propagate: bool = False,
    ) -> asyncio.Task:
        state = self._state(kind)
        state.status = ScheduleStatus.RUNNING
        state.pending_slot = slot
        await self._save(state)

        logger.info("Cycle started", kind=kind.value, slot=slot.isoformat(), attempt=state.attempts + 1)
        task = asyncio.create_task(self._run_cycle(kind, slot, propagate), name=f"cycle:{kind.value}")
        self._tasks[kind] = task
        return task

    async def _run_cycle(self, kind: ScheduleKind, slot: datetime, propagate: bool) -> Any:
        cycle = self.cycles[kind]
        try:
            result = await cycle.runner(slot)
        except asyncio.CancelledError:
            logger.warning("Cycle cancelled", kind=kind.value, slot=slot.isoformat())
            raise
        except Exception as e:
            logger.error("Cycle failed", kind=kind.value, slot=slot.isoformat(), error=repr(e), exc_info=True)
            await self._record_failure(kind, slot, e)
            if propagate:
                raise
            return None
        else:
            await self._record_success(kind, slot)
            return result
        finally:
            self._tasks.pop(kind, None)

    # =========================================================================
    # State transitions
    # =========================================================================

    async def _record_success(self, kind: ScheduleKind, slot: datetime) -> None:
        state = self._state(kind)
        state.status = ScheduleStatus.IDLE
        if state.last_completed_slot is None or slot > state.last_completed_slot:
            state.last_completed_slot = slot
        state.last_completed_at = self.clock()
        state.pending_slot = None
        state.attempts = 0
        state.next_retry_at = None
        state.last_error = None
        await self._save(state)
        logger.info("Cycle completed", kind=kind.value, slot=slot.isoformat())

    async def _record_failure(self, kind: ScheduleKind, slot: datetime, error: Exception) -> None:
        state = self._state(kind)
        now = self.clock()
        state.attempts += 1
        state.last_error = repr(error)

        if self.retry_policy.exhausted(state.attempts):
            state.status = ScheduleStatus.IDLE
            state.abandoned_slot = slot
            state.pending_slot = None
            state.next_retry_at = None
            logger.error(
                "Cycle abandoned after retries, operator action required",
                kind=kind.value,
                slot=slot.isoformat(),
                attempts=state.attempts,
                error=state.last_error,
            )
            state.attempts = 0
        else:
            state.status = ScheduleStatus.FAILED
            state.pending_slot = slot
            state.next_retry_at = now + self.retry_policy.delay_for(state.attempts)
            logger.warning(
                "Cycle will be retried",
                kind=kind.value,
                slot=slot.isoformat(),
                attempts=state.attempts,
                next_retry_at=state.next_retry_at.isoformat(),
            )
        await self._save(state)

    async def _save(self, state: ScheduleState) -> None:
        try:
            await self.repository.save_schedule_state(state)
        except PersistenceUnavailable as e:
            # In-memory state stays authoritative until the store is back.
            logger.error("Could not persist schedule state", kind=state.kind.value, error=str(e))

    def _state(self, kind: ScheduleKind) -> ScheduleState:
        if kind not in self._states:
            self._states[kind] = ScheduleState(kind=kind)
        return self._states[kind]

    # =========================================================================
    # On-demand & status
    # =========================================================================

    async def refresh(self) -> None:
        """Reload persisted state for idle kinds without starting anything."""
        for kind in self.cycles:
            if kind not in self._tasks:
                self._states[kind] = await self.repository.load_schedule_state(kind)

    def is_running(self, kind: ScheduleKind) -> bool:
        return kind in self._tasks

    def last_completed_at(self, kind: ScheduleKind) -> Optional[datetime]:
        """When the last successful cycle of this kind finished."""
        return self._state(kind).last_completed_at

    async def run_now(self, kind: ScheduleKind) -> Any:
        """
        Run a cycle for the current slot immediately and wait for it.

        Returns None without running when a cycle of this kind is already
        in flight. Failures are recorded like scheduled failures and
        re-raised to the caller.
        """
        if kind not in self.cycles:
            raise ValueError(f"No cycle configured for {kind.value}")

        async with self._tick_lock:
            if kind in self._tasks:
                logger.info("Cycle already running, not starting another", kind=kind.value)
                return None
            if not self._started:
                self._states[kind] = await self.repository.load_schedule_state(kind)
            slot = self.cycles[kind].cadence.latest_slot(self.clock())
            task = await self._launch(kind, slot, propagate=True)
        return await task

    def status(self) -> dict:
        now = self.clock()
        report = {}
        for kind, cycle in self.cycles.items():
            state = self._state(kind)
            report[kind.value] = {
                "schedule": cycle.cadence.describe(),
                "status": state.status.value,
                "running": kind in self._tasks,
                "last_completed_slot": _iso(state.last_completed_slot),
                "last_completed_at": _iso(state.last_completed_at),
                "next_slot": _iso(cycle.cadence.next_slot(now)),
                "attempts": state.attempts,
                "next_retry_at": _iso(state.next_retry_at),
                "last_error": state.last_error,
                "abandoned_slot": _iso(state.abandoned_slot),
            }
        return report


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
