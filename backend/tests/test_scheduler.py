"""
Tests for the durable scheduler.

Time is driven by a fake clock; schedule state lives in a temporary SQLite
database so restarts can be simulated with a second Scheduler instance.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from newsdesk.core.retry import RetryPolicy
from newsdesk.core.schedule import DailyCadence, IntervalCadence
from newsdesk.jobs.digest import DigestJob, DigestOutcome
from newsdesk.models.domain import DigestKind, ScheduleKind, ScheduleState, ScheduleStatus
from newsdesk.services.delivery import DeliveryGateway, DigestTransport
from newsdesk.services.digest import DigestComposer
from newsdesk.services.scheduler import ScheduledCycle, Scheduler


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def daily_cycle(runner) -> ScheduledCycle:
    return ScheduledCycle(ScheduleKind.DAILY_DIGEST, DailyCadence("07:30"), runner)


class TestCatchUp:
    def test_downtime_over_slot_runs_exactly_once(self, open_gateway):
        """Daily digest at 07:30, process down 07:00-09:00, restart at 09:00."""
        clock = FakeClock(datetime(2024, 1, 16, 9, 0))
        runner = AsyncMock(return_value="ok")

        async def run():
            repo = await open_gateway()
            await repo.save_schedule_state(ScheduleState(
                kind=ScheduleKind.DAILY_DIGEST,
                last_completed_slot=datetime(2024, 1, 15, 7, 30),
            ))

            scheduler = Scheduler(repo, [daily_cycle(runner)], clock=clock)
            launched = await scheduler.start()
            await scheduler.wait_idle()

            # Later ticks the same day do nothing
            for minutes in (1, 60, 600):
                clock.now = datetime(2024, 1, 16, 9, 0) + timedelta(minutes=minutes)
                await scheduler.tick()
                await scheduler.wait_idle()

            state = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)
            await repo.database.dispose()
            return launched, state

        launched, state = asyncio.run(run())
        assert launched == [ScheduleKind.DAILY_DIGEST]
        runner.assert_awaited_once_with(datetime(2024, 1, 16, 7, 30))
        assert state.status == ScheduleStatus.IDLE
        assert state.last_completed_slot == datetime(2024, 1, 16, 7, 30)

    def test_many_missed_slots_run_latest_only(self, open_gateway):
        clock = FakeClock(datetime(2024, 1, 20, 8, 0))
        runner = AsyncMock()

        async def run():
            repo = await open_gateway()
            await repo.save_schedule_state(ScheduleState(
                kind=ScheduleKind.DAILY_DIGEST,
                last_completed_slot=datetime(2024, 1, 15, 7, 30),
            ))
            scheduler = Scheduler(repo, [daily_cycle(runner)], clock=clock)
            await scheduler.start()
            await scheduler.wait_idle()
            await repo.database.dispose()

        asyncio.run(run())
        runner.assert_awaited_once_with(datetime(2024, 1, 20, 7, 30))

    def test_no_history_sets_baseline(self, open_gateway):
        clock = FakeClock(datetime(2024, 1, 16, 9, 0))
        runner = AsyncMock()

        async def run():
            repo = await open_gateway()
            scheduler = Scheduler(repo, [daily_cycle(runner)], clock=clock)
            launched = await scheduler.start()
            await scheduler.wait_idle()

            clock.now = datetime(2024, 1, 17, 7, 31)
            next_day = await scheduler.tick()
            await scheduler.wait_idle()
            await repo.database.dispose()
            return launched, next_day

        launched, next_day = asyncio.run(run())
        assert launched == []
        assert next_day == [ScheduleKind.DAILY_DIGEST]
        runner.assert_awaited_once_with(datetime(2024, 1, 17, 7, 30))

    def test_no_history_with_run_on_startup(self, open_gateway):
        clock = FakeClock(datetime(2024, 1, 16, 9, 0))
        runner = AsyncMock()

        async def run():
            repo = await open_gateway()
            scheduler = Scheduler(repo, [daily_cycle(runner)], run_on_startup=True, clock=clock)
            await scheduler.start()
            await scheduler.wait_idle()
            await repo.database.dispose()

        asyncio.run(run())
        runner.assert_awaited_once_with(datetime(2024, 1, 16, 7, 30))


class RecordingTransport(DigestTransport):
    name = "recording"

    def __init__(self):
        self.sent = []

    async def send(self, payload, recipients):
        self.sent.append(payload.slot.digest_key)


class TestRestartAfterSend:
    def test_no_duplicate_delivery(self, open_gateway, make_article):
        """Crash after the send but before the schedule state update."""
        slot = datetime(2024, 1, 16, 7, 30)
        clock = FakeClock(datetime(2024, 1, 16, 7, 31))
        transport = RecordingTransport()

        async def run():
            repo = await open_gateway()
            await repo.upsert(make_article(fetched_at=datetime(2024, 1, 15, 20, 0)))
            composer = DigestComposer(repo)
            job = DigestJob(
                composer,
                DeliveryGateway(transport, repo, retry_policy=RetryPolicy(max_attempts=1), clock=clock),
                recipients=["team@example.com"],
            )

            # First process: the send lands, then the process dies mid-cycle.
            first = await job.run(DigestKind.DAILY, slot)
            await repo.save_schedule_state(ScheduleState(
                kind=ScheduleKind.DAILY_DIGEST,
                status=ScheduleStatus.RUNNING,
                last_completed_slot=slot - timedelta(days=1),
                pending_slot=slot,
            ))

            # Second process
            clock.now = datetime(2024, 1, 16, 7, 45)
            outcomes = []

            async def runner(s):
                report = await job.run(DigestKind.DAILY, s)
                outcomes.append(report.outcome)
                return report

            scheduler = Scheduler(repo, [daily_cycle(runner)], clock=clock)
            await scheduler.start()
            await scheduler.wait_idle()
            state = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)
            await repo.database.dispose()
            return first, outcomes, state

        first, outcomes, state = asyncio.run(run())
        assert first.outcome == DigestOutcome.SENT
        assert outcomes == [DigestOutcome.ALREADY_DELIVERED]
        assert transport.sent == ["daily:2024-01-16"]
        assert state.last_completed_slot == slot
        assert state.status == ScheduleStatus.IDLE


class TestFailures:
    def test_backoff_then_abandon(self, open_gateway):
        start = datetime(2024, 1, 16, 7, 31)
        clock = FakeClock(start)
        runner = AsyncMock(side_effect=RuntimeError("smtp down"))
        policy = RetryPolicy(max_attempts=2, base_delay=60, multiplier=2)

        async def run():
            repo = await open_gateway()
            await repo.save_schedule_state(ScheduleState(
                kind=ScheduleKind.DAILY_DIGEST,
                last_completed_slot=datetime(2024, 1, 15, 7, 30),
            ))
            scheduler = Scheduler(repo, [daily_cycle(runner)], retry_policy=policy, clock=clock)
            await scheduler.start()
            await scheduler.wait_idle()
            after_first = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)

            clock.now = start + timedelta(seconds=30)
            too_early = await scheduler.tick()

            clock.now = start + timedelta(seconds=61)
            retried = await scheduler.tick()
            await scheduler.wait_idle()
            after_second = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)

            clock.now = start + timedelta(hours=3)
            after_abandon = await scheduler.tick()
            status = scheduler.status()
            await repo.database.dispose()
            return after_first, too_early, retried, after_second, after_abandon, status

        after_first, too_early, retried, after_second, after_abandon, status = asyncio.run(run())

        assert after_first.status == ScheduleStatus.FAILED
        assert after_first.attempts == 1
        assert after_first.next_retry_at == start + timedelta(seconds=60)
        assert "smtp down" in after_first.last_error

        assert too_early == []
        assert retried == [ScheduleKind.DAILY_DIGEST]

        assert after_second.status == ScheduleStatus.IDLE
        assert after_second.abandoned_slot == datetime(2024, 1, 16, 7, 30)
        assert after_second.last_completed_slot == datetime(2024, 1, 15, 7, 30)

        assert after_abandon == []
        assert runner.await_count == 2
        assert status["daily_digest"]["abandoned_slot"] == "2024-01-16T07:30:00"

    def test_next_slot_runs_after_abandonment(self, open_gateway):
        clock = FakeClock(datetime(2024, 1, 16, 8, 0))
        runner = AsyncMock(side_effect=[RuntimeError("boom"), "ok"])

        async def run():
            repo = await open_gateway()
            await repo.save_schedule_state(ScheduleState(
                kind=ScheduleKind.DAILY_DIGEST,
                last_completed_slot=datetime(2024, 1, 15, 7, 30),
            ))
            scheduler = Scheduler(
                repo, [daily_cycle(runner)], retry_policy=RetryPolicy(max_attempts=1), clock=clock
            )
            await scheduler.start()
            await scheduler.wait_idle()

            clock.now = datetime(2024, 1, 17, 7, 30)
            await scheduler.tick()
            await scheduler.wait_idle()
            state = await repo.load_schedule_state(ScheduleKind.DAILY_DIGEST)
            await repo.database.dispose()
            return state

        state = asyncio.run(run())
        assert state.last_completed_slot == datetime(2024, 1, 17, 7, 30)
        assert runner.await_count == 2


class TestMutualExclusion:
    def test_running_kind_is_not_relaunched(self, open_gateway):
        clock = FakeClock(datetime(2024, 1, 16, 9, 0))
        release = None
        calls = []

        async def slow_collection(slot):
            calls.append(slot)
            await release.wait()
            return "done"

        async def run():
            nonlocal release
            release = asyncio.Event()
            repo = await open_gateway()
            cycle = ScheduledCycle(
                ScheduleKind.COLLECTION, IntervalCadence(timedelta(minutes=60)), slow_collection
            )
            scheduler = Scheduler(repo, [cycle], run_on_startup=True, clock=clock)
            await scheduler.start()
            await asyncio.sleep(0)

            clock.now = datetime(2024, 1, 16, 10, 1)
            second_tick = await scheduler.tick()
            on_demand = await scheduler.run_now(ScheduleKind.COLLECTION)
            running = scheduler.status()["collection"]["running"]

            release.set()
            await scheduler.wait_idle()
            await repo.database.dispose()
            return second_tick, on_demand, running

        second_tick, on_demand, running = asyncio.run(run())
        assert second_tick == []
        assert on_demand is None
        assert running is True
        assert len(calls) == 1

    def test_stop_cancels_in_flight_cycles(self, open_gateway):
        clock = FakeClock(datetime(2024, 1, 16, 9, 0))

        async def never_finishes(slot):
            await asyncio.sleep(3600)

        async def run():
            repo = await open_gateway()
            cycle = ScheduledCycle(
                ScheduleKind.COLLECTION, IntervalCadence(timedelta(minutes=60)), never_finishes
            )
            scheduler = Scheduler(repo, [cycle], run_on_startup=True, clock=clock)
            await scheduler.start()
            await asyncio.sleep(0)
            await scheduler.stop()
            running = scheduler.is_running(ScheduleKind.COLLECTION)
            await repo.database.dispose()
            return running

        assert asyncio.run(run()) is False
