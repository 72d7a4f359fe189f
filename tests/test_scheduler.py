"""
Unit tests for scheduler.py

Tests cover:
- Cron helpers: validation, next fire time, timezones
- Job management: schedule, reschedule without duplicates, remove, update
- get_status contents
- run_now / run_by_name, including unknown agents
- Scheduled fires: overlap skipping, failure isolation, timer firing
- init / shutdown lifecycle and the process-wide accessor
"""

import asyncio
import importlib
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

import scheduler as scheduler_module
from errors import AgentNotFoundError, InvalidScheduleError
from models import AgentConfig, AgentRun
from scheduler import AgentScheduler, next_fire, resolve_timezone, validate_cron


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingJob:
    """Async job stand-in; optionally blocks until released."""

    def __init__(self, block: bool = False, fail: bool = False):
        self.calls = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.fail = fail

    async def __call__(self, agent, trigger="manual"):
        self.calls.append((agent.id, trigger))
        self.started.set()
        await self.release.wait()
        if self.fail:
            raise RuntimeError("job exploded")
        return AgentRun(id=f"run-{len(self.calls)}", agent_id=agent.id, status="success", duration_ms=5)


def add_agent(store, agent_id="brief", name="Morning Brief", cron="0 9 * * *", enabled=True):
    return store.upsert_agent(AgentConfig(id=agent_id, name=name, cron_schedule=cron, enabled=enabled))


NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def make_scheduler(store, job=None, clock=None):
    return AgentScheduler(store, job or RecordingJob(), tz="UTC", clock=clock or MutableClock(NOW))


# =============================================================================
# Cron helpers
# =============================================================================


class TestCronHelpers:
    """validate_cron, next_fire and resolve_timezone."""

    def test_next_fire_same_day(self):
        assert next_fire("0 9 * * *", NOW) == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def test_next_fire_strictly_after(self):
        at_nine = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        assert next_fire("0 9 * * *", at_nine) == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)

    def test_next_fire_naive_treated_as_utc(self):
        assert next_fire("30 8 * * *", datetime(2024, 1, 1, 8, 0)) == datetime(2024, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_next_fire_in_timezone(self):
        tz = resolve_timezone("America/New_York")
        after = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert next_fire("0 9 * * *", after, tz) == datetime(2024, 1, 1, 14, 0, tzinfo=timezone.utc)

    def test_invalid_expressions(self):
        for expr in ["not a cron", "61 * * * *", "* * * *", "0 0 9 * * *", ""]:
            with pytest.raises(InvalidScheduleError):
                validate_cron(expr)

    def test_valid_expression_stripped(self):
        assert validate_cron("  */5 * * * 1-5 ") == "*/5 * * * 1-5"

    def test_unknown_timezone_falls_back_to_utc(self):
        assert resolve_timezone("Mars/Olympus_Mons") == timezone.utc


# =============================================================================
# Job management
# =============================================================================


class TestJobManagement:
    """schedule_agent, remove_agent, update_agent and get_status."""

    @pytest.mark.asyncio
    async def test_status_shows_next_run(self, agent_store):
        sched = make_scheduler(agent_store)
        assert sched.schedule_agent(add_agent(agent_store)) is True

        status = sched.get_status()
        assert status == [{
            "agent_id": "brief",
            "agent_name": "Morning Brief",
            "cron": "0 9 * * *",
            "next_run": "2024-01-01T09:00:00+00:00",
            "is_running": False,
        }]
        await sched.shutdown()

    @pytest.mark.asyncio
    async def test_reschedule_no_duplicates(self, agent_store):
        sched = make_scheduler(agent_store)
        agent = add_agent(agent_store)
        sched.schedule_agent(agent)
        first_timer = sched.jobs["brief"].timer
        sched.schedule_agent(agent)

        assert len(sched.get_status()) == 1
        await asyncio.gather(first_timer, return_exceptions=True)
        assert first_timer.cancelled()
        assert sched.jobs["brief"].timer is not first_timer
        await sched.shutdown()

    @pytest.mark.asyncio
    async def test_empty_cron_not_scheduled(self, agent_store):
        sched = make_scheduler(agent_store)
        assert sched.schedule_agent(add_agent(agent_store, cron="")) is False
        assert sched.get_status() == []

    @pytest.mark.asyncio
    async def test_invalid_cron_not_scheduled(self, agent_store):
        sched = make_scheduler(agent_store)
        assert sched.schedule_agent(add_agent(agent_store, cron="every day at nine")) is False
        assert sched.get_status() == []

    @pytest.mark.asyncio
    async def test_disabled_agent_not_scheduled(self, agent_store):
        sched = make_scheduler(agent_store)
        assert sched.schedule_agent(add_agent(agent_store, enabled=False)) is False
        assert "brief" not in sched.jobs

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, agent_store):
        sched = make_scheduler(agent_store)
        sched.schedule_agent(add_agent(agent_store))
        assert sched.remove_agent("brief") is True
        assert sched.remove_agent("brief") is False
        assert sched.remove_agent("never-scheduled") is False
        assert sched.get_status() == []

    @pytest.mark.asyncio
    async def test_update_reschedules_changed_cron(self, agent_store):
        sched = make_scheduler(agent_store)
        sched.schedule_agent(add_agent(agent_store))
        add_agent(agent_store, cron="30 8 * * *")

        assert await sched.update_agent("brief") is True
        status = sched.get_status()
        assert status[0]["cron"] == "30 8 * * *"
        assert status[0]["next_run"] == "2024-01-01T08:30:00+00:00"
        await sched.shutdown()

    @pytest.mark.asyncio
    async def test_update_removes_disabled(self, agent_store):
        sched = make_scheduler(agent_store)
        sched.schedule_agent(add_agent(agent_store))
        add_agent(agent_store, enabled=False)

        assert await sched.update_agent("brief") is False
        assert sched.get_status() == []

    @pytest.mark.asyncio
    async def test_update_removes_deleted(self, agent_store):
        sched = make_scheduler(agent_store)
        sched.schedule_agent(add_agent(agent_store))
        agent_store.delete_agent("brief")

        assert await sched.update_agent("brief") is False
        assert sched.get_status() == []

    @pytest.mark.asyncio
    async def test_status_sorted_by_next_run(self, agent_store):
        sched = make_scheduler(agent_store)
        sched.schedule_agent(add_agent(agent_store, "late", "Late", "0 20 * * *"))
        sched.schedule_agent(add_agent(agent_store, "early", "Early", "15 8 * * *"))
        assert [s["agent_id"] for s in sched.get_status()] == ["early", "late"]
        await sched.shutdown()


# =============================================================================
# Running
# =============================================================================


class TestRunning:
    """run_now, run_by_name and scheduled fires."""

    @pytest.mark.asyncio
    async def test_run_now_unknown_agent(self, agent_store):
        sched = make_scheduler(agent_store)
        with pytest.raises(AgentNotFoundError) as exc_info:
            await sched.run_now("missing")
        assert exc_info.value.key == "missing"

    @pytest.mark.asyncio
    async def test_run_now_emits_events(self, agent_store):
        job = RecordingJob()
        sched = make_scheduler(agent_store, job)
        add_agent(agent_store)
        events = []
        sched.on("*", events.append)

        run = await sched.run_now("brief")

        assert run.status == "success"
        assert job.calls == [("brief", "manual")]
        kinds = [e["_event"] for e in events]
        assert kinds == ["run_start", "run_end"]
        assert events[1]["run_id"] == run.id
        assert events[1]["status"] == "success"
        assert not sched.is_running("brief")

    @pytest.mark.asyncio
    async def test_run_by_name_case_insensitive(self, agent_store):
        job = RecordingJob()
        sched = make_scheduler(agent_store, job)
        add_agent(agent_store)

        await sched.run_by_name("morning brief")
        assert job.calls == [("brief", "manual")]

        with pytest.raises(AgentNotFoundError):
            await sched.run_by_name("Evening Brief")

    @pytest.mark.asyncio
    async def test_run_now_propagates_job_failure(self, agent_store):
        sched = make_scheduler(agent_store, RecordingJob(fail=True))
        add_agent(agent_store)
        ends = []
        sched.on("run_end", ends.append)

        with pytest.raises(RuntimeError):
            await sched.run_now("brief")
        assert ends[0]["status"] == "error"
        assert not sched.is_running("brief")

    @pytest.mark.asyncio
    async def test_scheduled_fire_skipped_while_running(self, agent_store):
        job = RecordingJob(block=True)
        sched = make_scheduler(agent_store, job)
        sched.schedule_agent(add_agent(agent_store))
        scheduled = sched.jobs["brief"]

        sched._fire(scheduled)
        await asyncio.wait_for(job.started.wait(), timeout=1)
        assert sched.is_running("brief")
        assert sched.get_status()[0]["is_running"] is True

        sched._fire(scheduled)
        job.release.set()
        await sched.shutdown()

        assert job.calls == [("brief", "schedule")]
        assert not sched.is_running("brief")

    @pytest.mark.asyncio
    async def test_run_now_may_overlap(self, agent_store):
        job = RecordingJob(block=True)
        sched = make_scheduler(agent_store, job)
        add_agent(agent_store)

        first = asyncio.create_task(sched.run_now("brief"))
        await asyncio.wait_for(job.started.wait(), timeout=1)
        second = asyncio.create_task(sched.run_now("brief"))
        await asyncio.sleep(0.01)
        job.release.set()
        await asyncio.gather(first, second)

        assert job.calls == [("brief", "manual"), ("brief", "manual")]
        assert not sched.is_running("brief")

    @pytest.mark.asyncio
    async def test_failed_scheduled_run_is_isolated(self, agent_store):
        job = RecordingJob(fail=True)
        sched = make_scheduler(agent_store, job)
        sched.schedule_agent(add_agent(agent_store))
        ends = []
        sched.on("run_end", ends.append)

        sched._fire(sched.jobs["brief"])
        await sched.shutdown()

        assert ends[0]["status"] == "error"
        assert "job exploded" in ends[0]["error"]
        assert not sched.is_running("brief")

    @pytest.mark.asyncio
    async def test_store_failure_does_not_block_later_fires(self, agent_store):
        job = RecordingJob()
        sched = make_scheduler(agent_store, job)
        sched.schedule_agent(add_agent(agent_store))
        scheduled = sched.jobs["brief"]
        real_get_agent = agent_store.get_agent
        lookups = []

        def flaky_get_agent(agent_id):
            lookups.append(agent_id)
            if len(lookups) == 1:
                raise RuntimeError("database is locked")
            return real_get_agent(agent_id)

        with patch.object(agent_store, "get_agent", side_effect=flaky_get_agent):
            sched._fire(scheduled)
            await asyncio.gather(*list(sched._run_tasks))
            assert not sched.is_running("brief")
            assert job.calls == []

            sched._fire(scheduled)
            await asyncio.gather(*list(sched._run_tasks))

        assert job.calls == [("brief", "schedule")]
        assert not sched.is_running("brief")
        await sched.shutdown()

    @pytest.mark.asyncio
    async def test_vanished_agent_releases_running_slot(self, agent_store):
        job = RecordingJob()
        sched = make_scheduler(agent_store, job)
        sched.schedule_agent(add_agent(agent_store))
        agent_store.delete_agent("brief")

        sched._fire(sched.jobs["brief"])
        await asyncio.gather(*list(sched._run_tasks))

        assert job.calls == []
        assert not sched.is_running("brief")
        await sched.shutdown()

    @pytest.mark.asyncio
    async def test_timer_fires_when_due(self, agent_store):
        job = RecordingJob()
        clock = MutableClock(NOW)
        sched = make_scheduler(agent_store, job, clock)
        sched.schedule_agent(add_agent(agent_store))

        clock.now = NOW + timedelta(hours=2)
        await asyncio.wait_for(job.started.wait(), timeout=1)

        assert job.calls == [("brief", "schedule")]
        assert sched.get_status()[0]["next_run"] == "2024-01-02T09:00:00+00:00"
        await sched.shutdown()


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """init, shutdown and the process-wide accessor."""

    @pytest.mark.asyncio
    async def test_init_schedules_enabled_agents(self, agent_store):
        add_agent(agent_store, "a", "A", "0 9 * * *")
        add_agent(agent_store, "b", "B", "")
        add_agent(agent_store, "c", "C", "0 9 * * *", enabled=False)
        add_agent(agent_store, "d", "D", "bogus")
        sched = make_scheduler(agent_store)

        assert await sched.init() == 1
        assert [s["agent_id"] for s in sched.get_status()] == ["a"]
        await sched.shutdown()
        assert sched.get_status() == []

    @pytest.mark.asyncio
    async def test_accessor(self, agent_store):
        await scheduler_module.shutdown_scheduler()
        with pytest.raises(RuntimeError):
            scheduler_module.get_scheduler()

        add_agent(agent_store)
        job = RecordingJob()
        first = await scheduler_module.init_scheduler(agent_store, job, "UTC")
        second = await scheduler_module.init_scheduler(agent_store, job, "UTC")
        assert first is second
        assert scheduler_module.get_scheduler() is first

        await scheduler_module.shutdown_scheduler()
        with pytest.raises(RuntimeError):
            scheduler_module.get_scheduler()

    @pytest.mark.asyncio
    async def test_accessor_survives_reload(self, agent_store):
        live = await scheduler_module.init_scheduler(agent_store, RecordingJob(), "UTC")
        reloaded = importlib.reload(scheduler_module)
        try:
            assert reloaded.get_scheduler() is live
        finally:
            await reloaded.shutdown_scheduler()
