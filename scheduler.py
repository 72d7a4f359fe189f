"""
Cron scheduler for agents.

Every enabled agent with a cron expression gets its own asyncio timer task.
The timer sleeps until the next fire time (computed with croniter in the
scheduler's timezone), spawns the run as an independent task and computes
the following fire time. A failing run is logged and never stops its timer.

Overlap policy: a scheduled fire is skipped while a run of the same agent is
still in flight. run_now() is an explicit request and always runs.

Events:
    run_start: {agent_id, agent_name, trigger}
    run_end:   {agent_id, agent_name, trigger, run_id, status, duration_ms, error}

Usage:
    scheduler = await init_scheduler(store, jobs.run)
    scheduler.on("run_end", lambda e: print(e["status"]))
    ...
    await shutdown_scheduler()
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from errors import AgentNotFoundError, InvalidScheduleError
from models import AgentConfig, AgentRun
from storage import AgentStore
from utils.events import EventEmitter

logger = logging.getLogger(__name__)

# Long sleeps are cut into slices so clock jumps are noticed
MAX_SLEEP_SECONDS = 3600

JobFn = Callable[..., Awaitable[AgentRun]]


# =============================================================================
# Cron helpers
# =============================================================================


def resolve_timezone(name: str | None) -> tzinfo:
    """Timezone by IANA name; local time when empty, UTC when unknown."""
    if not name:
        return datetime.now().astimezone().tzinfo
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def validate_cron(cron: str) -> str:
    """Return the stripped 5-field expression or raise InvalidScheduleError."""
    expr = (cron or "").strip()
    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise InvalidScheduleError(f"Invalid cron expression: {cron!r}")
    return expr


def next_fire(cron: str, after: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """Next fire time strictly after `after`, as an aware UTC datetime."""
    expr = validate_cron(cron)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local_after = after.astimezone(tz)
    return croniter(expr, local_after).get_next(datetime).astimezone(timezone.utc)


@dataclass
class ScheduledJob:
    agent_id: str
    agent_name: str
    cron: str
    next_run: datetime
    timer: asyncio.Task | None = None


# =============================================================================
# Scheduler
# =============================================================================


class AgentScheduler(EventEmitter):
    """
    Keeps one timer per scheduled agent and launches runs through `job`.

    `job` is an async callable `job(agent, trigger=...) -> AgentRun`,
    normally AgentJobRunner.run.
    """

    def __init__(self, store: AgentStore, job: JobFn, tz: str | None = None,
                 clock: Callable[[], datetime] = None):
        self.__init_events__()
        self.store = store
        self.job = job
        self.tz = resolve_timezone(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.jobs: dict[str, ScheduledJob] = {}
        self._running: Counter = Counter()
        self._run_tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Job management
    # -------------------------------------------------------------------------

    def schedule_agent(self, agent: AgentConfig) -> bool:
        """(Re)schedule an agent. Returns False when it ends up unscheduled."""
        self.remove_agent(agent.id)
        if not agent.enabled or not agent.cron_schedule:
            return False

        try:
            first = next_fire(agent.cron_schedule, self._clock(), self.tz)
        except InvalidScheduleError as e:
            logger.warning("Not scheduling agent %s: %s", agent.name, e)
            return False

        job = ScheduledJob(
            agent_id=agent.id,
            agent_name=agent.name,
            cron=agent.cron_schedule,
            next_run=first,
        )
        job.timer = asyncio.get_running_loop().create_task(
            self._timer_loop(job), name=f"agent-timer-{agent.id}"
        )
        self.jobs[agent.id] = job
        logger.info("Scheduled agent %s (%s), next run %s", agent.name, job.cron, first.isoformat())
        self.emit("schedule_changed", {"agent_id": agent.id, "action": "scheduled"})
        return True

    def remove_agent(self, agent_id: str) -> bool:
        """Cancel an agent's timer. Safe to call for unscheduled agents."""
        job = self.jobs.pop(agent_id, None)
        if job is None:
            return False
        if job.timer is not None:
            job.timer.cancel()
        logger.info("Unscheduled agent %s", job.agent_name)
        self.emit("schedule_changed", {"agent_id": agent_id, "action": "removed"})
        return True

    async def update_agent(self, agent_id: str) -> bool:
        """Re-read an agent from the store and reschedule or remove it."""
        agent = await asyncio.to_thread(self.store.get_agent, agent_id)
        if agent is None or not agent.is_scheduled:
            self.remove_agent(agent_id)
            return False
        return self.schedule_agent(agent)

    def is_running(self, agent_id: str) -> bool:
        return self._running[agent_id] > 0

    def _release(self, agent_id: str):
        self._running[agent_id] -= 1
        if self._running[agent_id] <= 0:
            del self._running[agent_id]

    def get_status(self) -> list[dict]:
        """One entry per scheduled agent, soonest first."""
        return [
            {
                "agent_id": job.agent_id,
                "agent_name": job.agent_name,
                "cron": job.cron,
                "next_run": job.next_run.isoformat(),
                "is_running": self.is_running(job.agent_id),
            }
            for job in sorted(self.jobs.values(), key=lambda j: j.next_run)
        ]

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def _execute(self, agent: AgentConfig, trigger: str) -> AgentRun:
        """Run one job. The caller has already counted it as running."""
        self.emit("run_start", {"agent_id": agent.id, "agent_name": agent.name, "trigger": trigger})
        try:
            run = await self.job(agent, trigger=trigger)
        except Exception as e:
            self.emit("run_end", {
                "agent_id": agent.id,
                "agent_name": agent.name,
                "trigger": trigger,
                "run_id": None,
                "status": "error",
                "duration_ms": None,
                "error": str(e),
            })
            raise
        finally:
            self._release(agent.id)

        self.emit("run_end", {
            "agent_id": agent.id,
            "agent_name": agent.name,
            "trigger": trigger,
            "run_id": run.id,
            "status": run.status,
            "duration_ms": run.duration_ms,
            "error": run.error,
        })
        return run

    async def _run_scheduled(self, agent_id: str):
        # Once _execute starts it owns the release; every earlier exit releases here
        handed_off = False
        try:
            agent = await asyncio.to_thread(self.store.get_agent, agent_id)
            if agent is None:
                logger.warning("Scheduled agent %s no longer exists", agent_id)
                return
            handed_off = True
            await self._execute(agent, "schedule")
        except Exception as e:
            logger.error("Scheduled run of agent %s failed: %s", agent_id, e)
        finally:
            if not handed_off:
                self._release(agent_id)

    def _fire(self, job: ScheduledJob):
        if self.is_running(job.agent_id):
            logger.info("Skipping scheduled run of %s: previous run still in progress", job.agent_name)
            return
        # Counted before the task starts so a second fire can't slip in
        self._running[job.agent_id] += 1
        task = asyncio.get_running_loop().create_task(self._run_scheduled(job.agent_id))
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)

    async def _timer_loop(self, job: ScheduledJob):
        while True:
            delay = (job.next_run - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(min(delay, MAX_SLEEP_SECONDS))
                continue
            self._fire(job)
            job.next_run = next_fire(job.cron, max(self._clock(), job.next_run), self.tz)

    async def run_now(self, agent_id: str) -> AgentRun:
        """Run an agent immediately, regardless of its schedule."""
        agent = await asyncio.to_thread(self.store.get_agent, agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        self._running[agent.id] += 1
        return await self._execute(agent, "manual")

    async def run_by_name(self, name: str) -> AgentRun:
        """Run an agent by exact, then case-insensitive, name."""
        agent = await asyncio.to_thread(self.store.get_agent_by_name, name)
        if agent is None:
            raise AgentNotFoundError(name)
        return await self.run_now(agent.id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> int:
        """Schedule every enabled agent in the store. Returns how many got timers."""
        agents = await asyncio.to_thread(self.store.list_agents, True)
        scheduled = sum(1 for a in agents if self.schedule_agent(a))
        logger.info("Scheduler started: %d of %d enabled agents scheduled", scheduled, len(agents))
        return scheduled

    async def shutdown(self):
        """Cancel every timer and wait for in-flight scheduled runs."""
        timers = [j.timer for j in self.jobs.values() if j.timer is not None]
        for agent_id in list(self.jobs):
            self.remove_agent(agent_id)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        if self._run_tasks:
            await asyncio.gather(*list(self._run_tasks), return_exceptions=True)
        logger.info("Scheduler stopped")


# =============================================================================
# Process-wide instance
# =============================================================================

# Survives importlib.reload so a reloaded module finds the live scheduler
_instances: dict = globals().get("_instances") or {}
_SLOT = "agentdeck.scheduler"


def get_scheduler() -> AgentScheduler:
    scheduler = _instances.get(_SLOT)
    if scheduler is None:
        raise RuntimeError("Scheduler is not initialized; call init_scheduler() first")
    return scheduler


async def init_scheduler(store: AgentStore, job: JobFn, tz: str | None = None) -> AgentScheduler:
    """Create, register and start the scheduler once; later calls return it."""
    scheduler = _instances.get(_SLOT)
    if scheduler is None:
        scheduler = _instances[_SLOT] = AgentScheduler(store, job, tz)
        await scheduler.init()
    return scheduler


async def shutdown_scheduler():
    scheduler = _instances.pop(_SLOT, None)
    if scheduler is not None:
        await scheduler.shutdown()
