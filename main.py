"""
agentdeck - scheduled tool-using agents

Entry point. Loads configuration, seeds the agent store from it and either
runs the cron scheduler or executes a single command.

Usage:
    python main.py                    # Run the scheduler until Ctrl+C
    python main.py run <agent name>   # Run one agent now and stream its output
    python main.py status             # Scheduled agents and their next run
    python main.py agents             # Configured agents and last run status
    python main.py memory-stats       # Vector memory chunk counts
    python main.py delete <agent>     # Delete an agent with its notes and memories

Configuration:
    Set options in config.yaml (or $AGENTDECK_CONFIG) or via environment
    variables. See config.yaml for all available options.

Verbose Output:
    Control with AGENTDECK_VERBOSE:
    - 0/off: No verbose output
    - 1/light: Run starts/ends and tool names (default)
    - 2/deep: Tool inputs and results as well
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone

from utils.console import console

# Configure logging with immediate stderr output
handler = logging.StreamHandler(sys.stderr)
handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

# Suppress noisy library loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("LiteLLM").setLevel(logging.WARNING)
logging.root.addHandler(handler)
logging.root.setLevel(logging.INFO)
logger = logging.getLogger(__name__)

USAGE = "Usage: python main.py [run <agent name>|status|agents|memory-stats|delete <agent name>]"


@dataclass
class Runtime:
    """Everything a command needs, built once from configuration."""
    config: dict
    store: object
    vector_store: object
    notes: object
    jobs: object

    def close(self):
        self.vector_store.close()
        self.store.close()


def build_runtime(config: dict) -> Runtime:
    from browser import BrowserSettings, get_browser_manager
    from config import expand_path, get_section
    from jobs import AgentJobRunner
    from llm import LiteLLMChatClient
    from memory import NoteStore, VectorStore
    from memory.embeddings import create_provider, set_provider
    from notifications import ConsoleNotifier
    from runner import RunLimits
    from storage import AgentStore
    from tools import default_registry

    llm_config = get_section(config, "llm")
    memory_config = get_section(config, "memory")

    store = AgentStore(str(expand_path(get_section(config, "storage").get("db_path", "~/.agentdeck/agents.db"))))
    store.sync_agents(config.get("agents") or [])

    dim = int(llm_config.get("embedding_dim", 1536))
    provider = create_provider(llm_config.get("embedding_model", "text-embedding-3-small"), dim)
    set_provider(provider)
    vector_store = VectorStore(
        str(expand_path(memory_config.get("db_path", "~/.agentdeck/memory.db"))),
        provider=provider,
        dim=dim,
    )
    notes = NoteStore(expand_path(memory_config.get("notes_dir", "~/.agentdeck/agents")))

    jobs = AgentJobRunner(
        store,
        default_registry(),
        LiteLLMChatClient(default_model=llm_config.get("model")),
        vector_store=vector_store,
        notes=notes,
        notifier=ConsoleNotifier(),
        limits=RunLimits.from_config(config),
        default_model=llm_config.get("model", "gpt-4o-mini"),
        settings={"searxng_url": get_section(config, "search").get("searxng_url")},
        browser=get_browser_manager(BrowserSettings.from_config(config)),
    )
    return Runtime(config=config, store=store, vector_store=vector_store, notes=notes, jobs=jobs)


def _print_event(event: dict):
    """Stream a run's events to the terminal."""
    kind = event.get("type")
    if kind == "content":
        sys.stdout.write(event["content"])
        sys.stdout.flush()
    elif kind == "tool_status" and event.get("status") == "searching":
        console.tool_start(event["tool"], event.get("args"))
    elif kind == "tool_status":
        console.tool_end(event["tool"])
    elif kind == "error":
        console.error(f"\n{event['error']}")
    elif kind == "done":
        sys.stdout.write("\n")


# =============================================================================
# Commands
# =============================================================================


async def run_scheduler(runtime: Runtime):
    """Run the cron scheduler until interrupted."""
    from browser import shutdown_browser_manager
    from scheduler import init_scheduler, shutdown_scheduler

    tz = runtime.config.get("scheduler", {}).get("timezone") or None
    scheduler = await init_scheduler(runtime.store, runtime.jobs.run, tz)

    for job in scheduler.get_status():
        console.system(f"  {job['agent_name']}: {job['cron']} (next {job['next_run']})")
    console.system("Press Ctrl+C to stop\n")

    try:
        await asyncio.Event().wait()
    finally:
        await shutdown_scheduler()
        await shutdown_browser_manager()


async def run_agent(runtime: Runtime, name: str) -> int:
    """Run one agent by name, streaming output. Returns the exit code."""
    from browser import shutdown_browser_manager
    from errors import AgentNotFoundError

    agent = await asyncio.to_thread(runtime.store.get_agent_by_name, name)
    if agent is None:
        agent = await asyncio.to_thread(runtime.store.get_agent, name)
    try:
        if agent is None:
            raise AgentNotFoundError(name)
        run = await runtime.jobs.run(agent, on_event=_print_event, trigger="manual")
    except AgentNotFoundError as e:
        console.error(str(e))
        return 1
    finally:
        await shutdown_browser_manager()

    if run.status != "success":
        console.error(f"Run failed: {run.error}")
        return 1
    console.success(f"Run {run.id} finished in {run.duration_ms}ms")
    return 0


async def delete_agent(runtime: Runtime, name: str) -> int:
    """Delete one agent by name or id along with its memory. Returns the exit code."""
    agent = await asyncio.to_thread(runtime.store.get_agent_by_name, name)
    if agent is None:
        agent = await asyncio.to_thread(runtime.store.get_agent, name)
    if agent is None:
        console.error(f"Agent not found: {name}")
        return 1

    removed = await runtime.jobs.delete_agent(agent)
    console.success(f"Deleted agent {agent.name} ({removed} memory chunks removed)")
    declared = [a for a in runtime.config.get("agents") or [] if isinstance(a, dict)]
    if any(a.get("id") == agent.id or a.get("name") == agent.name for a in declared):
        console.warning(f"{agent.name} is still listed in config.yaml and will return on next start")
    return 0


def show_status(runtime: Runtime):
    from errors import InvalidScheduleError
    from scheduler import next_fire, resolve_timezone

    tz = resolve_timezone(runtime.config.get("scheduler", {}).get("timezone"))
    now = datetime.now(timezone.utc)
    agents = [a for a in runtime.store.list_agents(enabled_only=True) if a.cron_schedule]
    if not agents:
        console.system("No scheduled agents.")
        return
    for agent in agents:
        try:
            upcoming = next_fire(agent.cron_schedule, now, tz).isoformat()
        except InvalidScheduleError:
            upcoming = "invalid schedule"
        console.system(f"{agent.name}: {agent.cron_schedule} (next {upcoming})")


def show_agents(runtime: Runtime):
    agents = runtime.store.list_agents()
    if not agents:
        console.system("No agents configured.")
        return
    for a in agents:
        state = "enabled" if a.enabled else "disabled"
        console.system(
            f"{a.name} [{a.id}] ({state}) schedule={a.cron_schedule or 'manual'} "
            f"last={a.last_run_at or 'never'} ({a.last_run_status or 'n/a'})"
        )


def show_memory_stats(runtime: Runtime):
    stats = runtime.vector_store.get_stats()
    console.system(f"Total chunks: {stats['total']}")
    for chunk_type, count in sorted(stats["by_type"].items()):
        console.system(f"  {chunk_type}: {count}")
    console.system(f"Note files: {len(runtime.notes.all_paths())}")


def main():
    """Main entry point."""
    from config import load_config

    config = load_config()
    level = str(config.get("logging", {}).get("level", "INFO")).upper()
    logging.root.setLevel(getattr(logging, level, logging.INFO))
    if not os.environ.get("AGENTDECK_VERBOSE") and "verbose" in config:
        console.set_verbose(config["verbose"])

    command = sys.argv[1] if len(sys.argv) > 1 else None
    runtime = build_runtime(config)

    try:
        if command is None:
            console.banner("agentdeck")
            try:
                asyncio.run(run_scheduler(runtime))
            except KeyboardInterrupt:
                console.system("\nGoodbye!")
        elif command == "run":
            if len(sys.argv) < 3:
                console.error("Usage: python main.py run <agent name>")
                sys.exit(1)
            sys.exit(asyncio.run(run_agent(runtime, " ".join(sys.argv[2:]))))
        elif command == "status":
            show_status(runtime)
        elif command == "agents":
            show_agents(runtime)
        elif command == "memory-stats":
            show_memory_stats(runtime)
        elif command == "delete":
            if len(sys.argv) < 3:
                console.error("Usage: python main.py delete <agent name>")
                sys.exit(1)
            sys.exit(asyncio.run(delete_agent(runtime, " ".join(sys.argv[2:]))))
        else:
            console.error(f"Unknown command: {command}")
            console.system(USAGE)
            sys.exit(1)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
