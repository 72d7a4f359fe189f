"""
Agent job runner.

One call to AgentJobRunner.run() is one agent execution:

1. create the run record (status "running")
2. reset the agent's scratch file ({memory_path}/temp.md)
3. build the system prompt from the agent's prompt, the available tools,
   its memory.md, its other notes and related vector memories
4. run the conversation loop, appending each tool call to the scratch file
5. finalize the run record exactly once, with the truncated tool-call log
6. update the agent's last-run fields and send a notification
Steps 2, 3 (enrichment), the scratch notes, the agent bookkeeping and the
notification are best effort: their failures are logged and never change
the run's outcome.

delete_agent() removes an agent together with its notes and vector memories.
"""

import asyncio
import json
import logging
import time
from typing import Callable

from browser import get_browser_manager
from llm import ChatClient
from memory.notes import NoteStore
from memory.store import VectorStore
from models import AgentConfig, AgentRun, ToolCallRecord, serialize_tool_log
from notifications import Notifier
from runner import ConversationRunner, RunLimits
from storage import AgentStore
from tools import ToolContext, ToolRegistry
from utils.console import console
from utils.safety import best_effort, run_best_effort

logger = logging.getLogger(__name__)

SCRATCH_RESULT_CHARS = 300
NOTIFY_SUMMARY_CHARS = 200
MAX_INLINE_NOTES = 5
VECTOR_CONTEXT_RESULTS = 3
BROWSER_TOOLS = {"browse_url", "browser_act", "browser_extract", "browser_screenshot", "browser_close"}

TASK_MESSAGE = (
    "Execute your scheduled task now. Read your memory.md first, then proceed with your work. "
    "When done, update memory.md with any findings or state changes."
)


def _summarize(text: str, limit: int = NOTIFY_SUMMARY_CHARS) -> str:
    if len(text) > limit:
        return text[:limit - 3] + "..."
    return text


class AgentJobRunner:
    """
    Runs agents end to end against the store, memory and tool registry.

    Usage:
        jobs = AgentJobRunner(store, registry, LiteLLMChatClient(), vector_store=vs, notes=notes)
        run = await jobs.run(agent)
        print(run.status, run.output)
    """

    def __init__(
        self,
        store: AgentStore,
        registry: ToolRegistry,
        client: ChatClient,
        vector_store: VectorStore = None,
        notes: NoteStore = None,
        notifier: Notifier = None,
        limits: RunLimits = None,
        default_model: str = "gpt-4o-mini",
        settings: dict = None,
        browser=None,
    ):
        self.store = store
        self.registry = registry
        self.client = client
        self.vector_store = vector_store
        self.notes = notes
        self.notifier = notifier
        self.limits = limits or RunLimits()
        self.default_model = default_model
        self.settings = settings or {}
        self.browser = browser

    # =========================================================================
    # Prompt
    # =========================================================================

    def _tools_section(self, agent: AgentConfig) -> str:
        lines = [
            "## Available Tools",
            "Use your tools directly and proactively. Do not ask for permission or clarification.",
            "",
        ]
        for definition in self.registry.list_definitions():
            fn = definition["function"]
            summary = (fn.get("description") or "").strip().split("\n")[0]
            lines.append(f"- {fn['name']}: {summary}")
        lines += [
            "",
            "## Your Memory",
            "You have two special files:",
            f'- "{agent.memory_path}/memory.md": your persistent long-term memory.',
            f'- "{agent.memory_path}/temp.md": scratch notes for this run only.',
            "",
            "Read memory.md first, work through your task, and update it with important findings before finishing.",
        ]
        return "\n".join(lines)

    def _notes_sections(self, agent: AgentConfig) -> list[str]:
        if self.notes is None:
            return []
        sections = []

        memory = self.notes.read(self.notes.memory_file(agent.memory_path))
        if memory and memory.strip():
            sections.append(f"## Your Long-Term Memory (memory.md)\n{memory}")
        else:
            sections.append(
                "## Your Long-Term Memory (memory.md)\n"
                "(No memory file yet. This is likely your first run; create one to persist state across runs.)"
            )

        others = self.notes.other_notes(agent.memory_path)
        if len(others) > MAX_INLINE_NOTES:
            sections.append(
                f"## Your Other Notes\nYou have {len(others)} note files. "
                "Use list_notes and read_note to access them."
            )
        elif others:
            contents = []
            for path in others:
                text = self.notes.read(path)
                if text and text.strip():
                    contents.append(f"### {path}\n{text}")
            if contents:
                sections.append("## Your Other Notes\n" + "\n\n".join(contents))
        return sections

    async def _vector_context(self, agent: AgentConfig) -> str | None:
        if self.vector_store is None:
            return None
        query = f"{agent.name} {agent.system_prompt[:200]}"
        memories = await self.vector_store.search(query, k=VECTOR_CONTEXT_RESULTS)
        if not memories:
            return None
        lines = [f"- [{m.similarity}% match] {m.content}" for m in memories]
        return "## Related Context from Vector Memory\n" + "\n".join(lines)

    async def build_system_prompt(self, agent: AgentConfig) -> str:
        """The agent's own prompt plus tools, notes and related memory."""
        parts = [agent.system_prompt.strip()]
        if self.registry.has_any():
            parts.append(self._tools_section(agent))

        with best_effort("load agent notes", log=logger):
            parts.extend(self._notes_sections(agent))

        context = await run_best_effort("vector context", self._vector_context(agent), log=logger)
        if context:
            parts.append(context)

        return "\n\n".join(p for p in parts if p)

    # =========================================================================
    # Run
    # =========================================================================

    def _scratch_note(self, agent: AgentConfig) -> Callable[[ToolCallRecord], None]:
        def append(record: ToolCallRecord):
            if self.notes is None:
                return
            entry = (
                f"\n## Tool: {record.tool}\n"
                f"Args: {json.dumps(record.args, default=str)}\n"
                f"Result: {record.result[:SCRATCH_RESULT_CHARS]}\n\n"
            )
            with best_effort("append scratch note", log=logger):
                self.notes.write(self.notes.temp_file(agent.memory_path), entry, append=True)

        return append

    async def _notify(self, agent: AgentConfig, run: AgentRun):
        if self.notifier is None:
            return
        if run.status == "success":
            title = f"Agent: {agent.name} finished"
            body = _summarize(run.output) or "Run completed successfully"
        else:
            title = f"Agent: {agent.name} failed"
            body = _summarize(f"Error: {run.error}")
        await run_best_effort("notify", self.notifier.notify(title, body), log=logger)

    async def run(self, agent: AgentConfig, on_event: Callable[[dict], None] = None,
                  trigger: str = "manual") -> AgentRun:
        """Execute one run of `agent` and return its finalized record."""
        started = time.monotonic()
        run = await asyncio.to_thread(self.store.create_run, agent.id)
        logger.info("Agent %s run %s started (%s)", agent.name, run.id, trigger)
        console.run_start(agent.name, trigger)

        if self.notes is not None:
            with best_effort("reset scratch notes", log=logger):
                self.notes.reset_temp(agent.memory_path, agent.name, run.started_at)

        context = ToolContext(
            run_id=run.id,
            agent_id=agent.id,
            agent_name=agent.name,
            memory_path=agent.memory_path,
            session_id=run.id,
            vector_store=self.vector_store,
            notes=self.notes,
            agent_store=self.store,
            browser=self.browser,
            settings=self.settings,
        )
        # Filled as tools finish, so a failed run still logs what it did
        records: list[ToolCallRecord] = []
        scratch_note = self._scratch_note(agent)

        def on_tool_call(record: ToolCallRecord):
            records.append(record)
            scratch_note(record)

        runner = ConversationRunner(
            self.client,
            self.registry,
            self.limits,
            on_event=on_event,
            on_tool_call=on_tool_call,
            context=context,
        )

        try:
            system_prompt = await self.build_system_prompt(agent)
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": TASK_MESSAGE},
            ]
            outcome = await runner.run(messages, agent.model or self.default_model)
            status, output, error = outcome.status, outcome.content, outcome.error
        except Exception as e:
            logger.exception("Agent %s run %s failed", agent.name, run.id)
            status, output, error = "error", "", str(e) or type(e).__name__

        duration_ms = int((time.monotonic() - started) * 1000)
        finished = await asyncio.to_thread(
            self.store.finish_run,
            run.id,
            status,
            output,
            serialize_tool_log(records),
            duration_ms,
            error,
        )

        with best_effort("update agent status", log=logger):
            await asyncio.to_thread(self.store.mark_agent_run, agent.id, status)

        if any(r.tool in BROWSER_TOOLS for r in records):
            await run_best_effort(
                "close browser session",
                (self.browser or get_browser_manager()).close_page(run.id),
                log=logger,
            )

        logger.info(
            "Agent %s run %s finished: %s in %dms (%d tool calls)",
            agent.name, run.id, status, duration_ms, len(records),
        )
        console.run_end(agent.name, status, duration_ms)
        await self._notify(agent, finished)
        return finished

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete_agent(self, agent: AgentConfig, scheduler=None) -> int:
        """
        Delete an agent and the memory it owns.

        Unschedules it (when a scheduler is given), removes its row and run
        history, then its notes directory and every vector chunk saved under
        its "<memory_path>/" namespace. Memory cleanup is best effort.
        Returns the number of vector chunks removed.
        """
        if scheduler is not None:
            scheduler.remove_agent(agent.id)
        await asyncio.to_thread(self.store.delete_agent, agent.id)

        if self.notes is not None:
            with best_effort("delete agent notes", log=logger):
                self.notes.delete_dir(agent.memory_path)

        removed = 0
        if self.vector_store is not None:
            removed = await run_best_effort(
                "delete agent memories",
                self.vector_store.delete_by_source(f"{agent.memory_path}/"),
                default=0,
                log=logger,
            )

        logger.info("Deleted agent %s (%d memory chunks)", agent.name, removed)
        return removed
