"""
Conversation loop: drives one run from message history to final text.

    Start -> Streaming -> ToolCallsPending -> Streaming -> ... -> Finished
                       \-> Errored (no usable response after all retries)

Each round streams a completion, collects the tool calls the model asked
for, runs them in the order given, appends the results and streams again.
The loop ends when the model stops calling tools, or when one of the
bounds is hit:

- iteration bound: max tool rounds, generous by default
- wall-clock bound: checked at the top of each round (not preemptive)
- nudge bound: how many times a stalled run may be restarted from a
  progress summary

Hitting a bound is not an error; the run finishes with its partial output
and a note saying why it stopped. Only a model call that yields nothing on
every retry fails the run.

Context containment happens before every round (old screenshots pruned,
tool output truncated). Both helpers and the nudge compaction are pure
functions over the message list.
"""

import asyncio
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from config import get_section
from llm import ChatClient, is_transient_error
from models import ToolCallRecord
from tools import ToolContext, ToolRegistry, ToolResult
from utils.safety import call_best_effort

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[image removed to save context]"
SCREENSHOT_PROMPT = "[Screenshot from {tool} tool - analyze this image]"
TASK_SUMMARY_CHARS = 2000


# =============================================================================
# Limits and results
# =============================================================================


@dataclass
class RunLimits:
    max_iterations: int = 1000
    max_duration_seconds: float = 30 * 60
    max_retries: int = 2
    retry_backoff_seconds: float = 2.0
    keep_recent_images: int = 2
    max_tool_result_chars: int = 12000
    max_nudges: int = 3

    @classmethod
    def from_config(cls, config: dict) -> "RunLimits":
        section = get_section(config, "runner")
        return cls(**{k: v for k, v in section.items() if k in cls.__dataclass_fields__})


@dataclass
class PendingToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class StreamResult:
    content: str
    tool_calls: list[PendingToolCall] = field(default_factory=list)
    error: str | None = None  # set when partial content was accepted after a read error


class StreamFailedError(Exception):
    """No usable response after every retry."""


@dataclass
class RunOutcome:
    content: str
    tool_calls: list[ToolCallRecord]
    duration_ms: int
    status: str  # "success" | "error"
    stop_reason: str  # completed | iteration_limit | time_limit | nudge_limit | error
    error: str | None = None
    iterations: int = 0
    nudges: int = 0


# =============================================================================
# Completion checks (nudge policy)
# =============================================================================


@dataclass
class Progress:
    complete: bool
    actions: dict[str, int] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    next_step: str = ""


class CompletionCheck(Protocol):
    def __call__(self, records: list[ToolCallRecord]) -> Progress:
        ...


class RequiredToolsCheck:
    """
    Complete once every required tool has been called at least once.

    Example: a research run must end by calling save_memory:
        RequiredToolsCheck(required=["save_memory"], key_tools=["search_web", "browse_url"])
    """

    def __init__(self, required: list[str], key_tools: list[str] = None, next_step: str = None):
        self.required = list(required)
        self.key_tools = list(key_tools) if key_tools else None
        self.next_step = next_step

    def __call__(self, records: list[ToolCallRecord]) -> Progress:
        counts = Counter(r.tool for r in records)
        missing = [t for t in self.required if counts[t] == 0]
        tracked = self.key_tools or sorted(counts)
        actions = {t: counts[t] for t in tracked}
        next_step = self.next_step or (
            f"Call {missing[0]} now to finish the task." if missing else ""
        )
        return Progress(complete=not missing, actions=actions, missing=missing, next_step=next_step)


def progress_summary(progress: Progress, task: str = "") -> str:
    """The synthesized user message that replaces history on a nudge."""
    lines = ["Your conversation was reset to save context. Continue from this summary."]
    if task:
        lines += ["", "Original task:", task[:TASK_SUMMARY_CHARS]]
    lines += ["", "Progress so far:"]
    if progress.actions:
        lines += [f"- {tool}: called {n} time(s)" for tool, n in progress.actions.items()]
    else:
        lines.append("- no tool calls yet")
    if progress.missing:
        lines += ["", "Still missing: " + ", ".join(progress.missing)]
    if progress.next_step:
        lines += ["", "Next step: " + progress.next_step]
    return "\n".join(lines)


# =============================================================================
# Pure context helpers
# =============================================================================


def _has_image(message: dict) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(p, dict) and p.get("type") == "image_url" for p in content
    )


def prune_images(messages: list[dict], keep: int) -> list[dict]:
    """Copy of messages with image parts dropped from all but the `keep` most recent image messages."""
    image_indices = [i for i, m in enumerate(messages) if _has_image(m)]
    drop = set(image_indices[:max(0, len(image_indices) - keep)])
    if not drop:
        return list(messages)

    pruned = []
    for i, message in enumerate(messages):
        if i in drop:
            parts = [
                p if p.get("type") != "image_url" else {"type": "text", "text": IMAGE_PLACEHOLDER}
                for p in message["content"]
            ]
            message = {**message, "content": parts}
        pruned.append(message)
    return pruned


def truncate_result(text: str, limit: int) -> str:
    """Cap tool output, marking how much was cut."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n\n[...truncated from {len(text)} chars]"


def compact_history(messages: list[dict], summary: str) -> list[dict]:
    """New history: the leading system prompt (if any) plus a progress summary."""
    compacted = [dict(messages[0])] if messages and messages[0].get("role") == "system" else []
    compacted.append({"role": "user", "content": summary})
    return compacted


def _first_user_text(messages: list[dict]) -> str:
    for m in messages:
        if m.get("role") == "user" and isinstance(m.get("content"), str):
            return m["content"]
    return ""


def _parse_args(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": raw}


def _image_message(tool_name: str, result: ToolResult) -> dict:
    parts = [{"type": "text", "text": SCREENSHOT_PROMPT.format(tool=tool_name)}]
    parts += [{"type": "image_url", "image_url": {"url": img.data_url()}} for img in result.images]
    return {"role": "user", "content": parts}


# =============================================================================
# Runner
# =============================================================================


class _Transcript:
    """Accumulated output text; successive rounds are separated by a blank line."""

    def __init__(self, emit: Callable[[dict], None]):
        self.parts: list[str] = []
        self._fresh = True
        self._emit = emit

    def begin_round(self):
        self._fresh = True

    def add(self, text: str):
        if not text:
            return
        if self._fresh and self.parts:
            self.parts.append("\n\n")
            self._emit({"type": "content", "content": "\n\n"})
        self._fresh = False
        self.parts.append(text)
        self._emit({"type": "content", "content": text})

    def note(self, text: str):
        self.begin_round()
        self.add(text)

    @property
    def text(self) -> str:
        return "".join(self.parts)


class ConversationRunner:
    """
    Runs the tool-calling loop for one conversation.

    Usage:
        runner = ConversationRunner(LiteLLMChatClient(), registry, RunLimits())
        outcome = await runner.run(messages, "gpt-4o-mini")

    on_event receives {"type": "content" | "tool_status" | "error" | "done", ...}.
    on_tool_call receives each ToolCallRecord as its tool finishes.
    Both are plain callbacks; failures inside them are logged and ignored.
    """

    def __init__(
        self,
        client: ChatClient,
        registry: ToolRegistry,
        limits: RunLimits = None,
        on_event: Callable[[dict], None] = None,
        on_tool_call: Callable[[ToolCallRecord], None] = None,
        completion_check: CompletionCheck = None,
        context: ToolContext = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.registry = registry
        self.limits = limits or RunLimits()
        self.on_event = on_event
        self.on_tool_call = on_tool_call
        self.completion_check = completion_check
        self.context = context
        self._clock = clock
        self._sleep = sleep

    def _emit(self, event: dict):
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.debug("Run event handler failed: %s", e)

    def _elapsed(self, start: float) -> float:
        return self._clock() - start

    def _time_limit_note(self) -> str:
        limit = int(self.limits.max_duration_seconds)
        amount, unit = (limit // 60, "minute") if limit >= 60 else (limit, "second")
        return f"[Stopped: time limit reached after {amount} {unit}{'' if amount == 1 else 's'}]"

    # -------------------------------------------------------------------------
    # Streaming with retry
    # -------------------------------------------------------------------------

    async def _stream_once(self, model: str, history: list[dict], tools: list[dict] | None,
                           transcript: _Transcript, round_no: int) -> StreamResult:
        content_chunks = []
        calls: dict[int, dict] = {}
        error = None

        try:
            async for delta in self.client.stream(model, history, tools):
                if delta.content:
                    content_chunks.append(delta.content)
                    transcript.add(delta.content)
                for tc in delta.tool_calls:
                    slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.name:
                        slot["name"] += tc.name
                    if tc.arguments:
                        slot["arguments"] += tc.arguments
        except Exception as e:
            error = e

        content = "".join(content_chunks)
        if error is not None:
            if content:
                # Partial output is kept; half-streamed tool calls are not
                logger.warning("Stream interrupted after partial content, keeping it: %s", error)
                return StreamResult(content=content, error=str(error))
            raise error

        pending = [
            PendingToolCall(
                id=slot["id"] or f"call_{round_no}_{index}",
                name=slot["name"],
                arguments=slot["arguments"],
            )
            for index, slot in sorted(calls.items())
            if slot["name"]
        ]
        if not content and not pending:
            raise RuntimeError("Empty response from model")
        return StreamResult(content=content, tool_calls=pending)

    async def _stream_with_retry(self, model: str, history: list[dict], tools: list[dict] | None,
                                 transcript: _Transcript, round_no: int) -> StreamResult:
        last_error: Exception | None = None
        attempts = self.limits.max_retries + 1

        for attempt in range(attempts):
            if attempt:
                delay = attempt * self.limits.retry_backoff_seconds
                logger.warning(
                    "%s model error (attempt %d/%d), retrying in %.1fs: %s",
                    "Transient" if is_transient_error(last_error) else "Unexpected",
                    attempt, attempts, delay, last_error,
                )
                await self._sleep(delay)
            try:
                return await self._stream_once(model, history, tools, transcript, round_no)
            except Exception as e:
                last_error = e

        raise StreamFailedError(str(last_error) if last_error else "Model call failed")

    # -------------------------------------------------------------------------
    # Tool execution
    # -------------------------------------------------------------------------

    async def _run_tool_calls(self, calls: list[PendingToolCall], history: list[dict],
                              records: list[ToolCallRecord]):
        image_messages = []
        for call in calls:
            args = _parse_args(call.arguments)
            self._emit({"type": "tool_status", "status": "searching", "tool": call.name, "args": args})

            result = await self.registry.dispatch(call.name, call.arguments, self.context)
            text = truncate_result(result.content, self.limits.max_tool_result_chars)

            history.append({"role": "tool", "tool_call_id": call.id, "content": text})
            if result.images:
                image_messages.append(_image_message(call.name, result))

            record = ToolCallRecord(tool=call.name, args=args, result=text)
            records.append(record)
            if self.on_tool_call is not None:
                call_best_effort("tool call callback", self.on_tool_call, record, log=logger)

            self._emit({
                "type": "tool_status",
                "status": "complete",
                "tool": call.name,
                "args": args,
                "sources": result.sources,
            })

        # Images follow the whole block of tool messages
        history.extend(image_messages)

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    async def run(self, messages: list[dict], model: str) -> RunOutcome:
        start = self._clock()
        transcript = _Transcript(self._emit)
        records: list[ToolCallRecord] = []
        history = list(messages)
        task = _first_user_text(messages)

        tools = self.registry.list_definitions() if self.registry is not None and self.registry.has_any() else None
        iterations = 0
        nudges = 0
        stop_reason = "completed"

        while True:
            if self._elapsed(start) >= self.limits.max_duration_seconds:
                logger.info("Run stopped: wall-clock limit of %ss", self.limits.max_duration_seconds)
                transcript.note(self._time_limit_note())
                stop_reason = "time_limit"
                break

            if tools and iterations >= self.limits.max_iterations:
                logger.info("Run stopped: %d tool rounds", iterations)
                transcript.note(f"[Stopped: reached the limit of {self.limits.max_iterations} tool rounds]")
                stop_reason = "iteration_limit"
                break

            iterations += 1
            transcript.begin_round()
            history = prune_images(history, self.limits.keep_recent_images)

            try:
                result = await self._stream_with_retry(model, history, tools, transcript, iterations)
            except StreamFailedError as e:
                logger.error("Run failed: %s", e)
                self._emit({"type": "error", "error": str(e)})
                return RunOutcome(
                    content=transcript.text,
                    tool_calls=records,
                    duration_ms=int(self._elapsed(start) * 1000),
                    status="error",
                    stop_reason="error",
                    error=str(e),
                    iterations=iterations,
                    nudges=nudges,
                )

            if not tools:
                # Plain completion: one call, no tool round-trip
                break

            if not result.tool_calls:
                if self.completion_check is None:
                    break
                progress = self.completion_check(records)
                if progress.complete:
                    break
                if nudges >= self.limits.max_nudges:
                    logger.info("Run accepted incomplete after %d nudges (missing %s)", nudges, progress.missing)
                    stop_reason = "nudge_limit"
                    break
                nudges += 1
                logger.info("Nudging stalled run (%d/%d), missing %s", nudges, self.limits.max_nudges, progress.missing)
                history = compact_history(history, progress_summary(progress, task))
                continue

            history.append({
                "role": "assistant",
                "content": result.content or None,
                "tool_calls": [
                    {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                    for c in result.tool_calls
                ],
            })
            await self._run_tool_calls(result.tool_calls, history, records)

        final = transcript.text
        self._emit({"type": "done", "content": final})
        return RunOutcome(
            content=final,
            tool_calls=records,
            duration_ms=int(self._elapsed(start) * 1000),
            status="success",
            stop_reason=stop_reason,
            iterations=iterations,
            nudges=nudges,
        )
