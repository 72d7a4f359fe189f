"""
Core data models for agents and their runs.

AgentConfig mirrors what configuration commands persist; AgentRun and
ToolCallRecord are the values a run produces for the storage layer.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Literal

RunStatus = Literal["running", "success", "error"]

# Results kept in the persisted tool-call log
TOOL_LOG_RESULT_CHARS = 500


def now_iso() -> str:
    """Current UTC time as an ISO string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    return str(uuid.uuid4())


def slugify(name: str) -> str:
    """Lowercase, dash-separated form of a name, used for default memory paths."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "agent"


@dataclass
class AgentConfig:
    """
    A named, independently schedulable agent.

    cron_schedule is a 5-field cron expression, or "" for manual-only agents.
    memory_path is the agent's namespace: its notes directory (relative to
    the notes root) and the source prefix of its vector memories.
    """
    id: str
    name: str
    system_prompt: str = ""
    cron_schedule: str = ""
    model: str = ""
    memory_path: str = ""
    enabled: bool = True
    last_run_at: str | None = None
    last_run_status: str | None = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Agent requires a name")
        self.cron_schedule = (self.cron_schedule or "").strip()
        if not self.memory_path:
            self.memory_path = slugify(self.name)

    @property
    def is_scheduled(self) -> bool:
        return self.enabled and bool(self.cron_schedule)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        """Build from a config/store dict, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if not known.get("id"):
            known["id"] = slugify(known.get("name", "")) if known.get("name") else generate_id()
        known["enabled"] = bool(known.get("enabled", True))
        return cls(**known)


@dataclass
class ToolCallRecord:
    """One completed tool call, as kept in the run log."""
    tool: str
    args: dict[str, Any]
    result: str

    def truncated(self, limit: int = TOOL_LOG_RESULT_CHARS) -> "ToolCallRecord":
        return ToolCallRecord(self.tool, self.args, self.result[:limit])

    def to_dict(self) -> dict:
        return {"tool": self.tool, "args": self.args, "result": self.result}


def serialize_tool_log(records: list[ToolCallRecord], limit: int = TOOL_LOG_RESULT_CHARS) -> str:
    """JSON text of a tool-call log with results truncated for storage."""
    return json.dumps([r.truncated(limit).to_dict() for r in records], default=str)


@dataclass
class AgentRun:
    """Record of one agent execution."""
    id: str
    agent_id: str
    status: RunStatus = "running"
    started_at: str = field(default_factory=now_iso)
    completed_at: str | None = None
    output: str = ""
    tool_calls: str = "[]"
    duration_ms: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "error")

    def tool_log(self) -> list[dict]:
        try:
            return json.loads(self.tool_calls or "[]")
        except json.JSONDecodeError:
            return []

    def to_dict(self) -> dict:
        return asdict(self)
