"""
SQLite persistence for agents and their run records.

This is the storage collaborator the scheduler and job runner talk to.
It is deliberately small: agents are upserted from configuration, runs are
created once as `running` and finalized once as `success` or `error`.

Storage location: ~/.agentdeck/agents.db (configurable)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

from errors import RunFinalizedError
from models import AgentConfig, AgentRun, generate_id, now_iso

logger = logging.getLogger(__name__)


class AgentStore:
    """
    SQLite-backed agent and run storage.

    Methods are synchronous; async callers wrap them in asyncio.to_thread.
    Pass ":memory:" for an ephemeral store.
    """

    def __init__(self, db_path: str = "~/.agentdeck/agents.db"):
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection (lazy initialization)."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._create_tables()
        return self._conn

    def _create_tables(self):
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                system_prompt TEXT NOT NULL DEFAULT '',
                cron_schedule TEXT NOT NULL DEFAULT '',
                model TEXT NOT NULL DEFAULT '',
                memory_path TEXT NOT NULL DEFAULT '',
                enabled INTEGER NOT NULL DEFAULT 1,
                last_run_at TEXT,
                last_run_status TEXT
            );

            CREATE TABLE IF NOT EXISTS agent_runs (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                output TEXT NOT NULL DEFAULT '',
                tool_calls TEXT NOT NULL DEFAULT '[]',
                duration_ms INTEGER,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_runs_agent ON agent_runs(agent_id, started_at);
            """
        )
        self._conn.commit()

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Agents
    # =========================================================================

    def _row_to_agent(self, row: sqlite3.Row) -> AgentConfig:
        data = dict(row)
        data["enabled"] = bool(data["enabled"])
        return AgentConfig(**data)

    def list_agents(self, enabled_only: bool = False) -> list[AgentConfig]:
        sql = "SELECT * FROM agents"
        if enabled_only:
            sql += " WHERE enabled = 1"
        rows = self.conn.execute(sql + " ORDER BY name").fetchall()
        return [self._row_to_agent(r) for r in rows]

    def get_agent(self, agent_id: str) -> AgentConfig | None:
        row = self.conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return self._row_to_agent(row) if row else None

    def get_agent_by_name(self, name: str) -> AgentConfig | None:
        """Exact name match first, then case-insensitive."""
        row = self.conn.execute("SELECT * FROM agents WHERE name = ?", (name,)).fetchone()
        if row is None:
            row = self.conn.execute(
                "SELECT * FROM agents WHERE lower(name) = lower(?)", (name,)
            ).fetchone()
        return self._row_to_agent(row) if row else None

    def upsert_agent(self, agent: AgentConfig) -> AgentConfig:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO agents (id, name, system_prompt, cron_schedule, model,
                                    memory_path, enabled, last_run_at, last_run_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    system_prompt = excluded.system_prompt,
                    cron_schedule = excluded.cron_schedule,
                    model = excluded.model,
                    memory_path = excluded.memory_path,
                    enabled = excluded.enabled
                """,
                (
                    agent.id, agent.name, agent.system_prompt, agent.cron_schedule,
                    agent.model, agent.memory_path, int(agent.enabled),
                    agent.last_run_at, agent.last_run_status,
                ),
            )
        return agent

    def delete_agent(self, agent_id: str) -> bool:
        """Delete an agent together with its run history."""
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
            self.conn.execute("DELETE FROM agent_runs WHERE agent_id = ?", (agent_id,))
        return cur.rowcount > 0

    def mark_agent_run(self, agent_id: str, status: str, at: str = None):
        """Record the outcome of the agent's most recent run."""
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE agents SET last_run_at = ?, last_run_status = ? WHERE id = ?",
                (at or now_iso(), status, agent_id),
            )

    def sync_agents(self, configs: list[dict]) -> list[AgentConfig]:
        """Upsert agents declared in configuration. Invalid entries are skipped."""
        synced = []
        for data in configs or []:
            try:
                agent = AgentConfig.from_dict(data)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping invalid agent config %r: %s", data, e)
                continue
            synced.append(self.upsert_agent(agent))
        return synced

    # =========================================================================
    # Runs
    # =========================================================================

    def create_run(self, agent_id: str) -> AgentRun:
        run = AgentRun(id=generate_id(), agent_id=agent_id)
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO agent_runs (id, agent_id, status, started_at) VALUES (?, ?, ?, ?)",
                (run.id, run.agent_id, run.status, run.started_at),
            )
        return run

    def finish_run(
        self,
        run_id: str,
        status: str,
        output: str = "",
        tool_calls: str = "[]",
        duration_ms: int = None,
        error: str = None,
    ) -> AgentRun:
        """
        Finalize a run exactly once.

        Raises:
            ValueError: status is not terminal
            RunFinalizedError: the run is unknown or already finalized
        """
        if status not in ("success", "error"):
            raise ValueError(f"Not a terminal run status: {status}")
        with self._lock, self.conn:
            cur = self.conn.execute(
                """
                UPDATE agent_runs
                SET status = ?, completed_at = ?, output = ?, tool_calls = ?,
                    duration_ms = ?, error = ?
                WHERE id = ? AND status = 'running'
                """,
                (status, now_iso(), output, tool_calls, duration_ms, error, run_id),
            )
        if cur.rowcount == 0:
            raise RunFinalizedError(f"Run {run_id} is unknown or already finalized")
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> AgentRun | None:
        row = self.conn.execute("SELECT * FROM agent_runs WHERE id = ?", (run_id,)).fetchone()
        return AgentRun(**dict(row)) if row else None

    def list_runs(self, agent_id: str, limit: int = 20) -> list[AgentRun]:
        rows = self.conn.execute(
            "SELECT * FROM agent_runs WHERE agent_id = ? ORDER BY started_at DESC LIMIT ?",
            (agent_id, limit),
        ).fetchall()
        return [AgentRun(**dict(r)) for r in rows]

    def last_run(self, agent_id: str, status: str = None) -> AgentRun | None:
        sql = "SELECT * FROM agent_runs WHERE agent_id = ?"
        params: list = [agent_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        row = self.conn.execute(sql + " ORDER BY started_at DESC LIMIT 1", params).fetchone()
        return AgentRun(**dict(row)) if row else None
