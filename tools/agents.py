"""
Agent Tools

Let one agent look at the others: list every configured agent, or pull a
specific agent's memory file, latest run output and related memories.
"""

from tools import ToolContext, tool
from utils.safety import run_best_effort

LAST_OUTPUT_CHARS = 1000


def _find_agent(store, name: str):
    """Exact or case-insensitive name, then substring match on name or id."""
    agent = store.get_agent_by_name(name)
    if agent is not None:
        return agent
    needle = name.lower()
    for candidate in store.list_agents():
        if needle in candidate.name.lower() or needle in candidate.id.lower():
            return candidate
    return None


@tool
def list_agents(context: ToolContext = None) -> str:
    """List all configured agents with their schedules and last run status."""
    store = context.agent_store
    if store is None:
        return "Agent storage is not configured."
    agents = store.list_agents()
    if not agents:
        return "No agents configured."

    lines = []
    for a in agents:
        status = "enabled" if a.enabled else "disabled"
        schedule = a.cron_schedule or "manual"
        last = a.last_run_at or "Never"
        lines.append(
            f"**{a.name}** ({status})\n   Schedule: {schedule} | Last run: {last} ({a.last_run_status or 'N/A'})"
        )
    return f"## Agents ({len(agents)})\n\n" + "\n\n".join(lines)


@tool
async def ask_agent(agent_name: str, question: str | None = None, context: ToolContext = None) -> str:
    """Look up another agent's memory, latest run output and status.

    Args:
        agent_name: Name of the agent to query (e.g. "Morning Brief")
        question: Optional question to focus the related-memory lookup
    """
    store = context.agent_store
    if store is None:
        return "Agent storage is not configured."

    agent = _find_agent(store, agent_name)
    if agent is None:
        names = ", ".join(a.name for a in store.list_agents())
        return f'Agent "{agent_name}" not found. Available agents: {names or "none"}'

    parts = [
        f"## Agent: {agent.name}",
        f"Schedule: {agent.cron_schedule or 'manual'}",
        f"Status: {'Enabled' if agent.enabled else 'Disabled'}",
        f"Last run: {agent.last_run_at or 'Never'} ({agent.last_run_status or 'N/A'})",
        f"\n### Prompt\n{agent.system_prompt.strip() or '(empty)'}",
    ]

    if context.notes is not None:
        memory = context.notes.read(context.notes.memory_file(agent.memory_path))
        parts.append(f"\n### Agent Memory\n{memory.strip() if memory and memory.strip() else '(No memory file yet)'}")

    last_run = store.last_run(agent.id)
    if last_run and last_run.output:
        output = last_run.output
        if len(output) > LAST_OUTPUT_CHARS:
            output = output[:LAST_OUTPUT_CHARS] + "..."
        parts.append(f"\n### Latest Run Output\n{output}")

    if question and context.vector_store is not None:
        memories = await run_best_effort(
            "related memory lookup",
            context.vector_store.search(question, k=3, source_prefix=f"{agent.memory_path}/"),
            default=[],
        )
        if memories:
            parts.append(f'\n### Related Memory (for: "{question}")')
            parts.extend(f"- {m.content} ({m.similarity}% match)" for m in memories)

    return "\n".join(parts)
