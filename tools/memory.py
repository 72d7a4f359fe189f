"""
Memory Tools

- recall_memory: semantic search over vector memory
- save_memory: store a fact or note in vector memory
- create_note / read_note / list_notes: markdown notes under the notes root

Vector memories saved during an agent run are namespaced under the agent's
memory path ("<memory_path>/<source>") so they can be filtered or deleted
together.
"""

import logging
from datetime import datetime
from typing import Literal

from tools import ToolContext, tool
from utils.console import console

logger = logging.getLogger(__name__)


def _require(service, what: str):
    if service is None:
        raise RuntimeError(f"{what} is not configured for this run")
    return service


@tool
async def recall_memory(query: str, limit: int = 5, context: ToolContext = None) -> str:
    """Search long-term memory for information from past runs, stored knowledge and notes.

    Args:
        query: What to search for. Be descriptive and specific.
        limit: Maximum number of results to return (default 5)
    """
    store = _require(context.vector_store, "Vector memory")
    results = await store.search(query, k=max(1, min(limit, 20)))
    if not results:
        return "No relevant memories found."

    formatted = []
    for i, r in enumerate(results, 1):
        date = datetime.fromtimestamp(r.created_at).strftime("%Y-%m-%d")
        formatted.append(f"[{i}] ({r.similarity}% match, {r.type}, {date}) {r.source}\n{r.content}")
    return f"Found {len(results)} relevant memories:\n\n" + "\n\n---\n\n".join(formatted)


@tool
async def save_memory(
    content: str,
    type: Literal["knowledge", "note"] = "knowledge",
    source: str = "Conversation",
    context: ToolContext = None,
) -> str:
    """Save an important fact, preference, decision or piece of knowledge to long-term memory.

    Args:
        content: The fact or knowledge to remember. Be clear and self-contained.
        type: "knowledge" for facts and preferences, "note" for general notes
        source: Where this came from (e.g. "User preference")
    """
    store = _require(context.vector_store, "Vector memory")
    if context.memory_path:
        source = f"{context.memory_path}/{source}"
    chunk_id = await store.store_chunk(content, type=type, source=source)
    console.memory_op("saved", content)
    preview = content[:100] + ("..." if len(content) > 100 else "")
    return f'Saved to memory (id: {chunk_id}): "{preview}"'


@tool
def create_note(path: str, content: str, append: bool = False, context: ToolContext = None) -> str:
    """Create or update a markdown note in persistent memory.

    Use folders to organize notes, e.g. "morning-brief/sources.md".

    Args:
        path: File path relative to the memory root. Must end in .md
        content: The markdown content to write
        append: Append to the existing file instead of overwriting (default false)
    """
    notes = _require(context.notes, "Note storage")
    if not path.endswith(".md"):
        return f'Error: path must end in .md, got "{path}"'

    if append and notes.exists(path):
        notes.write(path, "\n\n" + content, append=True)
    else:
        notes.write(path, content)
    console.memory_op("note", path)
    return f'Note saved to "{path}"'


@tool
def read_note(path: str, context: ToolContext = None) -> str:
    """Read a markdown note from persistent memory.

    Args:
        path: File path relative to the memory root (e.g. "morning-brief/memory.md")
    """
    notes = _require(context.notes, "Note storage")
    content = notes.read(path)
    if content is None:
        return f'File "{path}" not found.'
    return f'Contents of "{path}":\n\n{content}'


@tool
def list_notes(directory: str = "", context: ToolContext = None) -> str:
    """List the note files in persistent memory as a folder tree.

    Args:
        directory: Optional subdirectory to list. Lists everything if omitted.
    """
    notes = _require(context.notes, "Note storage")
    return notes.list_tree(directory)
