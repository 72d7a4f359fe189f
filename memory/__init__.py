"""
Memory for agentdeck agents.

Two complementary layers:
1. Vector memory - embedded chunks searched by meaning (VectorStore)
2. Memory notes - plain markdown files per agent, read into every prompt (NoteStore)

Usage:
    from memory import VectorStore, NoteStore

    store = VectorStore("~/.agentdeck/memory.db")
    await store.store_chunk("Prefers morning summaries", type="note", source="morning-brief")
    results = await store.search("summary timing", k=3, source_prefix="morning-brief")

    notes = NoteStore("~/.agentdeck/agents")
    notes.write("morning-brief/memory.md", "# Topics\\n- rust\\n")
"""

from .chunking import chunk_text, chunk_conversation
from .embeddings import (
    EmbeddingProvider,
    LiteLLMEmbeddings,
    HashEmbeddings,
    get_provider,
    set_provider,
)
from .notes import NoteStore
from .store import VectorStore, MemoryChunk, MemorySearchResult, ChunkInput

__all__ = [
    "chunk_text",
    "chunk_conversation",
    "EmbeddingProvider",
    "LiteLLMEmbeddings",
    "HashEmbeddings",
    "get_provider",
    "set_provider",
    "NoteStore",
    "VectorStore",
    "MemoryChunk",
    "MemorySearchResult",
    "ChunkInput",
]
