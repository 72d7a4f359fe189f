"""
Unit tests for memory/store.py and memory/embeddings.py

Tests cover:
- store_chunk / search round trip and nearest-first ordering
- Batch writes are atomic when embedding fails
- Source-prefix and type filters
- Deletion by id and by source prefix
- Stats and chunk lookup
- Hash embeddings and provider selection
"""

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from errors import EmbeddingError
from memory.embeddings import HashEmbeddings, LiteLLMEmbeddings, create_provider
from memory.store import ChunkInput, VectorStore, deserialize_embedding, serialize_embedding


class FailingEmbeddings(HashEmbeddings):
    """Embeds single texts fine but fails any batch containing 'poison'."""

    async def embed_batch(self, texts):
        if any("poison" in t for t in texts):
            raise EmbeddingError("provider rejected the batch")
        return await super().embed_batch(texts)


# =============================================================================
# Search
# =============================================================================


class TestSearch:
    """Nearest-neighbour search."""

    @pytest.mark.asyncio
    async def test_banana_bread_ranked_first(self, vector_store):
        await vector_store.store_chunk("quarterly tax filing deadlines", type="knowledge")
        banana_id = await vector_store.store_chunk("banana bread recipe", type="note")
        await vector_store.store_chunk("kubernetes cluster upgrade notes", type="knowledge")

        results = await vector_store.search("banana bread", k=3)

        assert len(results) == 3
        assert results[0].id == banana_id
        assert results[0].distance == min(r.distance for r in results)
        assert [r.distance for r in results] == sorted(r.distance for r in results)

    @pytest.mark.asyncio
    async def test_same_text_is_top_result(self, vector_store):
        await vector_store.store_chunks(["the sky is blue", "cats sleep a lot", "rust borrow checker"])
        chunk_id = await vector_store.store_chunk("meeting moved to thursday afternoon")

        results = await vector_store.search("meeting moved to thursday afternoon", k=1)
        assert results[0].id == chunk_id
        assert results[0].distance == pytest.approx(0.0, abs=1e-5)
        assert results[0].similarity == 100

    @pytest.mark.asyncio
    async def test_k_limits_results(self, vector_store):
        await vector_store.store_chunks([f"note number {i}" for i in range(5)])
        assert len(await vector_store.search("note", k=2)) == 2
        assert await vector_store.search("note", k=0) == []

    @pytest.mark.asyncio
    async def test_empty_store(self, vector_store):
        assert await vector_store.search("anything") == []

    @pytest.mark.asyncio
    async def test_source_prefix_filter(self, vector_store):
        await vector_store.store_chunk("banana bread", source="kitchen/recipes")
        await vector_store.store_chunk("banana bread", source="garden/plants")

        results = await vector_store.search("banana bread", source_prefix="kitchen/")
        assert [r.source for r in results] == ["kitchen/recipes"]

    @pytest.mark.asyncio
    async def test_type_filter(self, vector_store):
        await vector_store.store_chunk("banana bread", type="note")
        await vector_store.store_chunk("banana bread", type="knowledge")

        results = await vector_store.search("banana bread", type="note")
        assert [r.type for r in results] == ["note"]

    @pytest.mark.asyncio
    async def test_prefix_with_like_wildcards_is_literal(self, vector_store):
        await vector_store.store_chunk("a", source="a_b/x")
        await vector_store.store_chunk("a", source="aXb/x")
        results = await vector_store.search("a", source_prefix="a_b/")
        assert [r.source for r in results] == ["a_b/x"]


# =============================================================================
# Writes
# =============================================================================


class TestWrites:
    """store_chunks atomicity and deletions."""

    @pytest.mark.asyncio
    async def test_batch_ids_in_order(self, vector_store):
        ids = await vector_store.store_chunks([
            ChunkInput("first", source="s"),
            {"content": "second", "type": "note"},
            "third",
        ])
        assert len(ids) == 3
        assert ids == sorted(ids)
        assert vector_store.get_chunk(ids[1]).type == "note"
        assert vector_store.get_chunk(ids[2]).content == "third"

    @pytest.mark.asyncio
    async def test_batch_atomic_on_embedding_failure(self):
        store = VectorStore(":memory:", provider=FailingEmbeddings(dim=64), dim=64)
        await store.store_chunk("kept")

        with pytest.raises(EmbeddingError):
            await store.store_chunks(["fine", "also fine", "poison pill"])

        assert store.count() == 1
        assert store.conn.execute("SELECT COUNT(*) FROM memory_embeddings").fetchone()[0] == 1
        store.close()

    @pytest.mark.asyncio
    async def test_wrong_dimension_rejected(self):
        store = VectorStore(":memory:", provider=HashEmbeddings(dim=32), dim=64)
        with pytest.raises(EmbeddingError):
            await store.store_chunk("mismatch")
        assert store.count() == 0
        store.close()

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, vector_store):
        with pytest.raises(ValueError):
            await vector_store.store_chunks([ChunkInput("x", type="secret")])
        assert vector_store.count() == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, vector_store):
        assert await vector_store.store_chunks([]) == []

    @pytest.mark.asyncio
    async def test_delete_chunk(self, vector_store):
        chunk_id = await vector_store.store_chunk("temporary")
        assert await vector_store.delete_chunk(chunk_id) is True
        assert await vector_store.delete_chunk(chunk_id) is False
        assert vector_store.get_chunk(chunk_id) is None
        assert await vector_store.search("temporary") == []

    @pytest.mark.asyncio
    async def test_delete_by_source(self, vector_store):
        await vector_store.store_chunks([
            ChunkInput("a", source="brief/run1"),
            ChunkInput("b", source="brief/run2"),
            ChunkInput("c", source="other/run1"),
        ])
        assert await vector_store.delete_by_source("brief/") == 2
        assert vector_store.count() == 1
        assert vector_store.conn.execute("SELECT COUNT(*) FROM memory_embeddings").fetchone()[0] == 1

    @pytest.mark.asyncio
    async def test_delete_by_empty_prefix_refused(self, vector_store):
        await vector_store.store_chunk("keep me")
        with pytest.raises(ValueError):
            await vector_store.delete_by_source("")
        assert vector_store.count() == 1

    @pytest.mark.asyncio
    async def test_stats(self, vector_store):
        await vector_store.store_chunks([
            ChunkInput("a", type="note"),
            ChunkInput("b", type="note"),
            ChunkInput("c", type="knowledge"),
        ])
        assert vector_store.get_stats() == {"total": 3, "by_type": {"note": 2, "knowledge": 1}}

    @pytest.mark.asyncio
    async def test_persists_to_disk(self, tmp_dir, embeddings):
        path = str(tmp_dir / "memory.db")
        store = VectorStore(path, provider=embeddings, dim=embeddings.dim)
        chunk_id = await store.store_chunk("durable fact")
        store.close()

        reopened = VectorStore(path, provider=embeddings, dim=embeddings.dim)
        results = await reopened.search("durable fact", k=1)
        assert results[0].id == chunk_id
        reopened.close()


# =============================================================================
# Embeddings
# =============================================================================


class TestEmbeddings:
    """Serialization helpers and providers."""

    def test_serialize_round_trip(self):
        vector = [0.25, -0.5, 1.0]
        assert list(deserialize_embedding(serialize_embedding(vector))) == vector

    @pytest.mark.asyncio
    async def test_hash_embeddings_normalized_and_deterministic(self):
        provider = HashEmbeddings(dim=128)
        first = await provider.embed("Banana bread!")
        second = await provider.embed("banana BREAD")
        assert first == second
        assert sum(v * v for v in first) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_hash_embeddings_are_plain_unit_lists(self):
        provider = HashEmbeddings(dim=64)
        once, twice, other = await provider.embed_batch(["banana", "banana banana", "sourdough starter"])
        assert type(once) is list and len(once) == 64
        assert all(type(v) is float for v in once)
        assert once == pytest.approx(twice)
        assert np.linalg.norm(other) == pytest.approx(1.0)
        assert sum(1 for v in once if v) == 1

    @pytest.mark.asyncio
    async def test_hash_embeddings_empty_text(self):
        vector = await HashEmbeddings(dim=8).embed("")
        assert vector == [1.0] + [0.0] * 7

    def test_provider_forced_hash(self, clean_env):
        with patch.dict(os.environ, {"AGENTDECK_EMBEDDINGS": "hash"}):
            assert isinstance(create_provider(), HashEmbeddings)

    def test_provider_without_key_falls_back(self, clean_env):
        assert isinstance(create_provider("text-embedding-3-small", 1536), HashEmbeddings)

    def test_provider_with_key(self, clean_env, mock_openai_key):
        provider = create_provider("text-embedding-3-small", 1536)
        assert isinstance(provider, LiteLLMEmbeddings)
        assert provider.dim == 1536

    @pytest.mark.asyncio
    async def test_litellm_batch_sorted_by_index(self):
        response = SimpleNamespace(data=[
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ])
        with patch("litellm.aembedding", new=AsyncMock(return_value=response)) as mock_embed:
            vectors = await LiteLLMEmbeddings(model="m", dim=2).embed_batch(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert mock_embed.await_count == 1
        assert mock_embed.call_args.kwargs["input"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_litellm_failure_raises_embedding_error(self):
        with patch("litellm.aembedding", new=AsyncMock(side_effect=RuntimeError("401"))):
            with pytest.raises(EmbeddingError):
                await LiteLLMEmbeddings(model="m", dim=2).embed_batch(["a"])

    @pytest.mark.asyncio
    async def test_litellm_count_mismatch(self):
        response = SimpleNamespace(data=[{"index": 0, "embedding": [1.0, 0.0]}])
        with patch("litellm.aembedding", new=AsyncMock(return_value=response)):
            with pytest.raises(EmbeddingError):
                await LiteLLMEmbeddings(model="m", dim=2).embed_batch(["a", "b"])
