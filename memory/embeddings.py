"""
Embedding generation for the vector memory store.

Providers:
- LiteLLMEmbeddings: any LiteLLM-supported embedding model (default
  text-embedding-3-small, 1536 dims). One request per batch.
- HashEmbeddings: deterministic bag-of-words feature hashing. Needs no API
  key; texts sharing words land close together, which is enough for tests
  and for running offline.

Provider selection (get_provider):
1. AGENTDECK_EMBEDDINGS=hash forces HashEmbeddings
2. An OpenAI embedding model without OPENAI_API_KEY falls back to HashEmbeddings
3. Otherwise LiteLLMEmbeddings

Providers raise EmbeddingError on failure. There is no silent fallback at
call time: a store write whose embeddings fail must not be written.
"""

import hashlib
import logging
import os
import re

import litellm
import numpy as np

from errors import EmbeddingError

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True

DEFAULT_MODEL = "text-embedding-3-small"
EMBEDDING_DIM = 1536

# Longer inputs are cut before embedding
MAX_EMBED_CHARS = 8000


# ═══════════════════════════════════════════════════════════
# EMBEDDING PROVIDERS
# ═══════════════════════════════════════════════════════════


class EmbeddingProvider:
    """Base class for embedding providers."""

    dim: int = EMBEDDING_DIM
    model: str = ""

    async def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts, in input order."""
        raise NotImplementedError


class LiteLLMEmbeddings(EmbeddingProvider):
    """LiteLLM-based embeddings supporting multiple providers."""

    def __init__(self, model: str = DEFAULT_MODEL, dim: int = EMBEDDING_DIM, api_base: str = None):
        self.model = model
        self.dim = dim
        self.api_base = api_base

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        texts = [t[:MAX_EMBED_CHARS] if len(t) > MAX_EMBED_CHARS else t for t in texts]
        kwargs = {"model": self.model, "input": texts}
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = await litellm.aembedding(**kwargs)
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        data = sorted(response.data, key=lambda d: _field(d, "index", 0))
        embeddings = [list(_field(d, "embedding")) for d in data]

        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Embedding response has {len(embeddings)} vectors for {len(texts)} inputs"
            )
        for vector in embeddings:
            if len(vector) != self.dim:
                raise EmbeddingError(f"Expected {self.dim}-dim embeddings, got {len(vector)}")
        return embeddings


def _field(item, name: str, default=None):
    """Read a field from a litellm response item (dict or object)."""
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


_TOKEN_RE = re.compile(r"[a-z0-9]+")


class HashEmbeddings(EmbeddingProvider):
    """Deterministic bag-of-words embeddings via feature hashing."""

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim
        self.model = "hash"

    def _vector(self, text: str) -> list[float]:
        vector = np.zeros(self.dim, dtype=np.float64)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode(), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dim
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0
        norm = np.linalg.norm(vector)
        if norm == 0:
            # Empty text still needs a valid, non-zero vector
            vector[0] = 1.0
            return vector.tolist()
        return (vector / norm).tolist()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(t) for t in texts]


# Global provider instance
_provider: EmbeddingProvider | None = None


def create_provider(model: str = DEFAULT_MODEL, dim: int = EMBEDDING_DIM) -> EmbeddingProvider:
    """Create an embedding provider based on configuration and available API keys."""
    if os.environ.get("AGENTDECK_EMBEDDINGS", "").lower() == "hash" or model == "hash":
        return HashEmbeddings(dim=dim)

    if model.startswith("text-embedding") and not os.environ.get("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not set; using hash embeddings for %s", model)
        return HashEmbeddings(dim=dim)

    return LiteLLMEmbeddings(model=model, dim=dim)


def get_provider() -> EmbeddingProvider:
    """Get the current embedding provider."""
    global _provider
    if _provider is None:
        _provider = create_provider()
    return _provider


def set_provider(provider: EmbeddingProvider | None):
    """Set (or with None, reset) the global embedding provider."""
    global _provider
    _provider = provider
