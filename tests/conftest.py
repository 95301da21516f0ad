"""
Pytest configuration and fixtures.
"""

import os
import zlib

import pytest

# Set test environment
os.environ["VECTOR_STORE_BACKEND"] = "memory"
os.environ["VECTOR_STORE_DIMENSION"] = "16"

TEST_DIMENSION = 16


class HashingEmbedder:
    """Deterministic bag-of-words embedder: identical texts embed identically."""

    def __init__(self, dimension: int = TEST_DIMENSION):
        self.dimension = dimension
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self.dimension
        for token in text.lower().split():
            vector[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
        return vector


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Rebuild settings per test so environment changes take effect."""
    from hybrid_retrieval.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def embedder():
    """Deterministic embedding provider."""
    return HashingEmbedder()


@pytest.fixture
def embedding_service(embedder):
    """Embedding service over the deterministic provider."""
    from hybrid_retrieval.pipeline.embedding import EmbeddingService
    return EmbeddingService(embedder, dimension=TEST_DIMENSION)


@pytest.fixture
def memory_store():
    """Empty in-memory vector store."""
    from hybrid_retrieval.retrieval.memory_store import MemoryVectorStore
    return MemoryVectorStore()


@pytest.fixture
def chunk_schema():
    """Chunk collection schema with a single embedding field."""
    from hybrid_retrieval.pipeline.indexing import build_chunk_schema
    return build_chunk_schema("docs", TEST_DIMENSION)


@pytest.fixture
def bm25_index():
    """Empty BM25 index with default parameters."""
    from hybrid_retrieval.retrieval.bm25_retriever import BM25Index
    return BM25Index()


@pytest.fixture
def sample_documents():
    """Sample documents for testing."""
    return [
        (1, "Paris is the capital of France. It sits on the Seine.", {"source": "geography.txt"}),
        (2, "The Eiffel Tower is located in Paris. It was finished in 1889.", {"source": "landmarks.txt"}),
        (3, "Python is a programming language. It is popular for data work.", {"source": "tech.txt"}),
    ]
