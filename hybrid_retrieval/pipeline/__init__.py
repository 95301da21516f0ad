"""
Pipeline Package - Chunking, Embedding and Indexing.

This package provides:
- Token counting and sentence splitting
- Sentence-aware, token-bounded chunking with overlap
- Embedding of chunks through an external provider
- Full indexing pipeline orchestration
"""

from hybrid_retrieval.pipeline.tokenisation import (
    SENTENCE_SPLITTERS,
    TiktokenTokenCounter,
    TokenCounter,
    WhitespaceTokenCounter,
    create_token_counter,
    default_sentence_splitter,
    get_sentence_splitter,
    smart_sentence_splitter,
)
from hybrid_retrieval.pipeline.chunking import (
    Chunk,
    TextChunker,
    create_chunker,
)
from hybrid_retrieval.pipeline.embedding import (
    Embedder,
    EmbeddedChunk,
    EmbeddingService,
)
from hybrid_retrieval.pipeline.indexing import (
    DocumentIndexer,
    IndexingResult,
    build_chunk_schema,
    create_document_indexer,
)

__all__ = [
    # Tokenisation
    "SENTENCE_SPLITTERS",
    "TiktokenTokenCounter",
    "TokenCounter",
    "WhitespaceTokenCounter",
    "create_token_counter",
    "default_sentence_splitter",
    "get_sentence_splitter",
    "smart_sentence_splitter",
    # Chunking
    "Chunk",
    "TextChunker",
    "create_chunker",
    # Embedding
    "Embedder",
    "EmbeddedChunk",
    "EmbeddingService",
    # Indexing
    "DocumentIndexer",
    "IndexingResult",
    "build_chunk_schema",
    "create_document_indexer",
]
