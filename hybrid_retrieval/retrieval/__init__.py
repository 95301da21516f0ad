"""
Retrieval Package - Hybrid Search over Dense and Lexical Indexes.

This package implements a two-way hybrid retrieval pipeline:
- BM25 lexical/keyword matching (in-process inverted index)
- Dense vector search behind the VectorStore contract (memory, Qdrant)

Results are fused using weighted Reciprocal Rank Fusion (RRF).
"""

from hybrid_retrieval.retrieval.bm25_retriever import (
    BM25Index,
    BM25Parameters,
    BM25Tokenizer,
    IndexStats,
    create_bm25_index,
    default_preprocessor,
)
from hybrid_retrieval.retrieval.concurrency import ReadWriteLock
from hybrid_retrieval.retrieval.types import (
    DataType,
    FieldKind,
    FieldSchema,
    FieldValue,
    IndexSpec,
    InsertResult,
    Metric,
    Record,
    RecordFailure,
    Schema,
    SearchResult,
)
from hybrid_retrieval.retrieval.vector_store import (
    VectorStore,
    available_backends,
    create_vector_store,
    register_backend,
)
from hybrid_retrieval.retrieval.memory_store import FieldMatch, MemoryVectorStore
from hybrid_retrieval.retrieval.hybrid_search import (
    HybridSearcher,
    HybridSearchResult,
    RRFReranker,
    create_hybrid_searcher,
    reciprocal_rank_fusion,
)

__all__ = [
    # BM25
    "BM25Index",
    "BM25Parameters",
    "BM25Tokenizer",
    "IndexStats",
    "create_bm25_index",
    "default_preprocessor",
    # Vector store
    "DataType",
    "FieldKind",
    "FieldSchema",
    "FieldValue",
    "IndexSpec",
    "InsertResult",
    "Metric",
    "Record",
    "RecordFailure",
    "Schema",
    "SearchResult",
    "VectorStore",
    "available_backends",
    "create_vector_store",
    "register_backend",
    "FieldMatch",
    "MemoryVectorStore",
    # Hybrid
    "HybridSearcher",
    "HybridSearchResult",
    "RRFReranker",
    "create_hybrid_searcher",
    "reciprocal_rank_fusion",
    # Concurrency
    "ReadWriteLock",
]
