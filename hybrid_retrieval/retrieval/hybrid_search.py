"""
Hybrid Search with Reciprocal Rank Fusion (RRF).

Combines two independent rankings of the same corpus:
- Dense vector search (semantic similarity, via a VectorStore)
- BM25 lexical search (exact keyword matching, via a BM25Index)

Both rankings are merged with weighted Reciprocal Rank Fusion, which only
looks at rank positions, so distances and BM25 scores never need to be put
on a common scale.
"""

import logging
import threading
from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass, field
from typing import Any

from hybrid_retrieval.config import RetrievalSettings, get_retrieval_settings, get_vector_store_settings
from hybrid_retrieval.exceptions import InvalidArgumentError, RetrievalError
from hybrid_retrieval.observability.metrics import timed_retrieval, track_retrieval
from hybrid_retrieval.pipeline.embedding import DEFAULT_FIELD, EmbeddingService
from hybrid_retrieval.retrieval.bm25_retriever import BM25Index
from hybrid_retrieval.retrieval.concurrency import raise_if_cancelled
from hybrid_retrieval.retrieval.types import Metric, SearchResult
from hybrid_retrieval.retrieval.vector_store import VectorStore

DEFAULT_RRF_K = 60.0


def _normalize_weights(weights: Sequence[float]) -> list[float]:
    """Clamp negatives to 0 and scale to sum to 1; all-zero weights become equal."""
    clamped = [max(float(w), 0.0) for w in weights]
    total = sum(clamped)
    if total <= 0:
        return [1.0 / len(clamped)] * len(clamped)
    return [w / total for w in clamped]


def reciprocal_rank_fusion(
    result_lists: list[list[tuple[Hashable, float]]],
    k: float = DEFAULT_RRF_K,
    weights: list[float] | None = None,
) -> list[tuple[Hashable, float]]:
    """
    Reciprocal Rank Fusion algorithm.

    Combines multiple ranked lists into a single fused ranking.

    Formula: RRF(d) = Σ (weight_i / (k + rank_i(d)))

    Args:
        result_lists: List of ranked results, each as [(doc_id, score), ...]
        k: RRF constant (default 60, as per original paper); non-positive values reset to 60
        weights: Optional weights for each result list, normalized to sum to 1

    Returns:
        Fused ranked list as [(doc_id, rrf_score), ...]. Ties keep the order in
        which documents were first seen. Only the first occurrence of an ID
        within a single list counts.
    """
    if not result_lists:
        return []

    if k <= 0:
        k = DEFAULT_RRF_K

    if weights is None:
        weights = [1.0] * len(result_lists)
    if len(weights) != len(result_lists):
        raise InvalidArgumentError(
            f"got {len(weights)} weights for {len(result_lists)} result lists"
        )
    weights = _normalize_weights(weights)

    rrf_scores: dict[Hashable, float] = {}

    for weight, results in zip(weights, result_lists):
        seen: set[Hashable] = set()
        for rank, (doc_id, _) in enumerate(results, start=1):
            if doc_id in seen:
                continue
            seen.add(doc_id)
            rrf_scores[doc_id] = rrf_scores.get(doc_id, 0.0) + weight / (k + rank)

    # sorted() is stable, so equal scores stay in first-seen order
    return sorted(rrf_scores.items(), key=lambda x: x[1], reverse=True)


class RRFReranker:
    """
    Weighted RRF over a dense and a sparse ranking.

    Stateless and safe to share between threads.

    Example:
        reranker = RRFReranker(k=60)
        fused = reranker.rerank(dense_results, bm25_results, 0.7, 0.3)
    """

    def __init__(self, k: float = DEFAULT_RRF_K, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(__name__)
        if k <= 0:
            self._logger.debug(f"RRF k={k} is not positive, using {DEFAULT_RRF_K}")
            k = DEFAULT_RRF_K
        self.k = float(k)

    def rerank(
        self,
        dense_results: Sequence[SearchResult],
        sparse_results: Sequence[SearchResult],
        dense_weight: float = 0.5,
        sparse_weight: float = 0.5,
    ) -> list[SearchResult]:
        """
        Fuse two rankings.

        Returns one result per distinct ID across both inputs (no truncation),
        sorted by descending fused score. The fused score replaces the raw
        distance or BM25 score; fields come from the dense result when an ID
        appears in both lists.
        """
        originals: dict[int, SearchResult] = {}
        for result in (*dense_results, *sparse_results):
            originals.setdefault(result.id, result)

        fused = reciprocal_rank_fusion(
            [
                [(r.id, r.score) for r in dense_results],
                [(r.id, r.score) for r in sparse_results],
            ],
            k=self.k,
            weights=[dense_weight, sparse_weight],
        )

        return [
            SearchResult(id=doc_id, score=score, fields=dict(originals[doc_id].fields))
            for doc_id, score in fused
        ]


@dataclass
class HybridSearchResult:
    """Unified search result from hybrid retrieval."""
    id: int
    score: float  # RRF fused score
    text: str = ""

    # Individual scores: dense is a distance, bm25 a relevance score
    dense_score: float | None = None
    bm25_score: float | None = None

    # Ranking info (1-based)
    dense_rank: int | None = None
    bm25_rank: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def sources(self) -> list[str]:
        """Return which retrievers found this document."""
        sources = []
        if self.dense_rank is not None:
            sources.append("dense")
        if self.bm25_rank is not None:
            sources.append("bm25")
        return sources


class HybridSearcher:
    """
    Dense + BM25 hybrid search over a shared document ID space.

    The vector store collection and the BM25 index must be keyed by the same
    IDs; the DocumentIndexer guarantees that for documents it ingests.

    Example:
        searcher = HybridSearcher(
            embedding_service=embeddings,
            vector_store=store,
            collection_name="docs",
            bm25_index=bm25,
        )
        results = searcher.search("legal contract terms", top_k=10)
    """

    def __init__(
        self,
        embedding_service: EmbeddingService | None,
        vector_store: VectorStore | None,
        collection_name: str,
        bm25_index: BM25Index | None,
        reranker: RRFReranker | None = None,
        dense_weight: float | None = None,
        sparse_weight: float | None = None,
        vector_field: str = DEFAULT_FIELD,
        metric: Metric | str | None = None,
        candidate_multiplier: int | None = None,
        output_fields: Sequence[str] = ("text", "metadata"),
        min_score: float | None = None,
        on_result: Callable[[HybridSearchResult], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        settings: RetrievalSettings | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize hybrid searcher.

        Args:
            embedding_service: Embeds queries for the dense path
            vector_store: Dense backend
            collection_name: Collection searched on the dense path
            bm25_index: Sparse index
            reranker: Fusion reranker (default: RRF with configured k)
            dense_weight: Weight for dense results (default from config)
            sparse_weight: Weight for BM25 results (default from config)
            vector_field: Record field holding chunk embeddings
            metric: Distance metric for the dense path (default from config)
            candidate_multiplier: Each path fetches top_k * multiplier candidates
            output_fields: Record fields the vector store returns with each hit
            min_score: Drop fused results whose RRF score is below this (default from config)
            on_result: Called with every returned result
            on_error: Called with any retrieval error before it is re-raised
            settings: Retrieval settings (default: cached application settings)
            logger: Logger to use instead of the module logger
        """
        self._settings = settings or get_retrieval_settings()
        self._logger = logger or logging.getLogger(__name__)

        if embedding_service is None and vector_store is not None:
            raise InvalidArgumentError("the dense path needs an embedding service")

        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.collection_name = collection_name
        self.bm25_index = bm25_index
        self.reranker = reranker or RRFReranker(k=self._settings.rrf_k, logger=self._logger)
        self.vector_field = vector_field
        self.metric = metric or get_vector_store_settings().metric

        self.dense_weight = dense_weight if dense_weight is not None else self._settings.dense_weight
        self.sparse_weight = sparse_weight if sparse_weight is not None else self._settings.sparse_weight
        self.candidate_multiplier = candidate_multiplier or self._settings.candidate_multiplier
        self.min_score = min_score if min_score is not None else self._settings.min_score

        # Projected per dense query; the store-wide column selection is never changed
        self.output_fields = tuple(output_fields)

        self.on_result = on_result
        self.on_error = on_error

    def search(
        self,
        query: str,
        top_k: int | None = None,
        use_dense: bool = True,
        use_sparse: bool = True,
        cancel_event: threading.Event | None = None,
        min_score: float | None = None,
    ) -> list[HybridSearchResult]:
        """
        Perform hybrid search.

        Args:
            query: Search query
            top_k: Number of final results to return (default from config)
            use_dense: Include dense vector results
            use_sparse: Include BM25 results
            cancel_event: Optional event checked between the retrieval steps
            min_score: Per-call override of the fused score threshold. RRF
                scores are larger-is-better, so results scoring below it are
                dropped before truncation to top_k.

        Returns:
            List of hybrid search results fused with RRF
        """
        try:
            return self._search(query, top_k, use_dense, use_sparse, cancel_event, min_score)
        except RetrievalError as e:
            if self.on_error is not None:
                self.on_error(e)
            raise

    def _search(
        self,
        query: str,
        top_k: int | None,
        use_dense: bool,
        use_sparse: bool,
        cancel_event: threading.Event | None,
        min_score: float | None,
    ) -> list[HybridSearchResult]:
        top_k = top_k or self._settings.default_top_k
        fetch_k = top_k * self.candidate_multiplier
        threshold = self.min_score if min_score is None else min_score

        dense: list[SearchResult] = []
        sparse: list[SearchResult] = []

        if use_dense and self.vector_store is not None:
            with timed_retrieval("dense"):
                dense = self._search_dense(query, fetch_k)
            track_retrieval("dense", len(dense))

        raise_if_cancelled(cancel_event, "hybrid search")

        if use_sparse and self.bm25_index is not None:
            with timed_retrieval("bm25"):
                sparse = self.bm25_index.search(query, top_k=fetch_k, cancel_event=cancel_event)
            track_retrieval("bm25", len(sparse))

        if not dense and not sparse:
            self._logger.debug(f"No candidates for query: {query[:50]}")
            return []

        fused = self.reranker.rerank(dense, sparse, self.dense_weight, self.sparse_weight)
        if threshold > 0:
            fused = [r for r in fused if r.score >= threshold]

        dense_info = {r.id: (rank, r.score) for rank, r in enumerate(dense, start=1)}
        sparse_info = {r.id: (rank, r.score) for rank, r in enumerate(sparse, start=1)}

        results = []
        for fused_result in fused[:top_k]:
            d_rank, d_score = dense_info.get(fused_result.id, (None, None))
            s_rank, s_score = sparse_info.get(fused_result.id, (None, None))
            fields = fused_result.fields

            result = HybridSearchResult(
                id=fused_result.id,
                score=fused_result.score,
                text=fields.get("text", ""),
                dense_score=d_score,
                bm25_score=s_score,
                dense_rank=d_rank,
                bm25_rank=s_rank,
                metadata=fields.get("metadata") or {},
            )
            if self.on_result is not None:
                self.on_result(result)
            results.append(result)

        if len(results) < top_k:
            self._logger.debug(f"Returned {len(results)} results, fewer than top_k={top_k}")

        track_retrieval("hybrid", len(results))
        self._logger.debug(f"Hybrid search returned {len(results)} results for query: {query[:50]}")
        return results

    def _search_dense(self, query: str, top_k: int) -> list[SearchResult]:
        """Execute dense vector search."""
        query_vector = self.embedding_service.embed_query(query)
        return self.vector_store.search(
            self.collection_name,
            {self.vector_field: query_vector},
            top_k=top_k,
            metric=self.metric,
            output_fields=self.output_fields,
        )

    def search_with_scores(
        self,
        query: str,
        top_k: int | None = None,
    ) -> tuple[list[HybridSearchResult], dict[str, Any]]:
        """
        Search with detailed scoring information.

        Returns results plus a summary of retrieval statistics.
        """
        results = self.search(query, top_k=top_k)

        stats = {
            "query": query,
            "total_results": len(results),
            "dense_only": sum(1 for r in results if r.sources == ["dense"]),
            "bm25_only": sum(1 for r in results if r.sources == ["bm25"]),
            "multi_source": sum(1 for r in results if len(r.sources) > 1),
            "avg_rrf_score": sum(r.score for r in results) / len(results) if results else 0,
        }

        return results, stats


# Factory function
def create_hybrid_searcher(
    embedding_service: EmbeddingService,
    vector_store: VectorStore | None = None,
    bm25_index: BM25Index | None = None,
    collection_name: str | None = None,
    logger: logging.Logger | None = None,
) -> HybridSearcher:
    """
    Create a hybrid searcher from application settings.

    Missing collaborators are built from config: the vector store from
    VECTOR_STORE_BACKEND, the BM25 index from BM25_* settings.
    """
    from hybrid_retrieval.retrieval.bm25_retriever import create_bm25_index
    from hybrid_retrieval.retrieval.vector_store import create_vector_store

    store_settings = get_vector_store_settings()
    if vector_store is None:
        vector_store = create_vector_store(store_settings)
    # An empty index is falsy (it defines __len__), so test against None
    if bm25_index is None:
        bm25_index = create_bm25_index(logger=logger)

    return HybridSearcher(
        embedding_service=embedding_service,
        vector_store=vector_store,
        collection_name=collection_name or store_settings.collection_name,
        bm25_index=bm25_index,
        logger=logger,
    )


__all__ = [
    "HybridSearchResult",
    "HybridSearcher",
    "create_hybrid_searcher",
    "RRFReranker",
    "reciprocal_rank_fusion",
]
