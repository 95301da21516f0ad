"""
Tests for document indexing and hybrid search.
"""

import threading

import pytest
from unittest.mock import MagicMock

from hybrid_retrieval.config import RetrievalSettings
from hybrid_retrieval.exceptions import InvalidArgumentError, OperationCancelledError
from hybrid_retrieval.pipeline.chunking import TextChunker
from hybrid_retrieval.pipeline.embedding import EmbeddingService
from hybrid_retrieval.pipeline.indexing import DocumentIndexer, create_document_indexer
from hybrid_retrieval.retrieval.bm25_retriever import BM25Index
from hybrid_retrieval.retrieval.hybrid_search import (
    HybridSearcher,
    RRFReranker,
    create_hybrid_searcher,
)
from hybrid_retrieval.retrieval.memory_store import MemoryVectorStore

TEST_DIMENSION = 16


class FlakyEmbedder:
    """Fails on texts containing a marker word, embeds everything else."""

    def __init__(self, inner, marker: str):
        self.inner = inner
        self.marker = marker

    def embed(self, text: str) -> list[float]:
        if self.marker in text:
            raise RuntimeError("quota exceeded")
        return self.inner.embed(text)


class ShortVectorEmbedder(FlakyEmbedder):
    """Returns a vector of the wrong size for texts containing a marker word."""

    def embed(self, text: str) -> list[float]:
        if self.marker in text:
            return [1.0, 0.0, 0.0, 0.0]
        return self.inner.embed(text)


@pytest.fixture
def indexer(embedding_service, memory_store, bm25_index):
    indexer = DocumentIndexer(
        chunker=TextChunker(chunk_size=200, chunk_overlap=0),
        embedding_service=embedding_service,
        vector_store=memory_store,
        collection_name="docs",
        bm25_index=bm25_index,
    )
    indexer.ensure_collection(TEST_DIMENSION)
    return indexer


@pytest.fixture
def searcher(indexer, sample_documents):
    indexer.index_documents(sample_documents)
    return HybridSearcher(
        embedding_service=indexer.embedding_service,
        vector_store=indexer.vector_store,
        collection_name="docs",
        bm25_index=indexer.bm25_index,
        settings=RetrievalSettings(),
    )


class TestDocumentIndexer:
    """Tests for DocumentIndexer."""

    def test_index_document(self, indexer, memory_store, bm25_index):
        """Test a document lands in both stores under the same chunk ID."""
        result = indexer.index_document(1, "Paris is the capital of France. It sits on the Seine.", {"source": "geo.txt"})

        assert result.success
        assert result.chunks_created == 1
        assert result.chunk_ids == [10_000]
        assert memory_store.count("docs") == 1
        assert 10_000 in bm25_index

        text, metadata = bm25_index.get_document(10_000)
        assert text == "Paris is the capital of France It sits on the Seine"
        assert metadata["source"] == "geo.txt"
        assert metadata["doc_id"] == 1
        assert metadata["chunk_index"] == 0

    def test_multiple_chunks(self, embedding_service, memory_store, bm25_index):
        """Test chunk IDs are consecutive within a document."""
        indexer = DocumentIndexer(
            chunker=TextChunker(chunk_size=3, chunk_overlap=0),
            embedding_service=embedding_service,
            vector_store=memory_store,
            collection_name="docs",
            bm25_index=bm25_index,
            id_stride=100,
        )
        indexer.ensure_collection(TEST_DIMENSION)

        result = indexer.index_document(4, "a b c. d e f. g h i.")

        assert result.chunk_ids == [400, 401, 402]
        assert bm25_index.document_count == 3

    def test_empty_document(self, indexer):
        """Test a document with no sentences is reported, not raised."""
        result = indexer.index_document(1, "   ")

        assert not result.success
        assert result.error == "No chunks created from document"
        assert result.processing_time_ms > 0

    def test_metadata_with_json_values(self, indexer, memory_store, bm25_index):
        """Test lists, booleans and nulls in metadata are stored as given."""
        metadata = {"tags": ["geo", "eu"], "public": True, "author": None, "source": "geo.txt"}

        result = indexer.index_document(1, "Paris is nice.", metadata)

        assert result.success
        _, stored = bm25_index.get_document(10_000)
        assert stored["tags"] == ["geo", "eu"]
        assert stored["public"] is True
        assert stored["author"] is None

        hit = memory_store.search(
            "docs", {"embedding": indexer.embedding_service.embed_query("Paris is nice")},
            top_k=1, output_fields=["metadata"],
        )[0]
        assert hit.fields["metadata"]["tags"] == ["geo", "eu"]
        assert hit.fields["metadata"]["author"] is None

    def test_invalid_text_skipped_in_batch(self, indexer, bm25_index):
        """Test a document without text fails on its own and the batch continues."""
        results = indexer.index_documents([(1, None), (2, "Rome is old."), (3, "Oslo.", ["not", "a", "map"])])

        assert [r.success for r in results] == [False, True, False]
        assert "must be a str" in results[0].error
        assert "must be a mapping" in results[2].error
        assert bm25_index.document_ids() == [20_000]

    def test_reindex_replaces_previous_chunks(self, embedding_service, memory_store, bm25_index):
        """Test re-indexing a document drops chunks the new version no longer has."""
        indexer = DocumentIndexer(
            chunker=TextChunker(chunk_size=3, chunk_overlap=0),
            embedding_service=embedding_service,
            vector_store=memory_store,
            collection_name="docs",
            bm25_index=bm25_index,
        )
        indexer.ensure_collection(TEST_DIMENSION)
        indexer.index_document(2, "Other document here.")

        first = indexer.index_document(1, "a b c. d e f. zebra apple.")
        second = indexer.index_document(1, "a b c.")

        assert first.chunk_ids == [10_000, 10_001, 10_002]
        assert second.chunk_ids == [10_000]
        assert indexer.indexed_chunk_ids(1) == [10_000]
        assert bm25_index.search("zebra", top_k=5) == []
        assert sorted(bm25_index.document_ids()) == [10_000, 20_000]
        assert memory_store.count("docs") == 2

    def test_partial_rejection_rolls_back(self, embedder, memory_store, bm25_index):
        """Test a document with one rejected chunk leaves neither store holding its chunks."""
        indexer = DocumentIndexer(
            chunker=TextChunker(chunk_size=3, chunk_overlap=0),
            embedding_service=EmbeddingService(ShortVectorEmbedder(embedder, marker="marker")),
            vector_store=memory_store,
            collection_name="docs",
            bm25_index=bm25_index,
        )
        indexer.ensure_collection(TEST_DIMENSION)

        result = indexer.index_document(1, "one two three. odd marker text.")

        assert not result.success
        assert "chunk 1" in result.error
        assert memory_store.count("docs") == 0
        assert bm25_index.document_count == 0

    def test_invalid_doc_id(self, indexer):
        """Test negative document IDs are rejected."""
        result = indexer.index_document(-1, "Some text.")

        assert not result.success
        assert "doc_id" in result.error

    def test_too_many_chunks(self, embedding_service, memory_store, bm25_index):
        """Test documents with more chunks than the ID stride are rejected."""
        indexer = DocumentIndexer(
            chunker=TextChunker(chunk_size=1, chunk_overlap=0),
            embedding_service=embedding_service,
            vector_store=memory_store,
            collection_name="docs",
            bm25_index=bm25_index,
            id_stride=2,
        )
        indexer.ensure_collection(TEST_DIMENSION)

        result = indexer.index_document(1, "a. b. c.")

        assert not result.success
        assert bm25_index.document_count == 0

    def test_batch_continues_past_failures(self, embedder, memory_store, bm25_index):
        """Test a provider failure only fails its own document."""
        failing = FlakyEmbedder(embedder, marker="broken")
        indexer = DocumentIndexer(
            chunker=TextChunker(),
            embedding_service=EmbeddingService(failing, dimension=TEST_DIMENSION, provider_name="remote"),
            vector_store=memory_store,
            collection_name="docs",
            bm25_index=bm25_index,
        )
        indexer.ensure_collection(TEST_DIMENSION)

        results = indexer.index_documents([
            (1, "First document."),
            (2, "A broken document.", {"source": "bad.txt"}),
            (3, "Third document."),
        ])

        assert [r.success for r in results] == [True, False, True]
        assert "remote" in results[1].error
        assert bm25_index.document_count == 2

    def test_vector_store_rejection(self, memory_store, bm25_index):
        """Test embeddings the collection cannot hold fail the document."""
        short_vectors = MagicMock()
        short_vectors.embed.return_value = [0.1, 0.2, 0.3, 0.4]
        indexer = DocumentIndexer(
            chunker=TextChunker(),
            embedding_service=EmbeddingService(short_vectors),
            vector_store=memory_store,
            collection_name="docs",
            bm25_index=bm25_index,
        )
        indexer.ensure_collection(TEST_DIMENSION)

        result = indexer.index_document(1, "Short document.")

        assert not result.success
        assert bm25_index.document_count == 0

    def test_invalid_stride(self, embedding_service, memory_store, bm25_index):
        """Test the ID stride must be positive."""
        with pytest.raises(InvalidArgumentError):
            DocumentIndexer(TextChunker(), embedding_service, memory_store, "docs", bm25_index, id_stride=0)

    def test_create_document_indexer(self, embedding_service):
        """Test the factory creates the chunk collection."""
        indexer = create_document_indexer(embedding_service, collection_name="chunks")

        assert indexer.vector_store.has_collection("chunks")
        assert indexer.chunker.chunk_size == 200


class TestHybridSearcher:
    """Tests for HybridSearcher."""

    def test_hybrid_search(self, searcher):
        """Test a lexical match is fused to the top with both sources."""
        results = searcher.search("Eiffel Tower", top_k=3)

        assert len(results) == 3
        top = results[0]
        assert top.id == 20_000
        assert top.sources == ["dense", "bm25"]
        assert top.bm25_rank == 1
        assert top.text.startswith("The Eiffel Tower")
        assert top.metadata["source"] == "landmarks.txt"
        assert all(a.score >= b.score for a, b in zip(results, results[1:]))

    def test_top_k_truncation(self, searcher):
        """Test fused results are truncated to top_k."""
        assert len(searcher.search("Paris", top_k=1)) == 1

    def test_dense_only(self, searcher):
        """Test disabling the sparse path."""
        results = searcher.search("Eiffel Tower", top_k=3, use_sparse=False)

        assert len(results) == 3
        assert all(r.sources == ["dense"] for r in results)
        assert all(r.bm25_score is None for r in results)

    def test_sparse_only(self, searcher):
        """Test disabling the dense path."""
        results = searcher.search("Eiffel Tower", top_k=3, use_dense=False)

        assert [r.id for r in results] == [20_000]
        assert results[0].sources == ["bm25"]
        assert results[0].bm25_score > 0

    def test_no_candidates(self, searcher):
        """Test no results when both paths are disabled."""
        assert searcher.search("anything", use_dense=False, use_sparse=False) == []

    def test_cancelled(self, searcher):
        """Test a set cancellation event aborts the search."""
        event = threading.Event()
        event.set()

        with pytest.raises(OperationCancelledError):
            searcher.search("Paris", cancel_event=event)

    def test_cancelled_reported_to_error_callback(self, searcher):
        """Test the error callback sees the failure before it is re-raised."""
        errors = []
        searcher.on_error = errors.append
        event = threading.Event()
        event.set()

        with pytest.raises(OperationCancelledError):
            searcher.search("Paris", cancel_event=event)

        assert len(errors) == 1
        assert isinstance(errors[0], OperationCancelledError)

    def test_result_callback(self, searcher):
        """Test the result callback sees every returned result in order."""
        seen = []
        searcher.on_result = lambda r: seen.append(r.id)

        results = searcher.search("Eiffel Tower", top_k=2)

        assert seen == [r.id for r in results]
        assert len(seen) == 2

    def test_min_score(self, searcher):
        """Test fused results below the threshold are dropped."""
        searcher.min_score = 0.01

        # Only the hit found by both paths scores above a single-path 1/61
        assert [r.id for r in searcher.search("Eiffel Tower", top_k=3)] == [20_000]
        assert len(searcher.search("Eiffel Tower", top_k=3, min_score=0)) == 3

    def test_min_score_from_settings(self, memory_store, bm25_index, embedding_service):
        """Test the default threshold comes from retrieval settings."""
        settings = RetrievalSettings(MIN_SCORE=0.02)

        searcher = HybridSearcher(embedding_service, memory_store, "docs", bm25_index, settings=settings)

        assert searcher.min_score == 0.02

    def test_output_fields_do_not_leak_between_searchers(self, searcher):
        """Test a searcher projecting fewer fields leaves other searchers intact."""
        ids_only = HybridSearcher(
            embedding_service=searcher.embedding_service,
            vector_store=searcher.vector_store,
            collection_name="docs",
            bm25_index=searcher.bm25_index,
            output_fields=("id",),
            settings=RetrievalSettings(),
        )

        narrow = ids_only.search("Eiffel Tower", top_k=3, use_sparse=False)
        full = searcher.search("Eiffel Tower", top_k=3, use_sparse=False)

        assert all(r.text == "" for r in narrow)
        assert all(r.text for r in full)
        assert all(r.metadata.get("source") for r in full)

    def test_search_with_scores(self, searcher):
        """Test score statistics."""
        results, stats = searcher.search_with_scores("Eiffel Tower", top_k=3)

        assert stats["total_results"] == 3
        assert stats["multi_source"] == 1
        assert stats["dense_only"] == 2
        assert stats["avg_rrf_score"] > 0

    def test_weights_from_settings(self, memory_store, bm25_index, embedding_service):
        """Test fusion weights and RRF k come from retrieval settings."""
        settings = RetrievalSettings(DENSE_WEIGHT=0.2, SPARSE_WEIGHT=0.8, RRF_K=10)

        searcher = HybridSearcher(embedding_service, memory_store, "docs", bm25_index, settings=settings)

        assert searcher.dense_weight == 0.2
        assert searcher.sparse_weight == 0.8
        assert searcher.reranker.k == 10.0

    def test_dense_path_needs_embeddings(self, memory_store, bm25_index):
        """Test a vector store without an embedding service is rejected."""
        with pytest.raises(InvalidArgumentError):
            HybridSearcher(None, memory_store, "docs", bm25_index)

    def test_create_hybrid_searcher(self, embedding_service):
        """Test factory wiring from settings."""
        searcher = create_hybrid_searcher(embedding_service)

        assert isinstance(searcher.vector_store, MemoryVectorStore)
        assert isinstance(searcher.bm25_index, BM25Index)
        assert searcher.collection_name == "documents"


class TestEndToEnd:
    """A single document through chunking, both indexes and fusion."""

    def test_single_document_round_trip(self, embedder, memory_store, bm25_index, chunk_schema):
        """Test dense, sparse and fused rankings all put the document first."""
        chunks = TextChunker(chunk_size=1000).chunk(
            "Zanzibar lies off the coast of Tanzania. It is known for spices. The old town is historic."
        )
        assert len(chunks) == 1
        chunk = chunks[0]
        vector = embedder.embed(chunk.text)

        memory_store.create_collection("docs", chunk_schema)
        memory_store.insert("docs", [{"id": 1, "text": chunk.text, "metadata": {}, "embedding": vector}])
        bm25_index.add(1, chunk.text)

        dense = memory_store.search("docs", {"embedding": vector}, top_k=5, metric="L2")
        sparse = bm25_index.search("zanzibar", top_k=5)

        assert [r.id for r in dense] == [1]
        assert dense[0].score == 0.0
        assert [r.id for r in sparse] == [1]
        assert sparse[0].score > 0

        fused = RRFReranker().rerank(dense, sparse, 0.5, 0.5)

        assert [r.id for r in fused] == [1]
        assert fused[0].score == pytest.approx(1 / 61)
