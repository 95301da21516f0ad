"""
Tests for BM25 retrieval and rank fusion.
"""

import threading

import pytest

from hybrid_retrieval.config import BM25Settings
from hybrid_retrieval.exceptions import (
    DocumentExistsError,
    DocumentNotFoundError,
    InvalidArgumentError,
    OperationCancelledError,
)
from hybrid_retrieval.retrieval.bm25_retriever import (
    BM25Index,
    BM25Tokenizer,
    create_bm25_index,
    default_preprocessor,
)
from hybrid_retrieval.retrieval.concurrency import ReadWriteLock
from hybrid_retrieval.retrieval.hybrid_search import RRFReranker, reciprocal_rank_fusion
from hybrid_retrieval.retrieval.types import SearchResult


class TestBM25Tokenizer:
    """Tests for BM25Tokenizer."""

    def test_basic_tokenization(self):
        """Test basic text tokenization."""
        tokenizer = BM25Tokenizer(remove_stopwords=False)
        tokens = tokenizer.tokenize("Hello World, this is a test!")

        assert tokens == ["hello", "world", "this", "is", "test"]

    def test_stopword_removal(self):
        """Test stopword removal."""
        tokenizer = BM25Tokenizer(remove_stopwords=True)
        tokens = tokenizer.tokenize("The quick brown fox is a test")

        assert "the" not in tokens
        assert "is" not in tokens
        assert "quick" in tokens
        assert "brown" in tokens

    def test_min_token_length(self):
        """Test minimum token length filtering."""
        tokenizer = BM25Tokenizer(min_token_length=3)
        tokens = tokenizer.tokenize("I am a test of short tokens")

        assert all(len(t) >= 3 for t in tokens)

    def test_empty_input(self):
        """Test empty string handling."""
        assert BM25Tokenizer().tokenize("") == []

    def test_default_preprocessor(self):
        """Test the default preprocessor only lowercases and splits."""
        assert default_preprocessor("Hello, World  again") == ["hello,", "world", "again"]


class TestBM25Index:
    """Tests for BM25Index."""

    def test_add_and_stats(self):
        """Test statistics after adding documents."""
        index = BM25Index()
        index.add(1, "machine learning algorithms")
        index.add(2, "natural language")

        stats = index.stats()

        assert stats.total_docs == 2
        assert stats.avg_doc_length == 2.5
        assert stats.vocabulary_size == 5
        assert len(index) == 2
        assert 1 in index

    def test_add_then_remove_restores_stats(self):
        """Test add followed by remove leaves statistics unchanged."""
        index = BM25Index()
        index.add(1, "shared words here")
        index.add(2, "shared words there")
        before = index.stats()

        index.add(3, "unique zebra shared")
        index.remove(3)

        assert index.stats() == before
        assert index.document_frequency("zebra") == 0
        assert index.document_frequency("unique") == 0
        assert index.document_frequency("shared") == 2

    def test_remove_last_document(self):
        """Test removing every document empties the index."""
        index = BM25Index()
        index.add(1, "only document")
        index.remove(1)

        assert index.stats().total_docs == 0
        assert index.avg_doc_length == 0.0
        assert index.search("document") == []

    def test_duplicate_add_rejected(self):
        """Test adding an existing ID raises without touching statistics."""
        index = BM25Index()
        index.add(1, "first version")
        before = index.stats()

        with pytest.raises(DocumentExistsError):
            index.add(1, "second version")

        assert index.stats() == before
        assert index.get_document(1) == ("first version", {})

    def test_upsert_replaces(self):
        """Test upsert replaces content and statistics."""
        index = BM25Index()
        index.add(1, "old words")
        index.upsert(1, "brand new content here", {"v": 2})

        assert index.document_count == 1
        assert index.document_frequency("old") == 0
        assert index.avg_doc_length == 4.0
        assert index.get_document(1) == ("brand new content here", {"v": 2})

    def test_document_ids_range(self):
        """Test IDs come back in insertion order and can be limited to a range."""
        index = BM25Index()
        for doc_id in (20_001, 10_000, 20_000, 10_001, 30_000):
            index.add(doc_id, f"text {doc_id}")

        assert index.document_ids() == [20_001, 10_000, 20_000, 10_001, 30_000]
        assert index.document_ids(20_000, 30_000) == [20_001, 20_000]
        assert index.document_ids(stop=10_001) == [10_000]
        assert index.document_ids(40_000) == []

    def test_remove_unknown(self):
        """Test removing an unknown ID raises."""
        with pytest.raises(DocumentNotFoundError):
            BM25Index().remove(42)

    def test_non_int_id_rejected(self):
        """Test document IDs must be ints."""
        index = BM25Index()

        with pytest.raises(InvalidArgumentError):
            index.add("doc1", "text")
        with pytest.raises(InvalidArgumentError):
            index.add(True, "text")

    def test_idf_ordering(self):
        """Test a rare term has higher idf than a term in every document."""
        index = BM25Index()
        index.add(1, "common rare")
        index.add(2, "common word")
        index.add(3, "common other")

        assert index.idf("rare") > index.idf("common")
        assert index.idf("common") > 0
        assert index.idf("missing") == 0.0

    def test_search(self):
        """Test basic search ranking."""
        index = BM25Index()
        index.add(1, "machine learning is a subset of artificial intelligence")
        index.add(2, "natural language processing deals with text")
        index.add(3, "computer vision processes images")

        results = index.search("machine learning", top_k=2)

        assert len(results) == 1
        assert results[0].id == 1
        assert results[0].score > 0
        assert results[0].fields["text"].startswith("machine learning")

    def test_search_known_score(self):
        """Test the score of a single matching term against the BM25 formula."""
        import math

        index = BM25Index(k1=1.5, b=0.75)
        index.add(1, "apple banana")
        index.add(2, "cherry date elderberry fig")

        results = index.search("apple")

        idf = math.log(1 + (2 - 1 + 0.5) / (1 + 0.5))
        norm = 1.5 * (1 - 0.75 + 0.75 * 2 / 3.0)
        assert results[0].score == pytest.approx(idf * 1 * 2.5 / (1 + norm))

    def test_search_ties_keep_insertion_order(self):
        """Test equal scores are ordered by insertion."""
        index = BM25Index()
        index.add(5, "alpha beta")
        index.add(2, "alpha beta")
        index.add(9, "alpha beta")

        assert [r.id for r in index.search("alpha")] == [5, 2, 9]

    def test_search_empty_index(self):
        """Test search on an empty index returns nothing."""
        assert BM25Index().search("test query") == []

    def test_search_invalid_top_k(self):
        """Test non-positive top_k is rejected."""
        index = BM25Index()
        index.add(1, "text")

        with pytest.raises(InvalidArgumentError):
            index.search("text", top_k=0)

    def test_search_cancelled(self):
        """Test a set cancellation event aborts search."""
        index = BM25Index()
        index.add(1, "text")
        event = threading.Event()
        event.set()

        with pytest.raises(OperationCancelledError):
            index.search("text", cancel_event=event)

    def test_add_batch_reports_failures(self):
        """Test batch add skips bad items and reports them."""
        index = BM25Index()
        index.add(2, "existing")

        result = index.add_batch([
            (1, "first", None),
            (2, "duplicate", None),
            ("x", "bad id", None),
            (3, "third", {"k": "v"}),
        ])

        assert result.inserted == 2
        assert result.ids == [1, 3]
        assert [f.index for f in result.failed] == [1, 2]
        assert not result.success

    def test_set_parameters(self):
        """Test parameter validation and update."""
        index = BM25Index()
        index.set_parameters(k1=2.0, b=0.5)

        assert index.k1 == 2.0
        assert index.b == 0.5

        with pytest.raises(InvalidArgumentError):
            index.set_parameters(k1=1.0, b=1.5)

    def test_custom_preprocessor(self):
        """Test a custom preprocessor applies to documents and queries."""
        index = BM25Index(preprocessor=BM25Tokenizer().tokenize)
        index.add(1, "The Quick, brown fox!")

        results = index.search("quick FOX")

        assert results[0].id == 1
        assert index.document_frequency("the") == 0

    def test_clear(self):
        """Test clearing the index."""
        index = BM25Index()
        index.add(1, "test document")
        index.clear()

        assert index.document_count == 0
        assert index.stats().vocabulary_size == 0

    def test_concurrent_adds(self):
        """Test concurrent writers keep statistics consistent."""
        index = BM25Index()

        def worker(offset):
            for i in range(50):
                index.add(offset + i, f"term{i % 5} shared")

        threads = [threading.Thread(target=worker, args=(n * 100,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert index.document_count == 200
        assert index.document_frequency("shared") == 200
        assert index.avg_doc_length == 2.0


class TestCreateBM25Index:
    """Tests for factory function."""

    def test_create_default(self):
        """Test creating index with defaults."""
        index = create_bm25_index()

        assert isinstance(index, BM25Index)
        assert index.k1 == 1.5
        assert index.b == 0.75

    def test_create_custom_params(self):
        """Test creating index with custom settings."""
        index = create_bm25_index(BM25Settings(k1=2.0, b=0.5, remove_stopwords=True))
        index.add(1, "the cat")

        assert index.k1 == 2.0
        assert index.b == 0.5
        assert index.document_frequency("the") == 0


class TestReciprocalRankFusion:
    """Tests for RRF algorithm."""

    def test_single_list(self):
        """Test RRF with single result list."""
        fused = reciprocal_rank_fusion([[("doc1", 0.9), ("doc2", 0.8), ("doc3", 0.7)]], k=60)

        assert [d for d, _ in fused] == ["doc1", "doc2", "doc3"]
        assert fused[0][1] == pytest.approx(1 / 61)

    def test_multiple_lists(self):
        """Test a document in both lists ranks first."""
        results = [
            [("doc1", 0.9), ("doc2", 0.8)],
            [("doc2", 0.95), ("doc3", 0.85)],
        ]

        fused = reciprocal_rank_fusion(results, k=60)

        assert len(fused) == 3
        assert fused[0][0] == "doc2"

    def test_empty_lists(self):
        """Test RRF with empty input."""
        assert reciprocal_rank_fusion([]) == []

    def test_weighted_fusion(self):
        """Test RRF with custom weights."""
        fused = reciprocal_rank_fusion([[("doc1", 0.9)], [("doc2", 0.95)]], k=60, weights=[0.3, 0.7])

        assert fused[0][0] == "doc2"
        assert fused[0][1] == pytest.approx(0.7 / 61)

    def test_zero_weights_default_to_equal(self):
        """Test all-zero weights fall back to equal weights."""
        fused = reciprocal_rank_fusion([[("a", 1.0)], [("b", 1.0)]], weights=[0, 0])

        assert fused[0][1] == pytest.approx(fused[1][1])
        assert [d for d, _ in fused] == ["a", "b"]

    def test_non_positive_k(self):
        """Test non-positive k falls back to 60."""
        fused = reciprocal_rank_fusion([[("a", 1.0)]], k=0)

        assert fused[0][1] == pytest.approx(1 / 61)

    def test_weight_count_mismatch(self):
        """Test a weight per list is required."""
        with pytest.raises(InvalidArgumentError):
            reciprocal_rank_fusion([[("a", 1.0)]], weights=[0.5, 0.5])


def _results(ids, score=1.0, source="dense"):
    return [SearchResult(id=i, score=score, fields={"source": source}) for i in ids]


class TestRRFReranker:
    """Tests for RRFReranker."""

    def test_disjoint_lists_keep_all(self):
        """Test disjoint lists of N each produce 2N results."""
        reranker = RRFReranker()

        fused = reranker.rerank(_results(range(1, 6)), _results(range(6, 11), source="sparse"))

        assert len(fused) == 10
        assert len({r.id for r in fused}) == 10

    def test_identical_lists_preserve_order(self):
        """Test identical rankings with equal weights keep their order."""
        order = [7, 3, 9, 1]
        reranker = RRFReranker()

        fused = reranker.rerank(_results(order), _results(order), 0.5, 0.5)

        assert [r.id for r in fused] == order

    def test_fused_scores_replace_raw_scores(self):
        """Test fused score and dense-first field precedence."""
        reranker = RRFReranker(k=60)
        dense = [SearchResult(id=1, score=0.0, fields={"source": "dense"})]
        sparse = [SearchResult(id=1, score=3.2, fields={"source": "sparse"})]

        fused = reranker.rerank(dense, sparse, 0.5, 0.5)

        assert len(fused) == 1
        assert fused[0].score == pytest.approx(1 / 61)
        assert fused[0].fields == {"source": "dense"}
        # Inputs are not modified
        assert dense[0].score == 0.0

    def test_weights_normalized(self):
        """Test weights are normalized before fusion."""
        reranker = RRFReranker(k=60)

        fused = reranker.rerank(_results([1]), _results([2]), 3.0, 1.0)

        assert [r.id for r in fused] == [1, 2]
        assert fused[0].score == pytest.approx(0.75 / 61)
        assert fused[1].score == pytest.approx(0.25 / 61)

    def test_non_positive_k(self):
        """Test k <= 0 resets to 60."""
        assert RRFReranker(k=-5).k == 60.0

    def test_empty_inputs(self):
        """Test fusing nothing returns nothing."""
        assert RRFReranker().rerank([], []) == []


class TestReadWriteLock:
    """Tests for ReadWriteLock."""

    def test_readers_share(self):
        """Test two readers can hold the lock together."""
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=5)

        def reader():
            with lock.read_locked():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert not any(t.is_alive() for t in threads)

    def test_writer_excludes_readers(self):
        """Test a reader waits for an active writer."""
        lock = ReadWriteLock()
        events = []

        lock.acquire_write()

        def reader():
            with lock.read_locked():
                events.append("read")

        t = threading.Thread(target=reader)
        t.start()
        t.join(timeout=0.1)
        events.append("write-done")
        lock.release_write()
        t.join(timeout=5)

        assert events == ["write-done", "read"]
