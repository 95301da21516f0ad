"""
BM25 Sparse Retrieval Module.

Implements an incrementally updatable BM25 (Best Matching 25) index for
lexical/keyword retrieval. Documents can be added and removed at any time;
collection statistics (document frequencies, average document length) are
maintained on every mutation rather than rebuilt.
"""

import logging
import math
import re
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Callable

from hybrid_retrieval.config import BM25Settings, get_bm25_settings
from hybrid_retrieval.exceptions import (
    DocumentExistsError,
    DocumentNotFoundError,
    InvalidArgumentError,
    RetrievalError,
)
from hybrid_retrieval.observability.metrics import track_index_mutation
from hybrid_retrieval.retrieval.concurrency import ReadWriteLock, raise_if_cancelled
from hybrid_retrieval.retrieval.types import InsertResult, RecordFailure, SearchResult

Preprocessor = Callable[[str], list[str]]


def default_preprocessor(text: str) -> list[str]:
    """Lowercase and split on whitespace."""
    return text.lower().split()


class BM25Tokenizer:
    """
    Richer preprocessor for BM25.

    Performs:
    - Lowercasing
    - Punctuation removal
    - Whitespace tokenization
    - Optional stopword removal
    - Minimum token length filtering

    Install with ``index.set_preprocessor(tokenizer.tokenize)``.
    """

    # Common English stopwords
    STOPWORDS = frozenset({
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "were", "will", "with", "this", "but", "they",
        "have", "had", "what", "when", "where", "who", "which", "why", "how"
    })

    def __init__(
        self,
        lowercase: bool = True,
        remove_punctuation: bool = True,
        remove_stopwords: bool = True,
        min_token_length: int = 2,
    ):
        self.lowercase = lowercase
        self.remove_punctuation = remove_punctuation
        self.remove_stopwords = remove_stopwords
        self.min_token_length = min_token_length

        self._punct_pattern = re.compile(r'[^\w\s]')

    def tokenize(self, text: str) -> list[str]:
        """Tokenize text into a list of tokens."""
        if not text:
            return []

        if self.lowercase:
            text = text.lower()

        if self.remove_punctuation:
            text = self._punct_pattern.sub(' ', text)

        filtered = []
        for token in text.split():
            if len(token) < self.min_token_length:
                continue
            if self.remove_stopwords and token in self.STOPWORDS:
                continue
            filtered.append(token)

        return filtered

    def tokenize_batch(self, texts: list[str]) -> list[list[str]]:
        """Tokenize multiple texts."""
        return [self.tokenize(text) for text in texts]


@dataclass(frozen=True)
class BM25Parameters:
    """BM25 scoring parameters."""
    k1: float = 1.5  # term frequency saturation
    b: float = 0.75  # document length normalization

    def __post_init__(self):
        if self.k1 < 0:
            raise InvalidArgumentError(f"k1 must be non-negative, got {self.k1}")
        if not 0.0 <= self.b <= 1.0:
            raise InvalidArgumentError(f"b must be within [0, 1], got {self.b}")


@dataclass(frozen=True)
class IndexStats:
    """Snapshot of collection-wide BM25 statistics."""
    total_docs: int
    avg_doc_length: float
    vocabulary_size: int


class BM25Index:
    """
    Thread-safe incremental BM25 index.

    Scores a document D for query Q as
    sum over q in Q of idf(q) * tf*(k1+1) / (tf + k1*(1 - b + b*|D|/avgdl))
    with idf(q) = ln(1 + (N - df + 0.5) / (df + 0.5)).

    All operations share one index-wide reader/writer lock: searches run
    concurrently with each other, mutations run alone, because every add and
    remove touches the global document-frequency table and average length.

    Example:
        index = BM25Index()
        index.add(1, "Hello world")
        index.add(2, "Python programming")
        results = index.search("python code", top_k=5)
    """

    def __init__(
        self,
        k1: float = 1.5,
        b: float = 0.75,
        preprocessor: Preprocessor | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize BM25 index.

        Args:
            k1: BM25 k1 parameter (term frequency saturation)
            b: BM25 b parameter (document length normalization)
            preprocessor: Text to terms function (default: lowercase + whitespace split)
            logger: Logger to use instead of the module logger
        """
        self._params = BM25Parameters(k1=k1, b=b)
        self._preprocessor = preprocessor or default_preprocessor
        self._logger = logger or logging.getLogger(__name__)
        self._lock = ReadWriteLock()

        # Per-document state
        self._docs: dict[int, str] = {}
        self._metadata: dict[int, dict[str, Any]] = {}
        self._term_freq: dict[int, Counter[str]] = {}
        self._doc_length: dict[int, int] = {}
        self._order: dict[int, int] = {}  # insertion sequence, for stable ties
        self._next_seq = 0

        # Collection state: term -> {doc_id: tf}; len() of a posting list is df
        self._postings: dict[str, dict[int, int]] = {}
        self._total_length = 0
        self._avg_doc_length = 0.0

    @property
    def k1(self) -> float:
        return self._params.k1

    @property
    def b(self) -> float:
        return self._params.b

    @property
    def document_count(self) -> int:
        """Return number of indexed documents."""
        with self._lock.read_locked():
            return len(self._docs)

    @property
    def avg_doc_length(self) -> float:
        with self._lock.read_locked():
            return self._avg_doc_length

    def __len__(self) -> int:
        return self.document_count

    def __contains__(self, doc_id: object) -> bool:
        with self._lock.read_locked():
            return doc_id in self._docs

    def contains(self, doc_id: int) -> bool:
        return doc_id in self

    def stats(self) -> IndexStats:
        with self._lock.read_locked():
            return IndexStats(
                total_docs=len(self._docs),
                avg_doc_length=self._avg_doc_length,
                vocabulary_size=len(self._postings),
            )

    def document_frequency(self, term: str) -> int:
        """Number of documents containing ``term`` (0 if not in the vocabulary)."""
        with self._lock.read_locked():
            return len(self._postings.get(term, ()))

    def idf(self, term: str) -> float:
        """Inverse document frequency of ``term``; 0.0 for out-of-vocabulary terms."""
        with self._lock.read_locked():
            df = len(self._postings.get(term, ()))
            if df == 0:
                return 0.0
            return self._idf(df, len(self._docs))

    def document_ids(self, start: int | None = None, stop: int | None = None) -> list[int]:
        """Indexed IDs in insertion order, optionally limited to ``start <= id < stop``."""
        with self._lock.read_locked():
            return [
                doc_id for doc_id in self._docs
                if (start is None or doc_id >= start) and (stop is None or doc_id < stop)
            ]

    def get_document(self, doc_id: int) -> tuple[str, dict[str, Any]] | None:
        """Return (content, metadata) for an indexed document, or None."""
        with self._lock.read_locked():
            if doc_id not in self._docs:
                return None
            return self._docs[doc_id], self._metadata[doc_id]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(
        self,
        doc_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        Index a document.

        Args:
            doc_id: Unique document identifier (the join key shared with the vector store)
            content: Document text
            metadata: Optional metadata returned with search results
            cancel_event: Optional event checked before the index is mutated

        Raises:
            DocumentExistsError: ``doc_id`` is already indexed
        """
        _check_doc_id(doc_id)

        with self._lock.write_locked():
            if doc_id in self._docs:
                raise DocumentExistsError(doc_id)

            terms = self._preprocessor(content)
            raise_if_cancelled(cancel_event, "bm25 add")

            self._insert(doc_id, content, metadata, terms)
            size = len(self._docs)

        track_index_mutation("bm25", "add", size)
        self._logger.debug(f"Indexed document {doc_id} ({len(terms)} terms), total: {size}")

    def upsert(
        self,
        doc_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Replace a document if present, otherwise add it. Atomic with respect to search."""
        _check_doc_id(doc_id)

        with self._lock.write_locked():
            terms = self._preprocessor(content)
            if doc_id in self._docs:
                self._delete(doc_id)
            self._insert(doc_id, content, metadata, terms)
            size = len(self._docs)

        track_index_mutation("bm25", "upsert", size)

    def add_batch(
        self,
        items: Iterable[tuple[int, str, dict[str, Any] | None]],
    ) -> InsertResult:
        """
        Add many documents, skipping and reporting the ones that fail.

        Args:
            items: (doc_id, content, metadata) tuples

        Returns:
            InsertResult listing the indexed IDs and the failed positions
        """
        result = InsertResult()
        for position, (doc_id, content, metadata) in enumerate(items):
            try:
                self.add(doc_id, content, metadata)
            except (RetrievalError, TypeError, AttributeError) as e:
                self._logger.warning(f"Skipping document {doc_id!r} at position {position}: {e}")
                result.failed.append(RecordFailure(index=position, reason=str(e)))
                continue
            result.inserted += 1
            result.ids.append(doc_id)

        self._logger.info(
            f"Added {result.inserted} documents to BM25 index, {len(result.failed)} failed"
        )
        return result

    def remove(self, doc_id: int) -> None:
        """
        Remove a document and update collection statistics.

        Raises:
            DocumentNotFoundError: ``doc_id`` is not indexed
        """
        with self._lock.write_locked():
            if doc_id not in self._docs:
                raise DocumentNotFoundError(doc_id)
            self._delete(doc_id)
            size = len(self._docs)

        track_index_mutation("bm25", "remove", size)
        self._logger.debug(f"Removed document {doc_id}, total: {size}")

    def clear(self) -> None:
        """Remove every document and reset statistics."""
        with self._lock.write_locked():
            self._docs.clear()
            self._metadata.clear()
            self._term_freq.clear()
            self._doc_length.clear()
            self._order.clear()
            self._postings.clear()
            self._total_length = 0
            self._avg_doc_length = 0.0
        self._logger.info("Cleared BM25 index")

    def set_parameters(self, k1: float, b: float) -> None:
        """Update scoring parameters for all subsequent searches."""
        params = BM25Parameters(k1=k1, b=b)
        with self._lock.write_locked():
            self._params = params

    def set_preprocessor(self, preprocessor: Preprocessor) -> None:
        """
        Replace the text preprocessor.

        Terms already indexed are not re-tokenized; set this before adding
        documents so queries and documents are processed the same way.
        """
        with self._lock.write_locked():
            self._preprocessor = preprocessor

    def _insert(
        self,
        doc_id: int,
        content: str,
        metadata: dict[str, Any] | None,
        terms: list[str],
    ) -> None:
        term_freq = Counter(terms)

        self._docs[doc_id] = content
        self._metadata[doc_id] = dict(metadata or {})
        self._term_freq[doc_id] = term_freq
        self._doc_length[doc_id] = len(terms)
        self._order[doc_id] = self._next_seq
        self._next_seq += 1

        for term, tf in term_freq.items():
            self._postings.setdefault(term, {})[doc_id] = tf

        self._total_length += len(terms)
        self._update_avg_length()

    def _delete(self, doc_id: int) -> None:
        for term in self._term_freq[doc_id]:
            posting = self._postings[term]
            del posting[doc_id]
            if not posting:
                del self._postings[term]

        self._total_length -= self._doc_length[doc_id]

        del self._docs[doc_id]
        del self._metadata[doc_id]
        del self._term_freq[doc_id]
        del self._doc_length[doc_id]
        del self._order[doc_id]

        self._update_avg_length()

    def _update_avg_length(self) -> None:
        total_docs = len(self._docs)
        self._avg_doc_length = self._total_length / total_docs if total_docs else 0.0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    @staticmethod
    def _idf(df: int, total_docs: int) -> float:
        return math.log(1 + (total_docs - df + 0.5) / (df + 0.5))

    def search(
        self,
        query: str,
        top_k: int = 10,
        cancel_event: threading.Event | None = None,
    ) -> list[SearchResult]:
        """
        Search for documents matching the query.

        Args:
            query: Search query string
            top_k: Number of results to return
            cancel_event: Optional event checked between tokenizing, scoring and sorting

        Returns:
            Results sorted by BM25 score (descending). Documents sharing no
            term with the query are omitted rather than returned with score 0.
        """
        if top_k <= 0:
            raise InvalidArgumentError(f"top_k must be positive, got {top_k}")

        with self._lock.read_locked():
            total_docs = len(self._docs)
            if total_docs == 0:
                return []

            query_terms = self._preprocessor(query)
            if not query_terms:
                self._logger.debug(f"Query tokenized to empty: '{query}'")
                return []
            raise_if_cancelled(cancel_event, "bm25 search")

            k1, b = self._params.k1, self._params.b
            avgdl = self._avg_doc_length
            scores: dict[int, float] = {}

            # Repeated query terms contribute once per occurrence
            for term in query_terms:
                posting = self._postings.get(term)
                if not posting:
                    continue
                idf = self._idf(len(posting), total_docs)
                for doc_id, tf in posting.items():
                    # avgdl > 0 whenever a posting exists
                    norm = k1 * (1 - b + b * self._doc_length[doc_id] / avgdl)
                    scores[doc_id] = scores.get(doc_id, 0.0) + idf * tf * (k1 + 1) / (tf + norm)

            raise_if_cancelled(cancel_event, "bm25 search")

            ranked = sorted(scores.items(), key=lambda item: (-item[1], self._order[item[0]]))

            return [
                SearchResult(
                    id=doc_id,
                    score=score,
                    fields={
                        "text": self._docs[doc_id],
                        "metadata": dict(self._metadata[doc_id]),
                    },
                )
                for doc_id, score in ranked[:top_k]
            ]

    def search_batch(
        self,
        queries: list[str],
        top_k: int = 10,
    ) -> list[list[SearchResult]]:
        """Search multiple queries."""
        return [self.search(q, top_k=top_k) for q in queries]


def _check_doc_id(doc_id: Any) -> None:
    if isinstance(doc_id, bool) or not isinstance(doc_id, int):
        raise InvalidArgumentError(f"document ID must be an int, got {type(doc_id).__name__}")


# Convenience function
def create_bm25_index(
    settings: BM25Settings | None = None,
    logger: logging.Logger | None = None,
) -> BM25Index:
    """Create a BM25 index configured from BM25 settings."""
    settings = settings or get_bm25_settings()
    preprocessor = None
    if settings.remove_stopwords:
        preprocessor = BM25Tokenizer(remove_stopwords=True).tokenize
    return BM25Index(k1=settings.k1, b=settings.b, preprocessor=preprocessor, logger=logger)


__all__ = [
    "BM25Index",
    "BM25Parameters",
    "BM25Tokenizer",
    "IndexStats",
    "Preprocessor",
    "create_bm25_index",
    "default_preprocessor",
]
