"""
In-Memory Vector Store.

Reference implementation of the VectorStore contract: records live in process
memory and every search is an exact linear scan, vectorised with numpy. Useful
for tests, small corpora, and as the behavioural baseline other backends are
compared against.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from hybrid_retrieval.config import VectorStoreSettings
from hybrid_retrieval.exceptions import (
    CollectionExistsError,
    CollectionNotFoundError,
    InvalidArgumentError,
)
from hybrid_retrieval.observability.metrics import track_index_mutation
from hybrid_retrieval.retrieval.concurrency import ReadWriteLock
from hybrid_retrieval.retrieval.types import (
    FieldKind,
    FieldValue,
    IndexSpec,
    InsertResult,
    Metric,
    Record,
    RecordFailure,
    Schema,
    SearchResult,
    to_field_values,
)
from hybrid_retrieval.retrieval.vector_store import (
    QueryVectors,
    ResultReranker,
    VectorStore,
    parse_metric,
    register_backend,
)


class FieldMatch(str, Enum):
    """How query fields are matched against a record's vector fields."""
    # Score on the first query field (in the caller's order) the record carries
    FIRST = "first"
    # Record must carry every query field; score is the mean distance
    ALL = "all"


@dataclass
class _Collection:
    schema: Schema
    records: list[Record] = field(default_factory=list)
    next_id: int = 1


def compute_distances(matrix: np.ndarray, query: np.ndarray, metric: Metric) -> np.ndarray:
    """
    Distance from each row of ``matrix`` to ``query``; smaller is closer.

    L2 is Euclidean distance, IP is the negated inner product.
    """
    if matrix.shape[1] != query.shape[0]:
        raise InvalidArgumentError(
            f"dimension mismatch: query has {query.shape[0]}, stored vectors have {matrix.shape[1]}"
        )
    if metric is Metric.IP:
        return -(matrix @ query)
    return np.linalg.norm(matrix - query, axis=1)


class MemoryVectorStore(VectorStore):
    """
    Exact-search vector store held in memory.

    Features:
    - Schema validation on insert (bad records are reported and skipped)
    - Auto-generated primary keys for auto_id schemas
    - Single-field search and multi-field hybrid search
    - Store-wide reader/writer lock: inserts are atomic with respect to search

    Example:
        store = MemoryVectorStore()
        store.create_collection("docs", schema)
        store.insert("docs", [{"id": 1, "embedding": [0.1, 0.2]}])
        results = store.search("docs", {"embedding": [0.1, 0.2]}, top_k=5)
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(__name__)
        self._lock = ReadWriteLock()
        self._collections: dict[str, _Collection] = {}
        self._column_names: tuple[str, ...] = ()

    # ------------------------------------------------------------------
    # Collection management
    # ------------------------------------------------------------------

    def has_collection(self, name: str) -> bool:
        with self._lock.read_locked():
            return name in self._collections

    def list_collections(self) -> list[str]:
        with self._lock.read_locked():
            return list(self._collections)

    def create_collection(self, name: str, schema: Schema) -> None:
        schema.validate()
        with self._lock.write_locked():
            if name in self._collections:
                raise CollectionExistsError(name)
            self._collections[name] = _Collection(schema=schema)
        self._logger.info(f"Created collection '{name}' with {len(schema.fields)} fields")

    def drop_collection(self, name: str) -> None:
        with self._lock.write_locked():
            if self._collections.pop(name, None) is None:
                self._logger.debug(f"Collection '{name}' does not exist")
                return
        self._logger.info(f"Dropped collection '{name}'")

    def get_schema(self, name: str) -> Schema:
        with self._lock.read_locked():
            return self._get(name).schema

    def count(self, name: str) -> int:
        """Number of records in a collection."""
        with self._lock.read_locked():
            return len(self._get(name).records)

    def flush(self, collection_name: str) -> None:
        self._require(collection_name)

    def create_index(self, collection_name: str, field_name: str, index: IndexSpec) -> None:
        # Linear scan; the hint is only validated
        schema = self.get_schema(collection_name)
        target = schema.get_field(field_name)
        if target is None or not target.is_vector:
            raise InvalidArgumentError(
                f"cannot index '{field_name}': not a vector field of '{collection_name}'"
            )

    def load_collection(self, name: str) -> None:
        self._require(name)

    def set_column_names(self, names: Sequence[str]) -> None:
        with self._lock.write_locked():
            self._column_names = tuple(names)

    # ------------------------------------------------------------------
    # Insert
    # ------------------------------------------------------------------

    def insert(
        self,
        collection_name: str,
        records: Sequence[Record | Mapping[str, Any]],
    ) -> InsertResult:
        result = InsertResult()

        with self._lock.write_locked():
            collection = self._get(collection_name)
            schema = collection.schema
            accepted: list[Record] = []

            for position, raw in enumerate(records):
                try:
                    record = raw if isinstance(raw, Record) else Record.from_dict(raw)
                    record = self._prepare(record, collection)
                except (TypeError, ValueError) as e:
                    self._logger.warning(
                        f"Skipping record {position} for '{collection_name}': {e}"
                    )
                    result.failed.append(RecordFailure(index=position, reason=str(e)))
                    continue
                accepted.append(record)
                result.ids.append(record.fields[schema.primary_key.name].value)

            collection.records.extend(accepted)
            result.inserted = len(accepted)
            size = len(collection.records)

        track_index_mutation(f"memory:{collection_name}", "insert", size, result.inserted)
        self._logger.debug(
            f"Inserted {result.inserted} records into '{collection_name}', {len(result.failed)} failed"
        )
        return result

    def delete(self, collection_name: str, ids: Sequence[int]) -> None:
        targets = {int(i) for i in ids}
        with self._lock.write_locked():
            collection = self._get(collection_name)
            pk_name = collection.schema.primary_key.name
            before = len(collection.records)
            collection.records = [
                r for r in collection.records if r.fields[pk_name].value not in targets
            ]
            removed = before - len(collection.records)
            size = len(collection.records)

        track_index_mutation(f"memory:{collection_name}", "delete", size, removed)
        self._logger.debug(f"Deleted {removed} records from '{collection_name}'")

    def _prepare(self, record: Record, collection: _Collection) -> Record:
        """Validate a record against the schema, assigning an ID for auto_id schemas."""
        collection.schema.validate_record(record)
        fields = dict(record.fields)

        pk = collection.schema.primary_key
        if pk.auto_id:
            fields[pk.name] = FieldValue(FieldKind.INT, collection.next_id)
            collection.next_id += 1

        return Record(fields=fields)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        collection_name: str,
        vectors: QueryVectors,
        top_k: int,
        metric: Metric | str = Metric.L2,
        params: Mapping[str, Any] | None = None,
        output_fields: Sequence[str] | None = None,
    ) -> list[SearchResult]:
        """
        Exhaustive single-field search.

        Each record is scored on the first query field, in the caller's
        order, that it carries as a vector. Records carrying none of the
        query fields are skipped.
        """
        return self._scan(
            collection_name, vectors, top_k, metric, params, FieldMatch.FIRST, output_fields=output_fields
        )

    def hybrid_search(
        self,
        collection_name: str,
        vectors: QueryVectors,
        top_k: int,
        metric: Metric | str = Metric.L2,
        params: Mapping[str, Any] | None = None,
        reranker: ResultReranker | None = None,
        output_fields: Sequence[str] | None = None,
    ) -> list[SearchResult]:
        """
        Exhaustive multi-field search.

        Only records carrying every query field are scored, by the mean of
        their per-field distances. ``reranker`` sees all scored candidates
        before truncation to ``top_k``.
        """
        return self._scan(
            collection_name, vectors, top_k, metric, params, FieldMatch.ALL, reranker, output_fields
        )

    def _scan(
        self,
        collection_name: str,
        vectors: QueryVectors,
        top_k: int,
        metric: Metric | str,
        params: Mapping[str, Any] | None,
        policy: FieldMatch,
        reranker: ResultReranker | None = None,
        output_fields: Sequence[str] | None = None,
    ) -> list[SearchResult]:
        if top_k <= 0:
            raise InvalidArgumentError(f"top_k must be positive, got {top_k}")
        if not vectors:
            raise InvalidArgumentError("at least one query vector is required")

        resolved = parse_metric(metric, self._logger)
        to_field_values(params)  # validates parameter values; the scan takes none
        queries = {name: FieldValue.vector(v).as_array() for name, v in vectors.items()}

        with self._lock.read_locked():
            collection = self._get(collection_name)
            self._check_query_dimensions(collection.schema, queries)
            records = collection.records
            columns = self._column_names if output_fields is None else tuple(output_fields)

            if not records:
                return []

            if policy is FieldMatch.FIRST:
                scores = self._score_first(records, queries, resolved)
            else:
                scores = self._score_all(records, queries, resolved)

            # NaN marks records that did not match; stable sort keeps insertion order on ties
            matched = np.flatnonzero(~np.isnan(scores))
            order = matched[np.argsort(scores[matched], kind="stable")]

            pk_name = collection.schema.primary_key.name
            results = [
                SearchResult(
                    id=records[i].fields[pk_name].value,
                    score=float(scores[i]),
                    fields=self._project(records[i], columns),
                )
                for i in (order if reranker else order[:top_k])
            ]

        if reranker is not None:
            results = reranker(results)
        return results[:top_k]

    @staticmethod
    def _score_first(
        records: list[Record],
        queries: dict[str, np.ndarray],
        metric: Metric,
    ) -> np.ndarray:
        scores = np.full(len(records), np.nan)
        groups: dict[str, list[int]] = {}
        for i, record in enumerate(records):
            for name in queries:
                value = record.fields.get(name)
                if value is not None and value.is_vector:
                    groups.setdefault(name, []).append(i)
                    break

        for name, indices in groups.items():
            matrix = _stack(records, indices, name, queries[name])
            scores[indices] = compute_distances(matrix, queries[name], metric)
        return scores

    @staticmethod
    def _score_all(
        records: list[Record],
        queries: dict[str, np.ndarray],
        metric: Metric,
    ) -> np.ndarray:
        indices = [
            i for i, record in enumerate(records)
            if all(record.vector(name) is not None for name in queries)
        ]
        scores = np.full(len(records), np.nan)
        if not indices:
            return scores

        total = np.zeros(len(indices))
        for name, query in queries.items():
            total += compute_distances(_stack(records, indices, name, query), query, metric)
        scores[indices] = total / len(queries)
        return scores

    @staticmethod
    def _check_query_dimensions(schema: Schema, queries: dict[str, np.ndarray]) -> None:
        for name, query in queries.items():
            spec = schema.get_field(name)
            if spec is not None and spec.is_vector and query.shape[0] != spec.dimension:
                raise InvalidArgumentError(
                    f"query vector for '{name}' has dimension {query.shape[0]}, expected {spec.dimension}"
                )

    @staticmethod
    def _project(record: Record, columns: tuple[str, ...]) -> dict[str, Any]:
        return {name: record.fields[name].raw for name in columns if name in record.fields}

    def _get(self, name: str) -> _Collection:
        collection = self._collections.get(name)
        if collection is None:
            raise CollectionNotFoundError(name)
        return collection

    def _require(self, name: str) -> None:
        with self._lock.read_locked():
            self._get(name)


def _stack(records: list[Record], indices: list[int], name: str, query: np.ndarray) -> np.ndarray:
    rows = [records[i].fields[name].value for i in indices]
    lengths = {len(row) for row in rows}
    if lengths != {query.shape[0]}:
        raise InvalidArgumentError(
            f"dimension mismatch on '{name}': query has {query.shape[0]}, stored vectors have {sorted(lengths)}"
        )
    return np.asarray(rows, dtype=np.float64)


@register_backend("memory")
def _create_memory_store(settings: VectorStoreSettings) -> VectorStore:
    return MemoryVectorStore()


__all__ = [
    "FieldMatch",
    "MemoryVectorStore",
    "compute_distances",
]
