"""
Qdrant Vector Store Backend.

Thin adapter mapping the VectorStore contract onto a Qdrant collection:
- Every schema vector field becomes a named Qdrant vector
- The primary key becomes the point ID
- All other fields travel in the payload

Qdrant owns indexing (HNSW) and durability; this adapter only translates
calls and normalises scores so that smaller is always closer.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from hybrid_retrieval.config import VectorStoreSettings, get_vector_store_settings
from hybrid_retrieval.exceptions import (
    CollectionExistsError,
    CollectionNotFoundError,
    InvalidArgumentError,
    ProviderFailureError,
)
from hybrid_retrieval.retrieval.types import (
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

_QDRANT_ERRORS = (UnexpectedResponse, ResponseHandlingException)

_DISTANCES = {
    Metric.L2: models.Distance.EUCLID,
    Metric.IP: models.Distance.DOT,
}


class QdrantVectorStore(VectorStore):
    """
    VectorStore backed by a Qdrant server (or an in-process ``:memory:`` instance).

    The collection metric is fixed at creation time from settings; ``search``
    still accepts a metric argument so scores can be normalised, but it must
    match the collection's.

    Example:
        store = QdrantVectorStore(url="http://localhost:6333")
        store.connect()
        store.create_collection("docs", schema)
        store.insert("docs", records)
        results = store.search("docs", {"embedding": query}, top_k=5)
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: int | None = None,
        metric: Metric | str | None = None,
        batch_size: int = 100,
        client: QdrantClient | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the Qdrant adapter.

        Args:
            url: Qdrant server URL, or ":memory:" for an in-process instance
            api_key: Qdrant API key
            timeout: Request timeout in seconds
            metric: Distance metric used for new collections
            batch_size: Points per upsert request
            client: Pre-built client (mainly for tests)
            logger: Logger to use instead of the module logger
        """
        self._settings = get_vector_store_settings()
        self._logger = logger or logging.getLogger(__name__)

        self.url = url or self._settings.url
        self.api_key = api_key or (
            self._settings.api_key.get_secret_value() if self._settings.api_key else None
        )
        self.timeout = timeout or self._settings.timeout
        self.metric = parse_metric(metric or self._settings.metric, self._logger)
        self.batch_size = batch_size

        self._client = client
        self._schemas: dict[str, Schema] = {}
        self._column_names: tuple[str, ...] = ()

    @property
    def client(self) -> QdrantClient:
        """Get or create Qdrant client."""
        if self._client is None:
            self.connect()
        return self._client

    def connect(self) -> None:
        if self._client is not None:
            return
        if self.url == ":memory:":
            self._client = QdrantClient(location=":memory:")
        else:
            self._client = QdrantClient(url=self.url, api_key=self.api_key, timeout=self.timeout)
        self._logger.info(f"Connected to Qdrant at {self.url}")

    def close(self) -> None:
        """Close the client connection."""
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Collection management
    # ------------------------------------------------------------------

    def has_collection(self, name: str) -> bool:
        try:
            return self.client.collection_exists(name)
        except _QDRANT_ERRORS as e:
            raise ProviderFailureError("qdrant", f"has_collection '{name}' failed: {e}") from e

    def create_collection(self, name: str, schema: Schema) -> None:
        schema.validate()
        if schema.primary_key.auto_id:
            raise InvalidArgumentError("the qdrant backend requires explicit primary keys")
        if self.has_collection(name):
            raise CollectionExistsError(name)

        distance = _DISTANCES[self.metric]
        vectors_config = {
            f.name: models.VectorParams(size=f.dimension, distance=distance)
            for f in schema.vector_fields
        }

        try:
            self.client.create_collection(collection_name=name, vectors_config=vectors_config)
        except _QDRANT_ERRORS as e:
            raise ProviderFailureError("qdrant", f"create_collection '{name}' failed: {e}") from e

        self._schemas[name] = schema
        self._logger.info(f"Created collection '{name}' with {len(vectors_config)} vector fields")

    def drop_collection(self, name: str) -> None:
        try:
            self.client.delete_collection(name)
        except UnexpectedResponse:
            self._logger.debug(f"Collection '{name}' does not exist")
        self._schemas.pop(name, None)

    def flush(self, collection_name: str) -> None:
        # Upserts are issued with wait=True, so they are already durable
        self._require(collection_name)

    def create_index(self, collection_name: str, field_name: str, index: IndexSpec) -> None:
        self._require(collection_name)
        if index.type.upper() != "HNSW":
            raise InvalidArgumentError(f"unsupported index type: {index.type}")

        params = index.parameters
        try:
            self.client.update_collection(
                collection_name=collection_name,
                vectors_config={
                    field_name: models.VectorParamsDiff(
                        hnsw_config=models.HnswConfigDiff(
                            m=params.get("M"),
                            ef_construct=params.get("efConstruction"),
                        )
                    )
                },
            )
        except _QDRANT_ERRORS as e:
            raise ProviderFailureError("qdrant", f"create_index on '{field_name}' failed: {e}") from e

    def load_collection(self, name: str) -> None:
        self._require(name)

    def set_column_names(self, names: Sequence[str]) -> None:
        self._column_names = tuple(names)

    # ------------------------------------------------------------------
    # Insert
    # ------------------------------------------------------------------

    def insert(
        self,
        collection_name: str,
        records: Sequence[Record | Mapping[str, Any]],
    ) -> InsertResult:
        schema = self._schema(collection_name)
        vector_names = {f.name for f in schema.vector_fields}
        pk_name = schema.primary_key.name

        result = InsertResult()
        points = []

        for position, raw in enumerate(records):
            try:
                record = raw if isinstance(raw, Record) else Record.from_dict(raw)
                schema.validate_record(record)
            except (TypeError, ValueError) as e:
                self._logger.warning(f"Skipping record {position} for '{collection_name}': {e}")
                result.failed.append(RecordFailure(index=position, reason=str(e)))
                continue

            point_id = record.fields[pk_name].value
            points.append(models.PointStruct(
                id=point_id,
                vector={
                    name: list(value.value)
                    for name, value in record.fields.items()
                    if name in vector_names
                },
                payload={
                    name: value.raw
                    for name, value in record.fields.items()
                    if name not in vector_names
                },
            ))
            result.ids.append(point_id)

        # Batch upsert
        try:
            for i in range(0, len(points), self.batch_size):
                self.client.upsert(
                    collection_name=collection_name,
                    points=points[i:i + self.batch_size],
                    wait=True,
                )
        except _QDRANT_ERRORS as e:
            raise ProviderFailureError("qdrant", f"insert into '{collection_name}' failed: {e}") from e

        result.inserted = len(points)
        self._logger.info(f"Added {result.inserted} records to '{collection_name}'")
        return result

    def delete(self, collection_name: str, ids: Sequence[int]) -> None:
        self._require(collection_name)
        if not ids:
            return
        try:
            self.client.delete(
                collection_name=collection_name,
                points_selector=models.PointIdsList(points=[int(i) for i in ids]),
                wait=True,
            )
        except _QDRANT_ERRORS as e:
            raise ProviderFailureError("qdrant", f"delete from '{collection_name}' failed: {e}") from e
        self._logger.info(f"Deleted {len(ids)} records from '{collection_name}'")

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
        Single-field search on the first query field the collection defines.

        Qdrant stores one named vector per schema field, so the first query
        field present in the schema is the one searched.
        """
        schema = self._schema(collection_name)
        resolved = self._check_metric(metric)
        if top_k <= 0:
            raise InvalidArgumentError(f"top_k must be positive, got {top_k}")

        vector_names = [f.name for f in schema.vector_fields]
        field_name = next((name for name in vectors if name in vector_names), None)
        if field_name is None:
            raise InvalidArgumentError(
                f"none of the query fields {list(vectors)} are vector fields of '{collection_name}'"
            )

        columns = self._columns(output_fields)
        return self._query(collection_name, schema, field_name, vectors[field_name], top_k, resolved, params, columns)

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
        Multi-field search: per-field candidate lists, kept only when a point
        is found by every field, scored by the mean distance.
        """
        schema = self._schema(collection_name)
        resolved = self._check_metric(metric)
        if top_k <= 0:
            raise InvalidArgumentError(f"top_k must be positive, got {top_k}")
        if not vectors:
            raise InvalidArgumentError("at least one query vector is required")

        candidate_limit = top_k * max(len(vectors), 1) * 4
        columns = self._columns(output_fields)
        totals: dict[int, float] = {}
        hits: dict[int, int] = {}
        fields_by_id: dict[int, dict[str, Any]] = {}

        for name, vector in vectors.items():
            if schema.get_field(name) is None:
                # A field no record carries means no record can match all fields
                return []
            for result in self._query(
                collection_name, schema, name, vector, candidate_limit, resolved, params, columns
            ):
                totals[result.id] = totals.get(result.id, 0.0) + result.score
                hits[result.id] = hits.get(result.id, 0) + 1
                fields_by_id.setdefault(result.id, result.fields)

        results = [
            SearchResult(id=point_id, score=total / len(vectors), fields=fields_by_id[point_id])
            for point_id, total in totals.items()
            if hits[point_id] == len(vectors)
        ]
        results.sort(key=lambda r: r.score)

        if reranker is not None:
            results = reranker(results)
        return results[:top_k]

    def _query(
        self,
        collection_name: str,
        schema: Schema,
        field_name: str,
        vector: Sequence[float],
        limit: int,
        metric: Metric,
        params: Mapping[str, Any] | None,
        columns: tuple[str, ...],
    ) -> list[SearchResult]:
        query = FieldValue.vector(vector)
        expected = schema.get_field(field_name).dimension
        if len(query.value) != expected:
            raise InvalidArgumentError(
                f"query vector for '{field_name}' has dimension {len(query.value)}, expected {expected}"
            )

        try:
            response = self.client.query_points(
                collection_name=collection_name,
                query=list(query.value),
                using=field_name,
                limit=limit,
                search_params=_search_params(params),
                with_payload=list(columns) if columns else False,
            )
        except _QDRANT_ERRORS as e:
            raise ProviderFailureError("qdrant", f"search on '{collection_name}' failed: {e}") from e

        results = []
        for point in response.points:
            payload = point.payload or {}
            # Dot is a similarity; negate so smaller is closer like L2
            score = -point.score if metric is Metric.IP else point.score
            results.append(SearchResult(
                id=int(point.id),
                score=float(score),
                fields={k: v for k, v in payload.items() if k in columns},
            ))
        return results

    def _columns(self, output_fields: Sequence[str] | None) -> tuple[str, ...]:
        return self._column_names if output_fields is None else tuple(output_fields)

    def _check_metric(self, metric: Metric | str) -> Metric:
        resolved = parse_metric(metric, self._logger)
        if resolved is not self.metric:
            raise InvalidArgumentError(
                f"metric {resolved.value} does not match the collection metric {self.metric.value}"
            )
        return resolved

    def _schema(self, name: str) -> Schema:
        schema = self._schemas.get(name)
        if schema is not None:
            return schema
        if not self.has_collection(name):
            raise CollectionNotFoundError(name)
        raise InvalidArgumentError(
            f"schema of '{name}' is unknown; create the collection through this store"
        )

    def _require(self, name: str) -> None:
        if not self.has_collection(name):
            raise CollectionNotFoundError(name)


def _search_params(params: Mapping[str, Any] | None) -> models.SearchParams | None:
    """Translate generic search parameters into Qdrant SearchParams."""
    values = {k: v.raw for k, v in to_field_values(params).items()}
    if not values:
        return None
    return models.SearchParams(
        hnsw_ef=values.get("ef") or values.get("hnsw_ef"),
        exact=bool(values.get("exact", 0)),
    )


@register_backend("qdrant")
def _create_qdrant_store(settings: VectorStoreSettings) -> VectorStore:
    return QdrantVectorStore(
        url=settings.url,
        api_key=settings.api_key.get_secret_value() if settings.api_key else None,
        timeout=settings.timeout,
        metric=settings.metric,
    )


__all__ = ["QdrantVectorStore"]
