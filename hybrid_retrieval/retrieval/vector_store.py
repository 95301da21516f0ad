"""
Vector Store Contract and Backend Registry.

Defines the operations every dense-vector backend must support and a registry
mapping backend identifiers ("memory", "qdrant", ...) to factories. Backends
register themselves with ``@register_backend(name)``; callers resolve one from
configuration with ``create_vector_store``.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from hybrid_retrieval.config import VectorStoreSettings, get_vector_store_settings
from hybrid_retrieval.exceptions import InvalidArgumentError
from hybrid_retrieval.retrieval.types import (
    IndexSpec,
    InsertResult,
    Metric,
    Record,
    Schema,
    SearchResult,
)

logger = logging.getLogger(__name__)

# A query vector per field name, e.g. {"title": [...], "body": [...]}
QueryVectors = Mapping[str, Sequence[float]]

# Optional reranker applied to hybrid_search candidates before truncation
ResultReranker = Callable[[list[SearchResult]], list[SearchResult]]


class VectorStore(ABC):
    """
    Capability set any dense-vector backend must implement.

    Scores returned by ``search`` and ``hybrid_search`` are distances:
    smaller is closer for every metric (inner product is reported negated).
    """

    def connect(self) -> None:
        """Open connections. No-op for in-process backends."""

    def close(self) -> None:
        """Release connections. No-op for in-process backends."""

    def __enter__(self) -> "VectorStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def has_collection(self, name: str) -> bool:
        """Whether a collection with this name exists."""

    @abstractmethod
    def create_collection(self, name: str, schema: Schema) -> None:
        """Create a collection. Raises CollectionExistsError if the name is taken."""

    @abstractmethod
    def drop_collection(self, name: str) -> None:
        """Drop a collection and all its records."""

    @abstractmethod
    def insert(
        self,
        collection_name: str,
        records: Sequence[Record | Mapping[str, Any]],
    ) -> InsertResult:
        """
        Append records to a collection.

        Malformed records are reported in the result and skipped; the rest of
        the batch is still inserted. Raises CollectionNotFoundError if the
        collection does not exist.
        """

    @abstractmethod
    def delete(self, collection_name: str, ids: Sequence[int]) -> None:
        """
        Remove the records with these primary keys.

        Unknown IDs are ignored. Raises CollectionNotFoundError if the
        collection does not exist.
        """

    def flush(self, collection_name: str) -> None:
        """Durability barrier. No-op for non-durable backends."""

    def create_index(self, collection_name: str, field_name: str, index: IndexSpec) -> None:
        """Index creation hint. No-op for backends that scan linearly."""

    def load_collection(self, name: str) -> None:
        """Readiness hint. No-op for backends that are always ready."""

    @abstractmethod
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
        Nearest-neighbour search, sorted by ascending distance.

        ``output_fields`` selects the projected columns for this call only;
        when None the store-wide ``set_column_names`` selection applies.
        """

    @abstractmethod
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
        """Multi-field search combining every queried vector field."""

    @abstractmethod
    def set_column_names(self, names: Sequence[str]) -> None:
        """Select which record fields are projected into result ``fields`` by default."""


def parse_metric(metric: Metric | str, log: logging.Logger | None = None) -> Metric:
    """Resolve a metric name. Unknown names fall back to L2."""
    if isinstance(metric, Metric):
        return metric
    try:
        return Metric(str(metric).upper())
    except ValueError:
        (log or logger).warning(f"Unknown metric '{metric}', falling back to L2")
        return Metric.L2


# =============================================================================
# Backend registry
# =============================================================================

BackendFactory = Callable[[VectorStoreSettings], VectorStore]

_BACKENDS: dict[str, BackendFactory] = {}


def register_backend(name: str) -> Callable[[BackendFactory], BackendFactory]:
    """Register a factory under a backend identifier."""
    def decorator(factory: BackendFactory) -> BackendFactory:
        if name in _BACKENDS:
            logger.warning(f"Vector store backend '{name}' re-registered")
        _BACKENDS[name] = factory
        return factory
    return decorator


def available_backends() -> list[str]:
    """Identifiers of all registered backends."""
    _load_builtin_backends()
    return sorted(_BACKENDS)


def create_vector_store(settings: VectorStoreSettings | str | None = None) -> VectorStore:
    """
    Create a vector store from settings or a backend identifier.

    Args:
        settings: Vector store settings, a backend name, or None for configured defaults

    Raises:
        InvalidArgumentError: the backend is not registered
    """
    if settings is None:
        settings = get_vector_store_settings()
    elif isinstance(settings, str):
        settings = get_vector_store_settings().model_copy(update={"backend": settings})

    _load_builtin_backends()
    factory = _BACKENDS.get(settings.backend)
    if factory is None:
        raise InvalidArgumentError(
            f"Unsupported vector store backend: {settings.backend}. Choose from {sorted(_BACKENDS)}"
        )

    logger.info(f"Creating '{settings.backend}' vector store")
    return factory(settings)


def _load_builtin_backends() -> None:
    # Importing the modules runs their @register_backend decorators
    from hybrid_retrieval.retrieval import memory_store, qdrant_store  # noqa: F401


__all__ = [
    "VectorStore",
    "QueryVectors",
    "ResultReranker",
    "parse_metric",
    "register_backend",
    "available_backends",
    "create_vector_store",
]
