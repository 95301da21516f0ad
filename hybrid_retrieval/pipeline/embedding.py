"""
Embedding service.

Wraps an external embedding provider (anything with ``embed(text)``) and turns
chunks into EmbeddedChunks. Provider failures are not retried here: they are
wrapped in ProviderFailureError with context and surface to the caller.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from hybrid_retrieval.exceptions import InvalidArgumentError, ProviderFailureError
from hybrid_retrieval.pipeline.chunking import Chunk

DEFAULT_FIELD = "embedding"


class Embedder(Protocol):
    """External embedding provider: one fixed-size vector per text."""

    def embed(self, text: str) -> Sequence[float]:
        ...


@dataclass
class EmbeddedChunk:
    """A chunk with one embedding per named field (e.g. "title" and "body")."""
    text: str
    embeddings: dict[str, list[float]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class EmbeddingService:
    """
    Embeds queries and chunks through an external provider.

    Example:
        service = EmbeddingService(provider, dimension=1536)
        embedded = service.embed_chunks(chunks, metadata={"source": "report.pdf"})
        query_vector = service.embed_query("quarterly revenue")
    """

    def __init__(
        self,
        embedder: Embedder,
        dimension: int | None = None,
        provider_name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the embedding service.

        Args:
            embedder: Provider implementing ``embed(text)``
            dimension: Expected vector size; checked on every call when set
            provider_name: Name used in error messages (default: provider class name)
            logger: Logger to use instead of the module logger
        """
        self.embedder = embedder
        self.dimension = dimension
        self.provider_name = provider_name or type(embedder).__name__
        self._logger = logger or logging.getLogger(__name__)

    def embed_query(self, text: str) -> list[float]:
        """Embed a single text."""
        try:
            vector = [float(x) for x in self.embedder.embed(text)]
        except Exception as e:
            raise ProviderFailureError(self.provider_name, f"embedding failed: {e}") from e

        if self.dimension is not None and len(vector) != self.dimension:
            raise InvalidArgumentError(
                f"{self.provider_name} returned dimension {len(vector)}, expected {self.dimension}"
            )
        return vector

    def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        field_name: str = DEFAULT_FIELD,
        metadata: Mapping[str, Any] | None = None,
        extra_fields: Mapping[str, str] | None = None,
    ) -> list[EmbeddedChunk]:
        """
        Embed every chunk's text under ``field_name``.

        Args:
            chunks: Chunks in document order
            field_name: Embedding field name for the chunk text
            metadata: Metadata copied onto every embedded chunk
            extra_fields: Field name to text, embedded once and attached to
                every chunk (e.g. {"title": document_title})

        Returns:
            One EmbeddedChunk per chunk; metadata carries the chunk's position
        """
        shared = {
            name: self.embed_query(text)
            for name, text in (extra_fields or {}).items()
        }

        embedded = []
        for index, chunk in enumerate(chunks):
            embeddings = {field_name: self.embed_query(chunk.text)}
            for name, vector in shared.items():
                embeddings[name] = list(vector)

            embedded.append(EmbeddedChunk(
                text=chunk.text,
                embeddings=embeddings,
                metadata={
                    **(metadata or {}),
                    "chunk_index": index,
                    "start_sentence": chunk.start_sentence,
                    "end_sentence": chunk.end_sentence,
                    "token_count": chunk.token_count,
                },
            ))

        self._logger.debug(f"Embedded {len(embedded)} chunks with {self.provider_name}")
        return embedded


__all__ = [
    "DEFAULT_FIELD",
    "Embedder",
    "EmbeddedChunk",
    "EmbeddingService",
]
