"""
Document Indexing Pipeline.

Orchestrates the ingestion workflow for plain-text documents:
1. Chunk into token-bounded, sentence-aligned pieces
2. Generate one embedding per chunk
3. Insert into the vector store collection
4. Insert into the BM25 index under the same chunk IDs

Chunk IDs are derived from the document ID (doc_id * id_stride + chunk_index),
so dense and lexical hits for the same chunk fuse correctly at query time.
"""

import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from hybrid_retrieval.config import get_vector_store_settings
from hybrid_retrieval.exceptions import InvalidArgumentError, RetrievalError
from hybrid_retrieval.pipeline.chunking import TextChunker, create_chunker
from hybrid_retrieval.pipeline.embedding import DEFAULT_FIELD, EmbeddedChunk, EmbeddingService
from hybrid_retrieval.retrieval.bm25_retriever import BM25Index
from hybrid_retrieval.retrieval.types import DataType, FieldSchema, Schema
from hybrid_retrieval.retrieval.vector_store import VectorStore

DEFAULT_ID_STRIDE = 10_000

DocumentItem = tuple[int, str] | tuple[int, str, Mapping[str, Any] | None]


@dataclass
class IndexingResult:
    """Result of document indexing."""
    doc_id: int
    success: bool
    chunks_created: int = 0
    chunk_ids: list[int] = field(default_factory=list)
    error: str | None = None
    processing_time_ms: float = 0


def build_chunk_schema(
    collection_name: str,
    dimension: int,
    vector_field: str = DEFAULT_FIELD,
) -> Schema:
    """Schema used for chunk collections: id, text, metadata and one vector field."""
    return Schema(
        name=collection_name,
        fields=(
            FieldSchema(name="id", data_type=DataType.INT64, primary_key=True),
            FieldSchema(name="text", data_type=DataType.VARCHAR),
            FieldSchema(name="metadata", data_type=DataType.JSON),
            FieldSchema(name=vector_field, data_type=DataType.FLOAT_VECTOR, dimension=dimension),
        ),
        description="Document chunks",
    )


class DocumentIndexer:
    """
    Document indexing pipeline.

    Example:
        indexer = DocumentIndexer(chunker, embeddings, store, "docs", bm25)
        indexer.ensure_collection(dimension=384)

        result = indexer.index_document(7, contract_text, {"source": "agreement.pdf"})
        print(f"Indexed {result.chunks_created} chunks")
    """

    def __init__(
        self,
        chunker: TextChunker,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        collection_name: str,
        bm25_index: BM25Index,
        vector_field: str = DEFAULT_FIELD,
        id_stride: int = DEFAULT_ID_STRIDE,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize document indexer.

        Args:
            chunker: Splits documents into chunks
            embedding_service: Embeds chunk text
            vector_store: Dense backend
            collection_name: Target collection in the vector store
            bm25_index: Sparse index sharing the chunk ID space
            vector_field: Record field that receives chunk embeddings
            id_stride: Maximum number of chunks per document
            logger: Logger to use instead of the module logger
        """
        if id_stride <= 0:
            raise InvalidArgumentError(f"id_stride must be positive, got {id_stride}")

        self.chunker = chunker
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.collection_name = collection_name
        self.bm25_index = bm25_index
        self.vector_field = vector_field
        self.id_stride = id_stride
        self._logger = logger or logging.getLogger(__name__)

    def ensure_collection(self, dimension: int) -> None:
        """Create the chunk collection if the store does not have it yet."""
        if self.vector_store.has_collection(self.collection_name):
            return
        schema = build_chunk_schema(self.collection_name, dimension, self.vector_field)
        self.vector_store.create_collection(self.collection_name, schema)

    def chunk_id(self, doc_id: int, chunk_index: int) -> int:
        return doc_id * self.id_stride + chunk_index

    def index_document(
        self,
        doc_id: int,
        text: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> IndexingResult:
        """
        Chunk, embed and store one document.

        Failures from any stage are logged and reported on the result rather
        than raised, so a batch can carry on with the next document. Indexing
        an already indexed ``doc_id`` replaces all of its previous chunks; if
        the replacement fails the document is left out of both stores.
        """
        start_time = time.perf_counter()

        try:
            chunk_ids = self._index(doc_id, text, metadata)
        except RetrievalError as e:
            self._logger.error(f"Failed to index document {doc_id}: {e}")
            return IndexingResult(
                doc_id=doc_id,
                success=False,
                error=str(e),
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
            )

        if not chunk_ids:
            return IndexingResult(
                doc_id=doc_id,
                success=False,
                error="No chunks created from document",
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
            )

        self._logger.info(f"Indexed {len(chunk_ids)} chunks for document {doc_id}")
        return IndexingResult(
            doc_id=doc_id,
            success=True,
            chunks_created=len(chunk_ids),
            chunk_ids=chunk_ids,
            processing_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    def index_documents(self, items: Iterable[DocumentItem]) -> list[IndexingResult]:
        """Index documents in order, continuing past failed documents."""
        results = []
        for item in items:
            doc_id, text, *rest = item
            results.append(self.index_document(doc_id, text, rest[0] if rest else None))

        failed = sum(1 for r in results if not r.success)
        if failed:
            self._logger.warning(f"{failed} of {len(results)} documents failed to index")
        return results

    def _index(self, doc_id: int, text: str, metadata: Mapping[str, Any] | None) -> list[int]:
        if not isinstance(doc_id, int) or isinstance(doc_id, bool) or doc_id < 0:
            raise InvalidArgumentError(f"doc_id must be a non-negative int, got {doc_id!r}")
        if not isinstance(text, str):
            raise InvalidArgumentError(f"text of document {doc_id} must be a str, got {type(text).__name__}")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise InvalidArgumentError(
                f"metadata of document {doc_id} must be a mapping, got {type(metadata).__name__}"
            )

        chunks = self.chunker.chunk(text)
        if not chunks:
            return []
        if len(chunks) > self.id_stride:
            raise InvalidArgumentError(
                f"document {doc_id} produced {len(chunks)} chunks, more than id_stride={self.id_stride}"
            )

        embedded = self.embedding_service.embed_chunks(
            chunks,
            field_name=self.vector_field,
            metadata={**(metadata or {}), "doc_id": doc_id},
        )
        chunk_ids = [self.chunk_id(doc_id, i) for i in range(len(embedded))]

        # Re-indexing replaces every chunk of the previous version
        previous = self.indexed_chunk_ids(doc_id)
        if previous:
            self._logger.info(f"Replacing {len(previous)} existing chunks of document {doc_id}")
            self._discard(previous)

        self._store_in_vector_db(chunk_ids, embedded)
        self._store_in_bm25(chunk_ids, embedded)
        return chunk_ids

    def indexed_chunk_ids(self, doc_id: int) -> list[int]:
        """Chunk IDs of a document currently held in the BM25 index."""
        return self.bm25_index.document_ids(self.chunk_id(doc_id, 0), self.chunk_id(doc_id + 1, 0))

    def _store_in_vector_db(self, chunk_ids: list[int], embedded: list[EmbeddedChunk]) -> None:
        """Store chunks in the vector store; any rejected record fails the whole document."""
        records = [
            {"id": cid, "text": chunk.text, "metadata": chunk.metadata, **chunk.embeddings}
            for cid, chunk in zip(chunk_ids, embedded)
        ]
        result = self.vector_store.insert(self.collection_name, records)
        if not result.success:
            # Undo the records that did land so both stores hold the same chunks
            if result.ids:
                self.vector_store.delete(self.collection_name, result.ids)
            reasons = "; ".join(f"chunk {f.index}: {f.reason}" for f in result.failed)
            raise InvalidArgumentError(f"vector store rejected chunks: {reasons}")

    def _store_in_bm25(self, chunk_ids: list[int], embedded: list[EmbeddedChunk]) -> None:
        """Store chunks in BM25 index; on failure the document is removed from both stores."""
        try:
            for cid, chunk in zip(chunk_ids, embedded):
                self.bm25_index.upsert(cid, chunk.text, chunk.metadata)
        except Exception:
            self._discard(chunk_ids)
            raise

    def _discard(self, chunk_ids: list[int]) -> None:
        """Remove chunks from the vector store and the BM25 index."""
        self.vector_store.delete(self.collection_name, chunk_ids)
        for cid in chunk_ids:
            if cid in self.bm25_index:
                self.bm25_index.remove(cid)


# Factory function
def create_document_indexer(
    embedding_service: EmbeddingService,
    vector_store: VectorStore | None = None,
    bm25_index: BM25Index | None = None,
    collection_name: str | None = None,
    chunker: TextChunker | None = None,
    logger: logging.Logger | None = None,
) -> DocumentIndexer:
    """
    Create a document indexer from application settings.

    The chunk collection is created with the configured dimension when the
    store does not have it yet.
    """
    from hybrid_retrieval.retrieval.bm25_retriever import create_bm25_index
    from hybrid_retrieval.retrieval.vector_store import create_vector_store

    store_settings = get_vector_store_settings()
    if vector_store is None:
        vector_store = create_vector_store(store_settings)
    if bm25_index is None:
        bm25_index = create_bm25_index(logger=logger)

    indexer = DocumentIndexer(
        chunker=chunker or create_chunker(),
        embedding_service=embedding_service,
        vector_store=vector_store,
        collection_name=collection_name or store_settings.collection_name,
        bm25_index=bm25_index,
        logger=logger,
    )
    indexer.ensure_collection(embedding_service.dimension or store_settings.dimension)
    return indexer


__all__ = [
    "DEFAULT_ID_STRIDE",
    "IndexingResult",
    "DocumentIndexer",
    "build_chunk_schema",
    "create_document_indexer",
]
