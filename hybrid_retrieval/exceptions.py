"""
Error taxonomy for the retrieval engine.

Callers branch on the error class rather than on message text:
- NotFoundError: missing collection or document
- AlreadyExistsError: duplicate collection or document
- InvalidArgumentError: malformed schema, bad parameters, dimension mismatch
- ProviderFailureError: opaque failure from an external collaborator
"""


class RetrievalError(Exception):
    """Base class for all retrieval engine errors."""


class NotFoundError(RetrievalError):
    """A referenced collection or document does not exist."""


class CollectionNotFoundError(NotFoundError):
    """Raised when operating on a collection that was never created."""

    def __init__(self, name: str):
        super().__init__(f"collection '{name}' does not exist")
        self.name = name


class DocumentNotFoundError(NotFoundError):
    """Raised when removing a document that is not indexed."""

    def __init__(self, doc_id: int):
        super().__init__(f"document {doc_id} is not indexed")
        self.doc_id = doc_id


class AlreadyExistsError(RetrievalError):
    """A collection or document with the same key already exists."""


class CollectionExistsError(AlreadyExistsError):
    """Raised by create_collection when the name is taken."""

    def __init__(self, name: str):
        super().__init__(f"collection '{name}' already exists")
        self.name = name


class DocumentExistsError(AlreadyExistsError):
    """Raised when adding a document ID that is already indexed."""

    def __init__(self, doc_id: int):
        super().__init__(f"document {doc_id} is already indexed; remove it first or use upsert")
        self.doc_id = doc_id


class InvalidArgumentError(RetrievalError, ValueError):
    """Malformed input: bad schema, unsupported index type, dimension mismatch."""


class ProviderFailureError(RetrievalError):
    """Failure surfaced from an external collaborator (embedder, backend client)."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class OperationCancelledError(RetrievalError):
    """The caller's cancellation event was set while an operation was running."""


__all__ = [
    "RetrievalError",
    "NotFoundError",
    "CollectionNotFoundError",
    "DocumentNotFoundError",
    "AlreadyExistsError",
    "CollectionExistsError",
    "DocumentExistsError",
    "InvalidArgumentError",
    "ProviderFailureError",
    "OperationCancelledError",
]
