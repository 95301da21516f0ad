"""
Sentence-Aware Document Chunking Module.

Splits raw document text into ordered, overlapping, token-bounded chunks:
- Sentence boundaries are never broken
- Chunk size and overlap are measured with a pluggable token counter
- Each chunk records the half-open range of sentences it covers, so the
  original sentence order can be reconstructed from the chunk sequence
"""

import logging
from dataclasses import dataclass

from hybrid_retrieval.config import ChunkingSettings, get_chunking_settings
from hybrid_retrieval.exceptions import InvalidArgumentError
from hybrid_retrieval.pipeline.tokenisation import (
    SentenceSplitter,
    TokenCounter,
    WhitespaceTokenCounter,
    create_token_counter,
    default_sentence_splitter,
    get_sentence_splitter,
)


@dataclass(frozen=True)
class Chunk:
    """A piece of a document covering sentences [start_sentence, end_sentence)."""
    text: str
    token_count: int
    start_sentence: int
    end_sentence: int

    @property
    def sentence_count(self) -> int:
        return self.end_sentence - self.start_sentence

    @property
    def char_count(self) -> int:
        return len(self.text)


class TextChunker:
    """
    Greedy sentence-packing chunker with token-based backward overlap.

    Sentences are accumulated until the next one would push the chunk over
    ``chunk_size`` tokens. The next chunk is then seeded with trailing
    sentences of the closed chunk whose tokens add up to ``chunk_overlap``.
    A sentence larger than ``chunk_size`` on its own still becomes a chunk.

    Example:
        chunker = TextChunker(chunk_size=128, chunk_overlap=16)
        chunks = chunker.chunk(document_text)
    """

    def __init__(
        self,
        chunk_size: int = 200,
        chunk_overlap: int = 50,
        token_counter: TokenCounter | None = None,
        sentence_splitter: SentenceSplitter | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize text chunker.

        Args:
            chunk_size: Target chunk size in tokens
            chunk_overlap: Tokens of trailing context carried into the next chunk
            token_counter: Token counting strategy (default: whitespace words)
            sentence_splitter: Function splitting text into sentences
            logger: Logger to use instead of the module logger
        """
        if chunk_size <= 0:
            raise InvalidArgumentError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0:
            raise InvalidArgumentError(f"chunk_overlap must be non-negative, got {chunk_overlap}")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.token_counter = token_counter or WhitespaceTokenCounter()
        self.sentence_splitter = sentence_splitter or default_sentence_splitter
        self._logger = logger or logging.getLogger(__name__)

        if chunk_overlap >= chunk_size:
            # Each chunk then restarts at the previous chunk's first sentence
            self._logger.warning(
                f"chunk_overlap={chunk_overlap} >= chunk_size={chunk_size}; chunks will repeat whole predecessors"
            )

    def chunk(self, text: str) -> list[Chunk]:
        """Split text into chunks. Empty input yields an empty list."""
        sentences = self.sentence_splitter(text)
        if not sentences:
            return []

        counts = [self.token_counter.count(s) for s in sentences]

        chunks: list[Chunk] = []
        start = 0
        running = 0

        for i, sentence_tokens in enumerate(counts):
            if running + sentence_tokens > self.chunk_size and running > 0:
                chunks.append(self._make_chunk(sentences, counts, start, i))
                start = self._overlap_start(counts, start, i)
                running = sum(counts[start:i])
            running += sentence_tokens

        if running > 0:
            chunks.append(self._make_chunk(sentences, counts, start, len(sentences)))

        self._logger.debug(
            f"Created {len(chunks)} chunks from {len(sentences)} sentences"
        )
        return chunks

    def _overlap_start(self, counts: list[int], start: int, end: int) -> int:
        """First sentence of the overlap walked back from ``end``, never before ``start``."""
        overlap_tokens = 0
        idx = end
        while idx > start and overlap_tokens < self.chunk_overlap:
            idx -= 1
            overlap_tokens += counts[idx]
        return idx

    @staticmethod
    def _make_chunk(sentences: list[str], counts: list[int], start: int, end: int) -> Chunk:
        return Chunk(
            text=" ".join(sentences[start:end]),
            token_count=sum(counts[start:end]),
            start_sentence=start,
            end_sentence=end,
        )


# Factory function
def create_chunker(
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    token_counter: TokenCounter | None = None,
    splitter: str | None = None,
    settings: ChunkingSettings | None = None,
) -> TextChunker:
    """Create a text chunker, filling unset options from chunking settings."""
    settings = settings or get_chunking_settings()

    if token_counter is None:
        token_counter = create_token_counter(settings.token_counter, settings.encoding)

    return TextChunker(
        chunk_size=chunk_size if chunk_size is not None else settings.size,
        chunk_overlap=chunk_overlap if chunk_overlap is not None else settings.overlap,
        token_counter=token_counter,
        sentence_splitter=get_sentence_splitter(splitter or settings.splitter),
    )


__all__ = [
    "Chunk",
    "TextChunker",
    "create_chunker",
]
