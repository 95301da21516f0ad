"""
Token counting and sentence splitting for chunk sizing.

Chunkers depend only on the small TokenCounter protocol so the counting
strategy (approximate word count or exact sub-word encoding) can be chosen by
configuration without coupling the chunker to a tokenizer library.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from hybrid_retrieval.exceptions import InvalidArgumentError

SentenceSplitter = Callable[[str], list[str]]


class TokenCounter(Protocol):
    """Counts tokens in a string. Must return 0 for the empty string."""

    def count(self, text: str) -> int:
        """Return the number of tokens in ``text``."""


@dataclass(frozen=True)
class WhitespaceTokenCounter:
    """Approximate token counter: one token per whitespace-separated word."""

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(text.split())


@dataclass(frozen=True)
class TiktokenTokenCounter:
    """
    Exact token counter backed by ``tiktoken``.

    Attributes:
        encoding_name: Name of the tiktoken encoding
        _enc: Loaded tiktoken encoding object
    """

    encoding_name: str
    _enc: Any

    @classmethod
    def from_encoding_name(cls, encoding_name: str = "cl100k_base") -> "TiktokenTokenCounter":
        """Load a tiktoken encoding by name."""
        import tiktoken

        try:
            enc = tiktoken.get_encoding(encoding_name)
        except ValueError as e:
            raise InvalidArgumentError(f"unknown tiktoken encoding '{encoding_name}'") from e
        return cls(encoding_name=encoding_name, _enc=enc)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._enc.encode(text, disallowed_special=()))


def create_token_counter(kind: str = "whitespace", encoding: str = "cl100k_base") -> TokenCounter:
    """Create a token counter by name ("whitespace" or "tiktoken")."""
    if kind == "whitespace":
        return WhitespaceTokenCounter()
    if kind == "tiktoken":
        return TiktokenTokenCounter.from_encoding_name(encoding)
    raise InvalidArgumentError(f"Unknown token counter: {kind}. Choose from ['whitespace', 'tiktoken']")


# =============================================================================
# Sentence splitters
# =============================================================================

_TERMINATORS = ".!?"


def default_sentence_splitter(text: str) -> list[str]:
    """
    Split on '.', '!' and '?' outside double-quoted spans.

    Terminators are dropped, fragments are stripped and empty fragments
    (including whitespace-only runs between terminators) are discarded.
    """
    sentences: list[str] = []
    current: list[str] = []
    in_quote = False

    for ch in text:
        if ch == '"':
            in_quote = not in_quote
        if ch in _TERMINATORS and not in_quote:
            sentence = "".join(current).strip()
            if sentence:
                sentences.append(sentence)
            current = []
            continue
        current.append(ch)

    tail = "".join(current).strip()
    if tail:
        sentences.append(tail)
    return sentences


# Lowercased tokens after which a period does not end a sentence
ABBREVIATIONS = frozenset({
    "mr", "mrs", "ms", "dr", "prof", "sr", "jr", "st", "vs", "etc",
    "e.g", "i.e", "inc", "ltd", "co", "corp", "fig", "no", "vol", "approx",
})

_LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")


def _is_abbreviation(buffer: str) -> bool:
    """Whether the word ending ``buffer`` (just before a '.') is an abbreviation."""
    words = buffer.split()
    if not words:
        return False
    word = words[-1].lstrip("(\"'").lower()
    if word in ABBREVIATIONS:
        return True
    # Single-letter initials such as "J." in "J. Smith"
    return len(word) == 1 and word.isalpha()


def smart_sentence_splitter(text: str) -> list[str]:
    """
    Sentence splitter aware of abbreviations, quotes and list items.

    Keeps terminal punctuation attached to its sentence, treats double-quoted
    spans as opaque, does not break after common abbreviations or initials,
    and treats each newline-started list item as its own sentence.
    """
    sentences: list[str] = []

    for line_block in _split_list_items(text):
        current: list[str] = []
        in_quote = False
        length = len(line_block)

        for i, ch in enumerate(line_block):
            current.append(ch)
            if ch == '"':
                in_quote = not in_quote
                continue
            if ch not in _TERMINATORS or in_quote:
                continue
            # Collapse runs such as "?!" or "..." into a single boundary
            if i + 1 < length and line_block[i + 1] in _TERMINATORS:
                continue
            if ch == "." and _is_abbreviation("".join(current[:-1])):
                continue
            # Decimal numbers: "3.14"
            if ch == "." and i + 1 < length and line_block[i + 1].isdigit():
                continue

            sentence = "".join(current).strip()
            if sentence:
                sentences.append(sentence)
            current = []

        tail = "".join(current).strip()
        if tail:
            sentences.append(tail)

    return sentences


def _split_list_items(text: str) -> list[str]:
    """Group lines into blocks, starting a new block at every list item."""
    blocks: list[str] = []
    current: list[str] = []
    for line in text.splitlines():
        if _LIST_ITEM.match(line) and current:
            blocks.append("\n".join(current))
            current = []
        current.append(line)
    if current:
        blocks.append("\n".join(current))
    return blocks


SENTENCE_SPLITTERS: dict[str, SentenceSplitter] = {
    "default": default_sentence_splitter,
    "smart": smart_sentence_splitter,
}


def get_sentence_splitter(name: str) -> SentenceSplitter:
    """Look up a sentence splitter by name."""
    if name not in SENTENCE_SPLITTERS:
        raise InvalidArgumentError(
            f"Unknown splitter: {name}. Choose from {list(SENTENCE_SPLITTERS.keys())}"
        )
    return SENTENCE_SPLITTERS[name]


__all__ = [
    "TokenCounter",
    "WhitespaceTokenCounter",
    "TiktokenTokenCounter",
    "create_token_counter",
    "SentenceSplitter",
    "default_sentence_splitter",
    "smart_sentence_splitter",
    "get_sentence_splitter",
]
