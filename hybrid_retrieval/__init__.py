"""Hybrid dense + BM25 retrieval engine with sentence-aware chunking."""

__version__ = "0.1.0"
