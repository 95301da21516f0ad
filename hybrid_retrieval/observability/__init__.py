"""
Observability Package.

Provides:
- Prometheus metrics
- Structured logging configuration
"""

from hybrid_retrieval.observability.log_config import configure_logging, get_logger
from hybrid_retrieval.observability.metrics import (
    timed_retrieval,
    track_index_mutation,
    track_retrieval,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "timed_retrieval",
    "track_index_mutation",
    "track_retrieval",
]
