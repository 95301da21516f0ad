"""
Metrics and Observability.

Prometheus metrics for the retrieval engine:
- Search request counts, result counts and latency per retrieval method
- Index mutation counts per index and operation
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRIEVAL_REQUESTS_TOTAL = Counter(
    "retrieval_requests_total",
    "Total retrieval requests",
    ["method", "status"],
)

RETRIEVAL_RESULT_COUNT = Histogram(
    "retrieval_results",
    "Number of results returned per retrieval",
    ["method"],
    buckets=[0, 1, 5, 10, 20, 50, 100],
)

RETRIEVAL_DURATION = Histogram(
    "retrieval_duration_seconds",
    "Retrieval duration in seconds",
    ["method"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

INDEX_MUTATIONS_TOTAL = Counter(
    "index_mutations_total",
    "Documents added to or removed from an index",
    ["index", "op"],
)

INDEX_DOCUMENTS = Gauge(
    "index_documents",
    "Documents currently held by an index",
    ["index"],
)


# =============================================================================
# Helper Functions
# =============================================================================

def track_retrieval(method: str, count: int):
    """Track retrieval stats."""
    RETRIEVAL_RESULT_COUNT.labels(method=method).observe(count)


def track_index_mutation(index: str, op: str, size: int, count: int = 1):
    """Track an add/remove against an index and its resulting size."""
    INDEX_MUTATIONS_TOTAL.labels(index=index, op=op).inc(count)
    INDEX_DOCUMENTS.labels(index=index).set(size)


@contextmanager
def timed_retrieval(method: str) -> Iterator[None]:
    """Time a retrieval call and count it as success or error."""
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        RETRIEVAL_DURATION.labels(method=method).observe(time.perf_counter() - start)
        RETRIEVAL_REQUESTS_TOTAL.labels(method=method, status=status).inc()


__all__ = [
    "track_retrieval",
    "track_index_mutation",
    "timed_retrieval",
    "RETRIEVAL_REQUESTS_TOTAL",
    "RETRIEVAL_RESULT_COUNT",
    "RETRIEVAL_DURATION",
    "INDEX_MUTATIONS_TOTAL",
    "INDEX_DOCUMENTS",
]
