"""
Concurrency primitives shared by the stateful indexes.

- ReadWriteLock: many readers at once, a writer alone. Waiting writers block
  new readers so a steady stream of searches cannot starve ingestion.
- raise_if_cancelled: cooperative cancellation check between coarse steps.
"""

import threading
from contextlib import contextmanager
from typing import Iterator

from hybrid_retrieval.exceptions import OperationCancelledError


class ReadWriteLock:
    """Writer-preferring reader/writer lock. Not reentrant."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


def raise_if_cancelled(cancel_event: threading.Event | None, operation: str) -> None:
    """Raise OperationCancelledError if the caller has set its cancellation event."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"{operation} cancelled")


__all__ = ["ReadWriteLock", "raise_if_cancelled"]
