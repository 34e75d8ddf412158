"""Bounded concurrency and cooperative cancellation for remote I/O.

This module provides:
- CancelledException / CancellationToken: cooperative abort checked at file boundaries
- TransferLimiter: caps simultaneous remote calls and fans work out over a pool
- bulk_transfer_guard: process-wide guard allowing one bulk transfer at a time
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generic, TypeVar

from remotesync.core.config import DEFAULT_MAX_CONCURRENCY

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancelledException(Exception):
    """Raised when an operation is cancelled."""


class TransferInProgressError(Exception):
    """Another bulk transfer is already running in this process."""


class CancellationToken:
    """Cancellation flag shared by every unit of one operation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise CancelledException if cancellation was requested."""
        if self._event.is_set():
            raise CancelledException("Operation cancelled")


@dataclass
class UnitResult(Generic[T, R]):
    """Outcome of one unit of fanned-out work."""

    item: T
    value: R | None = None
    error: Exception | None = None
    skipped: bool = False  # not started because of cancellation

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class TransferLimiter:
    """Runs remote calls with a bounded number in flight.

    map() schedules units on a pool no wider than the bound; units wrap
    their remote calls in call(), which takes a slot from a semaphore, so
    the bound holds across several map() calls sharing one limiter.
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        """Initialize the limiter.

        Args:
            max_concurrency: Maximum simultaneous remote calls.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max = max_concurrency
        self._slots = threading.BoundedSemaphore(max_concurrency)

    @property
    def max_concurrency(self) -> int:
        """Get the concurrency bound."""
        return self._max

    def call(self, func: Callable[[], R]) -> R:
        """Run one remote call inside a concurrency slot."""
        with self._slots:
            return func()

    def map(
        self,
        func: Callable[[T], R],
        items: Iterable[T],
        token: CancellationToken | None = None,
    ) -> list[UnitResult[T, R]]:
        """Apply func to every item with bounded concurrency.

        The token is checked before each unit starts; units already running
        complete. Exceptions are captured per unit, never raised.

        Returns:
            One result per item, in input order.
        """
        items = list(items)
        if not items:
            return []

        def run(item: T) -> UnitResult[T, R]:
            if token is not None and token.cancelled:
                return UnitResult(item=item, skipped=True)
            try:
                return UnitResult(item=item, value=func(item))
            except CancelledException:
                return UnitResult(item=item, skipped=True)
            except Exception as e:
                return UnitResult(item=item, error=e)

        with ThreadPoolExecutor(max_workers=min(self._max, len(items))) as pool:
            return list(pool.map(run, items))


_bulk_lock = threading.Lock()


@contextmanager
def bulk_transfer_guard(operation: str) -> Iterator[None]:
    """Hold the process-wide bulk transfer guard.

    Raises:
        TransferInProgressError: If another bulk transfer holds the guard.
    """
    if not _bulk_lock.acquire(blocking=False):
        raise TransferInProgressError(
            f"Cannot start {operation}: another bulk transfer is running"
        )
    logger.debug(f"Bulk transfer started: {operation}")
    try:
        yield
    finally:
        _bulk_lock.release()
        logger.debug(f"Bulk transfer finished: {operation}")
