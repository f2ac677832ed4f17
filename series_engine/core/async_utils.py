"""Async orchestration utilities for the series engine.

Provides the consistent patterns the materializer relies on:
- Per-operation timeouts with cancellation of only the timed-out task
- Fixed-size batches of coroutines run concurrently with isolated failures
- Per-key mutual exclusion for check-then-create sequences

Usage Example:
    ```python
    from series_engine.core.async_utils import AsyncOrchestrator, KeyedLock

    orchestrator = AsyncOrchestrator(default_timeout=5.0)

    # Run async function with timeout
    result = await orchestrator.run_with_timeout(materialize(date), timeout=5.0)

    # Run factories two at a time; failures come back as exception objects
    results = await orchestrator.run_in_batches(factories, batch_size=2, timeout=5.0)

    # Serialize work on one key while other keys proceed
    locks = KeyedLock()
    async with locks.acquire(("series-1", "2025-10-06T22:00:00+00:00")):
        ...
    ```
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable, Sequence
from contextlib import asynccontextmanager
from typing import Any, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncOrchestratorError(Exception):
    """Base exception for AsyncOrchestrator errors."""


class AsyncTimeoutError(AsyncOrchestratorError):
    """Raised when async operation exceeds timeout."""


class AsyncOrchestrator:
    """Timeout and batch orchestration with health tracking.

    A timeout cancels only the awaited operation; siblings running in the
    same batch keep going and report their own result.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        enable_health_tracking: bool = True,
    ):
        """Initialize async orchestrator.

        Args:
            default_timeout: Default timeout for operations in seconds
            enable_health_tracking: Enable health tracking for operations
        """
        self.default_timeout = default_timeout
        self.enable_health_tracking = enable_health_tracking

        # Health tracking
        self._operation_count = 0
        self._error_count = 0
        self._timeout_count = 0
        self._last_error_time: Optional[float] = None

        logger.debug(
            "AsyncOrchestrator initialized: default_timeout=%.1fs, health_tracking=%s",
            default_timeout,
            enable_health_tracking,
        )

    def _record_operation(self, success: bool = True, timeout: bool = False) -> None:
        if not self.enable_health_tracking:
            return

        self._operation_count += 1

        if not success:
            self._error_count += 1
            self._last_error_time = time.time()

        if timeout:
            self._timeout_count += 1

    async def run_with_timeout(
        self,
        coro: Awaitable[T],
        timeout: Optional[float] = None,
        raise_on_timeout: bool = True,
    ) -> Optional[T]:
        """Run async coroutine with timeout.

        Args:
            coro: Coroutine to execute
            timeout: Timeout in seconds (uses default if None)
            raise_on_timeout: Whether to raise exception on timeout

        Returns:
            Coroutine result, or None on timeout when raise_on_timeout is False

        Raises:
            AsyncTimeoutError: If timeout occurs and raise_on_timeout=True
        """
        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = await asyncio.wait_for(coro, timeout=effective_timeout)
        except TimeoutError as e:
            self._record_operation(success=False, timeout=True)
            logger.warning("Operation timed out after %.1fs", effective_timeout)
            if raise_on_timeout:
                raise AsyncTimeoutError(
                    f"Operation exceeded timeout of {effective_timeout}s"
                ) from e
            return None
        except Exception:
            self._record_operation(success=False)
            raise
        self._record_operation(success=True)
        return result

    async def run_in_batches(
        self,
        factories: Sequence[Callable[[], Awaitable[T]]],
        batch_size: int,
        timeout: Optional[float] = None,
    ) -> list[Any]:
        """Run coroutine factories in consecutive fixed-size concurrent batches.

        Each item is bounded by ``timeout`` individually. Results keep the
        input order; a failed or timed-out item yields its exception object
        (``AsyncTimeoutError`` for timeouts) instead of aborting the batch.

        Args:
            factories: Zero-argument callables each returning a coroutine
            batch_size: Number of items run concurrently per batch
            timeout: Per-item timeout in seconds (uses default if None)

        Returns:
            List of results or exceptions, one per factory
        """
        size = max(1, batch_size)
        results: list[Any] = []

        for start in range(0, len(factories), size):
            batch = factories[start : start + size]
            logger.debug(
                "Running batch %d (%d items, timeout=%s)",
                start // size + 1,
                len(batch),
                timeout,
            )
            batch_results = await asyncio.gather(
                *(self.run_with_timeout(factory(), timeout=timeout) for factory in batch),
                return_exceptions=True,
            )
            results.extend(batch_results)

        return results

    def get_health_stats(self) -> dict[str, Any]:
        """Get health statistics for monitoring.

        Returns:
            Dictionary with health metrics
        """
        if not self.enable_health_tracking:
            return {"health_tracking": "disabled"}

        error_rate = self._error_count / self._operation_count if self._operation_count > 0 else 0.0

        timeout_rate = (
            self._timeout_count / self._operation_count if self._operation_count > 0 else 0.0
        )

        return {
            "operation_count": self._operation_count,
            "error_count": self._error_count,
            "timeout_count": self._timeout_count,
            "error_rate": error_rate,
            "timeout_rate": timeout_rate,
            "last_error_time": self._last_error_time,
        }


class KeyedLock:
    """A family of asyncio locks indexed by key.

    Locks are created on first use and dropped once no task holds or waits
    on them, so the table only ever contains contended keys.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

