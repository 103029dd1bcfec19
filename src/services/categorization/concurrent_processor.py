"""
Batch categorization on a process-wide worker pool.

The pool is created once per process (initialize_worker_pool), shared by every
processor, and shut down once (shutdown_worker_pool). Its size never exceeds
resource_pool_size - 1 so one backend resource is always left for coordination.
"""

import time
import atexit
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from models.transaction import Transaction
from models.categorization import CategorizationResult, CategorizationStatus
from services.categorization.config import ProcessingConfig, worker_count_for
from services.categorization.errors import EngineConfigurationError

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled before dispatch"
BATCH_TIMEOUT_REASON = "batch deadline exceeded"
SUBMIT_POLL_SECONDS = 0.05


class Categorizer(Protocol):
    def categorize(self, transaction: Transaction, timeout_ms: Optional[float] = None) -> CategorizationResult:
        ...


class WorkerPool:
    """A fixed-size thread pool sized against a shared resource pool."""

    def __init__(self, resource_pool_size: int, max_workers: int):
        self.resource_pool_size = resource_pool_size
        self.size = worker_count_for(resource_pool_size, max_workers)
        self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="categorization")
        self._shutdown = False
        logger.info(
            f"Started categorization worker pool with {self.size} workers "
            f"(resource pool size {resource_pool_size})"
        )

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def submit(self, fn, *args: Any, **kwargs: Any) -> Future:
        if self._shutdown:
            raise EngineConfigurationError("Worker pool has been shut down")
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        if not self._shutdown:
            self._shutdown = True
            self._executor.shutdown(wait=wait, cancel_futures=True)
            logger.info("Categorization worker pool shut down")


_worker_pool: Optional[WorkerPool] = None
_worker_pool_lock = threading.Lock()


def initialize_worker_pool(config: Optional[ProcessingConfig] = None) -> WorkerPool:
    """
    Create the process-wide pool, or return it if it already exists.

    Raises:
        EngineConfigurationError: If the resource pool is too small to reserve a coordination slot
    """
    global _worker_pool
    config = config or ProcessingConfig()
    with _worker_pool_lock:
        if _worker_pool is not None and not _worker_pool.is_shutdown:
            requested = worker_count_for(config.resource_pool_size, config.max_workers)
            if requested != _worker_pool.size:
                logger.warning(
                    f"Worker pool already running with {_worker_pool.size} workers, "
                    f"ignoring request for {requested}"
                )
            return _worker_pool
        _worker_pool = WorkerPool(config.resource_pool_size, config.max_workers)
        return _worker_pool


def get_worker_pool() -> WorkerPool:
    """The process-wide pool, created with default settings on first use."""
    pool = _worker_pool
    if pool is None or pool.is_shutdown:
        return initialize_worker_pool()
    return pool


def shutdown_worker_pool(wait: bool = True) -> None:
    global _worker_pool
    with _worker_pool_lock:
        if _worker_pool is not None:
            _worker_pool.shutdown(wait=wait)
            _worker_pool = None


atexit.register(shutdown_worker_pool)


@dataclass
class BatchStats:
    """Outcome counts and timing for one batch."""
    total: int
    worker_count: int
    start_time: float = field(default_factory=time.time)
    elapsed_ms: Optional[float] = None
    matched: int = 0
    no_match: int = 0
    errors: int = 0
    timeouts: int = 0
    cancelled: int = 0

    def record(self, result: CategorizationResult) -> None:
        if result.status == CategorizationStatus.MATCHED:
            self.matched += 1
        elif result.status == CategorizationStatus.NO_MATCH:
            self.no_match += 1
        elif result.status == CategorizationStatus.TIMEOUT:
            self.timeouts += 1
        else:
            self.errors += 1
            if result.error == CANCELLED_REASON:
                self.cancelled += 1

    def finish(self) -> None:
        self.elapsed_ms = (time.time() - self.start_time) * 1000

    @property
    def partial_failure(self) -> bool:
        return self.errors > 0 or self.timeouts > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'worker_count': self.worker_count,
            'elapsed_ms': self.elapsed_ms,
            'matched': self.matched,
            'no_match': self.no_match,
            'errors': self.errors,
            'timeouts': self.timeouts,
            'cancelled': self.cancelled,
            'timestamp': datetime.now(timezone.utc).isoformat()
        }

    def log_metrics(self) -> None:
        stats = self.to_dict()
        if self.partial_failure:
            logger.warning(
                f"Batch of {self.total} completed with {self.errors} errors "
                f"and {self.timeouts} timeouts in {self.elapsed_ms:.2f}ms",
                extra={'batch_stats': stats}
            )
        else:
            logger.info(
                f"Batch of {self.total} completed in {self.elapsed_ms:.2f}ms "
                f"({self.matched} matched, {self.no_match} unmatched)",
                extra={'batch_stats': stats}
            )


class ConcurrentProcessor:
    """
    Fans a batch out across the shared worker pool and reassembles results by
    input index, so output order always equals input order.
    """

    def __init__(
        self,
        engine: Categorizer,
        pool: Optional[WorkerPool] = None,
        config: Optional[ProcessingConfig] = None
    ):
        self.engine = engine
        self.config = config or ProcessingConfig()
        self.pool = pool or get_worker_pool()
        self.last_stats: Optional[BatchStats] = None

    def categorize_batch(
        self,
        transactions: Sequence[Transaction],
        max_concurrency: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout_seconds: Optional[float] = None
    ) -> List[CategorizationResult]:
        """
        Categorize every transaction and return results in input order.

        Items not dispatched because cancel_event was set come back as errors;
        items unfinished at the batch deadline come back as timeouts.

        Raises:
            EngineConfigurationError: If the engine is misconfigured
            ValueError: If max_concurrency is less than 1
        """
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")

        total = len(transactions)
        concurrency = min(self.pool.size, max_concurrency or self.pool.size)
        stats = BatchStats(total=total, worker_count=concurrency)
        if total == 0:
            stats.finish()
            self.last_stats = stats
            return []

        budget = timeout_seconds if timeout_seconds is not None else self.config.batch_timeout_seconds
        deadline = time.monotonic() + budget
        results: List[Optional[CategorizationResult]] = [None] * total

        if total <= self.config.small_batch_threshold and concurrency == self.pool.size:
            futures = self._submit_direct(transactions, cancel_event)
        else:
            futures = self._submit_throttled(transactions, concurrency, cancel_event, deadline)

        wait(list(futures.values()), timeout=max(0.0, deadline - time.monotonic()))

        cancelled = cancel_event is not None and cancel_event.is_set()
        for index, transaction in enumerate(transactions):
            future = futures.get(index)
            if future is None and cancelled:
                results[index] = CategorizationResult.error_result(transaction.transaction_id, CANCELLED_REASON)
            elif future is None:
                results[index] = CategorizationResult.timeout(
                    transaction.transaction_id, reason=BATCH_TIMEOUT_REASON
                )
            elif not future.done():
                future.cancel()
                results[index] = CategorizationResult.timeout(
                    transaction.transaction_id, reason=BATCH_TIMEOUT_REASON
                )
            else:
                results[index] = self._collect(future, transaction)

        ordered = [r for r in results if r is not None]
        for result in ordered:
            stats.record(result)
        stats.finish()
        stats.log_metrics()
        self.last_stats = stats
        return ordered

    def _submit_direct(self, transactions: Sequence[Transaction],
                       cancel_event: Optional[threading.Event]) -> Dict[int, Future]:
        futures: Dict[int, Future] = {}
        for index, transaction in enumerate(transactions):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Batch cancelled after dispatching {index} of {len(transactions)} items")
                break
            futures[index] = self.pool.submit(self.engine.categorize, transaction)
        return futures

    def _submit_throttled(self, transactions: Sequence[Transaction], concurrency: int,
                          cancel_event: Optional[threading.Event], deadline: float) -> Dict[int, Future]:
        """Keep at most concurrency items in flight; stop on cancellation or deadline."""
        slots = threading.Semaphore(concurrency)
        futures: Dict[int, Future] = {}

        for index, transaction in enumerate(transactions):
            acquired = False
            while not acquired:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Batch cancelled after dispatching {index} of {len(transactions)} items")
                    return futures
                if time.monotonic() >= deadline:
                    logger.warning(f"Batch deadline reached after dispatching {index} of {len(transactions)} items")
                    return futures
                acquired = slots.acquire(timeout=SUBMIT_POLL_SECONDS)

            future = self.pool.submit(self.engine.categorize, transaction)
            future.add_done_callback(lambda _: slots.release())
            futures[index] = future
        return futures

    def _collect(self, future: Future, transaction: Transaction) -> CategorizationResult:
        if future.cancelled():
            return CategorizationResult.timeout(transaction.transaction_id, reason=BATCH_TIMEOUT_REASON)
        error = future.exception()
        if error is None:
            return future.result()
        if isinstance(error, EngineConfigurationError):
            raise error
        logger.error(
            f"Worker failed on transaction {transaction.transaction_id}: {str(error)}",
            exc_info=error
        )
        return CategorizationResult.error_result(
            transaction.transaction_id, f"{type(error).__name__}: {str(error)}"
        )
