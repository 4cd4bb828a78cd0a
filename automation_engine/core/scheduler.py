"""Execution Scheduler: recurring sweep that claims due enrollments and dispatches them."""

import os
import socket
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .enrollment_store import EnrollmentStore
from .exceptions import SchedulerError, StorageError
from .execution_engine import DispatchResult, ExecutionEngine
from .logging import get_logger

logger = get_logger(__name__)


def default_worker_id() -> str:
    """Lease holder id unique to this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class SweepResult:
    """Counters for one sweep cycle."""
    started_at: datetime
    due: int = 0
    claimed: int = 0
    dispatched: int = 0
    failed: int = 0
    timed_out: int = 0
    aborted: bool = False
    error: Optional[str] = None
    results: List[DispatchResult] = field(default_factory=list)

    def outcome_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self.results:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "claimed": self.claimed,
            "dispatched": self.dispatched,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "aborted": self.aborted,
            "error": self.error,
            "outcomes": self.outcome_counts(),
        }


class ExecutionScheduler:
    """Claims due enrollments in batches and dispatches each one in isolation.

    Several schedulers (threads or processes) may sweep the same database; the
    conditional lease claim guarantees each due enrollment is dispatched by
    exactly one of them. A failure while dispatching one enrollment is logged
    and never affects the others in the batch.
    """

    def __init__(
        self,
        enrollment_store: EnrollmentStore,
        engine: ExecutionEngine,
        batch_size: int = 100,
        max_workers: int = 10,
        interval_seconds: float = 60.0,
        worker_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        dispatch_timeout: Optional[float] = None
    ):
        self.enrollment_store = enrollment_store
        self.engine = engine
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.interval_seconds = interval_seconds
        # A sweep stops waiting for dispatches once their leases would have expired
        self.dispatch_timeout = dispatch_timeout if dispatch_timeout is not None else float(
            enrollment_store.lease_seconds
        )
        self.worker_id = worker_id or default_worker_id()
        self.clock = clock or datetime.utcnow

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()
        self.last_sweep: Optional[SweepResult] = None
        self.sweep_count = 0

        logger.info(f"ExecutionScheduler initialized as worker {self.worker_id}")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep cycle.

        Selects up to ``batch_size`` due enrollments, claims each with a lease
        and dispatches the claimed ones concurrently.

        Args:
            now: Reference instant, defaults to the scheduler clock

        Returns:
            SweepResult: Counters for the cycle; ``aborted`` is set when the
            enrollment store could not be queried
        """
        now = now or self.clock()
        result = SweepResult(started_at=now)

        with self._sweep_lock:
            try:
                due_ids = self.enrollment_store.find_due(now=now, limit=self.batch_size)
            except StorageError as e:
                # Leases taken by earlier sweeps expire on their own
                logger.error(f"Sweep aborted, enrollment store unavailable: {e.message}")
                result.aborted = True
                result.error = e.message
                self._finish(result)
                return result

            result.due = len(due_ids)
            futures = {}
            for enrollment_id in due_ids:
                try:
                    enrollment = self.enrollment_store.claim(enrollment_id, self.worker_id, now=now)
                except StorageError as e:
                    logger.warning(f"Failed to claim enrollment {enrollment_id}: {e.message}")
                    result.failed += 1
                    continue

                if enrollment is None:
                    logger.debug(f"Enrollment {enrollment_id} claimed by another worker")
                    continue

                result.claimed += 1
                futures[self._executor.submit(self.engine.dispatch, enrollment, self.worker_id)] = enrollment_id

            pending = set(futures)
            try:
                for future in as_completed(futures, timeout=self.dispatch_timeout):
                    pending.discard(future)
                    enrollment_id = futures[future]
                    try:
                        dispatch_result = future.result()
                        result.results.append(dispatch_result)
                        result.dispatched += 1
                    except Exception as e:
                        # The lease expires and the enrollment is picked up by a later sweep
                        logger.error(f"Dispatch of enrollment {enrollment_id} failed: {str(e)}", exc_info=True)
                        result.failed += 1
            except FutureTimeoutError:
                # Writes of an overrunning dispatch are rejected once its lease is taken over
                stuck = sorted(futures[future] for future in pending)
                logger.error(
                    f"Sweep stopped waiting after {self.dispatch_timeout:g}s for {len(stuck)} dispatches: "
                    f"{', '.join(stuck)}"
                )
                result.failed += len(stuck)
                result.timed_out = len(stuck)

        self._finish(result)
        return result

    def start(self):
        """Start the background sweep loop."""
        if self.is_running:
            raise SchedulerError("Scheduler is already running", worker_id=self.worker_id)

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="execution-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started, sweeping every {self.interval_seconds}s")

    def stop(self, timeout: Optional[float] = 30.0):
        """Stop the sweep loop, letting the current sweep finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop within the timeout")
            self._thread = None
        logger.info("Scheduler stopped")

    def shutdown(self):
        self.stop()
        self._executor.shutdown(wait=True)

    def health(self) -> dict:
        """Scheduler state for the detailed health check."""
        return {
            "worker_id": self.worker_id,
            "running": self.is_running,
            "sweeps": self.sweep_count,
            "last_sweep": self.last_sweep.to_dict() if self.last_sweep else None,
        }

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception as e:
                logger.error(f"Unexpected error in sweep loop: {str(e)}", exc_info=True)
            self._stop_event.wait(self.interval_seconds)

    def _finish(self, result: SweepResult):
        self.last_sweep = result
        self.sweep_count += 1
        if result.claimed or result.failed:
            outcomes = ", ".join(f"{outcome}={count}" for outcome, count in result.outcome_counts().items())
            logger.info(
                f"Sweep finished: due={result.due} claimed={result.claimed} "
                f"dispatched={result.dispatched} failed={result.failed}" + (f" ({outcomes})" if outcomes else "")
            )

