"""Background worker pool driving chain executions."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ExecutionRunner:
    """Runs `engine.run(execution_id)` on a bounded thread pool.

    Submitting an execution that is already being driven is harmless: the
    engine serialises `advance` per execution and a paused or finished run
    returns immediately.
    """

    def __init__(self, run: Callable[[str], object], *, workers: int = 4) -> None:
        self._run = run
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="chain-runner"
        )
        self._futures: set[concurrent.futures.Future[None]] = set()
        self._lock = threading.Lock()

    def submit(self, execution_id: str) -> concurrent.futures.Future[None]:
        future = self._pool.submit(self._run_job, execution_id)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        logger.debug("Execution submitted", extra={"execution_id": execution_id})
        return future

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every submitted run. Returns False on timeout."""

        with self._lock:
            pending = set(self._futures)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)

    def _forget(self, future: concurrent.futures.Future[None]) -> None:
        with self._lock:
            self._futures.discard(future)

    def _run_job(self, execution_id: str) -> None:
        try:
            self._run(execution_id)
        except Exception:
            logger.exception("Execution run failed", extra={"execution_id": execution_id})
