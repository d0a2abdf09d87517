"""
Task queue backends for pipeline stage tasks.

The pipeline only needs ``enqueue(task_type, payload)`` with at-least-once
delivery. Handlers are idempotent, so a backend may redeliver freely.
"""
import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from app.utils.locks import JobLockManager

logger = logging.getLogger(__name__)

Dispatcher = Callable[[str, Dict[str, Any]], Any]


class TaskQueue:
    def __init__(self, dispatcher: Optional[Dispatcher] = None):
        self._dispatcher = dispatcher

    def bind(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher

    def enqueue(self, task_type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _run_task(self, task_type: str, payload: Dict[str, Any]) -> Any:
        if self._dispatcher is None:
            raise RuntimeError("Task queue has no dispatcher bound")
        try:
            return self._dispatcher(task_type, payload)
        except Exception:
            # Handlers record their own failures; this only catches bugs in dispatch itself
            logger.exception("Task %s failed with payload %s", task_type, payload)
            return None


class InlineTaskQueue(TaskQueue):
    """FIFO queue drained synchronously by ``run_until_empty`` (tests, CLI, dev)."""

    def __init__(self, dispatcher: Optional[Dispatcher] = None):
        super().__init__(dispatcher)
        self._pending: Deque[Tuple[str, Dict[str, Any]]] = deque()
        self.history: List[Tuple[str, Dict[str, Any]]] = []

    def enqueue(self, task_type: str, payload: Dict[str, Any]) -> None:
        logger.debug("Queued %s %s", task_type, payload)
        self._pending.append((task_type, dict(payload)))
        self.history.append((task_type, dict(payload)))

    @property
    def pending(self) -> List[Tuple[str, Dict[str, Any]]]:
        return list(self._pending)

    def run_next(self) -> Optional[Any]:
        if not self._pending:
            return None
        task_type, payload = self._pending.popleft()
        return self._run_task(task_type, payload)

    def run_until_empty(self, max_tasks: int = 1_000_000) -> int:
        """Run queued tasks (including ones they enqueue) until none remain."""
        executed = 0
        while self._pending and executed < max_tasks:
            self.run_next()
            executed += 1
        if self._pending:
            logger.warning("Stopped after %d tasks with %d still pending", executed, len(self._pending))
        return executed


class ThreadPoolTaskQueue(TaskQueue):
    """Runs tasks on a worker pool, serialized per import job."""

    def __init__(self, dispatcher: Optional[Dispatcher] = None, max_workers: int = 4):
        super().__init__(dispatcher)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="import-task")

    def enqueue(self, task_type: str, payload: Dict[str, Any]) -> None:
        self._executor.submit(self._run_locked, task_type, dict(payload))

    def _run_locked(self, task_type: str, payload: Dict[str, Any]) -> Any:
        key = payload.get("import_job_id") or payload.get("import_file_id") or task_type
        with JobLockManager.acquire(str(key)):
            return self._run_task(task_type, payload)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
