import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from provisioner.metrics import metrics
from provisioner.retry import NoRetryStrategy, RetryStrategy, run_with_retry


logger = logging.getLogger(__name__)


class BackgroundTaskQueue:
    """Best-effort work that callers schedule and never wait for.

    The most recent submissions are kept by name so callers and tests can see
    what was queued without depending on when, or whether, the work completed.
    """

    def __init__(
        self,
        max_workers: int = 4,
        strategy: RetryStrategy | None = None,
        name: str = "cleanup",
        history_size: int = 256,
    ):
        self.strategy = strategy or NoRetryStrategy()
        self.name = name
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{name}-task"
        )
        self._lock = threading.Lock()
        self._history: deque[str] = deque(maxlen=history_size)

    @property
    def submitted(self) -> list[str]:
        with self._lock:
            return list(self._history)

    def submit(self, task_name: str, fn: Callable[[], object]) -> Future:
        with self._lock:
            self._history.append(task_name)
        logger.debug("queued %s task %s", self.name, task_name)
        return self._executor.submit(self._run, task_name, fn)

    def _run(self, task_name: str, fn: Callable[[], object]) -> None:
        try:
            run_with_retry(fn, self.strategy, describe=task_name)
        except Exception:  # noqa: BLE001
            metrics.inc(f"{self.name}_tasks_failed_total")
            logger.exception("%s task %s failed", self.name, task_name)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
