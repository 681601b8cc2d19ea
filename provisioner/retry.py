import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from provisioner.errors import OperationCancelled


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryStrategy:
    """Upper bound on attempts plus the wait before the next one.

    Strategies hold no per-call state and can be shared between threads.
    """

    max_attempts: int

    def wait_interval(self, attempt: int) -> float:
        return 0.0

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


@dataclass(frozen=True)
class FixedRetryStrategy(RetryStrategy):
    delay_sec: float = 0.0

    def wait_interval(self, attempt: int) -> float:
        return self.delay_sec


@dataclass(frozen=True)
class ExponentialRetryStrategy(RetryStrategy):
    max_wait_sec: float = 2.0
    base_sec: float = 0.5

    def wait_interval(self, attempt: int) -> float:
        return min(self.base_sec * (2 ** (attempt - 1)), self.max_wait_sec)


@dataclass(frozen=True)
class NoRetryStrategy(RetryStrategy):
    max_attempts: int = 1


def run_with_retry(
    operation: Callable[[], T],
    strategy: RetryStrategy,
    *,
    cancel: threading.Event | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    describe: str = "operation",
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``strategy`` gives up.

    The last error is re-raised unchanged once attempts are exhausted. Errors
    outside ``retry_on`` propagate on the first attempt. ``cancel`` is checked
    before every attempt and interrupts the backoff wait.
    """
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{describe} cancelled before attempt {attempt + 1}")
        attempt += 1
        try:
            return operation()
        except retry_on as exc:
            if not strategy.can_retry(attempt):
                logger.warning(
                    "%s failed attempt=%s/%s giving up: %s",
                    describe,
                    attempt,
                    strategy.max_attempts,
                    exc,
                )
                raise
            delay = strategy.wait_interval(attempt)
            logger.info(
                "%s failed attempt=%s/%s retrying in %ss: %s",
                describe,
                attempt,
                strategy.max_attempts,
                delay,
                exc,
            )
            _wait(delay, cancel, sleep)


def _wait(
    delay: float,
    cancel: threading.Event | None,
    sleep: Callable[[float], None] | None,
) -> None:
    if delay <= 0:
        return
    if sleep is not None:
        sleep(delay)
    elif cancel is not None:
        cancel.wait(delay)
    else:
        time.sleep(delay)
