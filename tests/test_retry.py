import threading

import httpx
import pytest

from provisioner.clients.controller import ControllerClient
from provisioner.clients.http import RequestFailure, request_with_retry, retry_strategy
from provisioner.errors import OperationCancelled
from provisioner.retry import (
    ExponentialRetryStrategy,
    FixedRetryStrategy,
    NoRetryStrategy,
    run_with_retry,
)
from tests.fakes import instant, no_sleep


class Flaky:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls}")
        return "ok"


def test_run_with_retry_succeeds_within_ceiling():
    operation = Flaky(failures=3)
    assert run_with_retry(operation, instant(5), sleep=no_sleep) == "ok"
    assert operation.calls == 4


def test_run_with_retry_raises_last_error():
    operation = Flaky(failures=3)
    with pytest.raises(RuntimeError, match="attempt 2"):
        run_with_retry(operation, instant(2), sleep=no_sleep)
    assert operation.calls == 2


def test_unlisted_errors_are_not_retried():
    calls = []

    def operation():
        calls.append(1)
        raise KeyError("nope")

    with pytest.raises(KeyError):
        run_with_retry(operation, instant(5), retry_on=(RuntimeError,), sleep=no_sleep)
    assert len(calls) == 1


def test_cancel_stops_before_next_attempt():
    cancel = threading.Event()
    calls = []

    def operation():
        calls.append(1)
        cancel.set()
        raise RuntimeError("down")

    with pytest.raises(OperationCancelled):
        run_with_retry(operation, instant(5), cancel=cancel, sleep=no_sleep)
    assert len(calls) == 1


def test_waits_between_attempts():
    waits = []
    operation = Flaky(failures=2)
    run_with_retry(
        operation, FixedRetryStrategy(max_attempts=3, delay_sec=30), sleep=waits.append
    )
    assert waits == [30, 30]


def test_exponential_intervals_are_capped():
    strategy = ExponentialRetryStrategy(max_attempts=5, max_wait_sec=2, base_sec=0.5)
    assert [strategy.wait_interval(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 2.0]
    assert not strategy.can_retry(5)


def test_no_retry_strategy_runs_once():
    operation = Flaky(failures=1)
    with pytest.raises(RuntimeError):
        run_with_retry(operation, NoRetryStrategy())
    assert operation.calls == 1


def test_request_with_retry_raises_after_attempts():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status_code=500, request=request)
    )
    client = httpx.Client(transport=transport)
    with pytest.raises(RequestFailure) as excinfo:
        request_with_retry(client, "GET", "http://example.test", retry_strategy(2, 0))
    assert excinfo.value.attempts == 2
    assert excinfo.value.status_code == 500


def test_request_with_retry_succeeds():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=200, json={"ok": True}, request=request
        )
    )
    client = httpx.Client(transport=transport)
    response = request_with_retry(
        client, "GET", "http://example.test", retry_strategy(2, 0)
    )
    assert response.json() == {"ok": True}


def test_agent_payload_is_fetched_once():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(status_code=200, content=b"agent-bytes", request=request)

    controller = ControllerClient("http://controller.test/", retry_strategy(2, 0))
    controller.client = httpx.Client(transport=httpx.MockTransport(handler))
    assert controller.agent_payload() == b"agent-bytes"
    assert controller.agent_payload() == b"agent-bytes"
    assert seen == ["http://controller.test/jnlpJars/agent.jar"]
    controller.close()
