from typing import Any

import httpx

from provisioner.retry import FixedRetryStrategy, RetryStrategy, run_with_retry


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        super().__init__(
            f"{method} {url} failed after {attempts} attempts ({error_type}: {detail})"
        )


def retry_strategy(attempts: int, sleep_sec: float) -> RetryStrategy:
    return FixedRetryStrategy(max_attempts=attempts, delay_sec=sleep_sec)


def _describe(exc: Exception) -> tuple[str, int | None]:
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        body = (exc.response.text or "").strip()
        return (f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"), status_code
    return str(exc), None


def request_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    strategy: RetryStrategy,
    **kwargs: Any,
) -> httpx.Response:
    attempts = 0

    def attempt() -> httpx.Response:
        nonlocal attempts
        attempts += 1
        response = client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    try:
        return run_with_retry(
            attempt,
            strategy,
            retry_on=(httpx.HTTPError,),
            describe=f"{method} {url}",
        )
    except httpx.HTTPError as exc:
        detail, status_code = _describe(exc)
        raise RequestFailure(
            method=method,
            url=url,
            attempts=attempts,
            error_type=exc.__class__.__name__,
            detail=detail,
            status_code=status_code,
        ) from exc
