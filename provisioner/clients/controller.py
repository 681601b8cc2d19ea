import logging
import threading

import httpx

from provisioner.clients.http import request_with_retry
from provisioner.retry import RetryStrategy


logger = logging.getLogger(__name__)


class ControllerClient:
    """Talks to the job controller that hands out the worker agent."""

    def __init__(
        self,
        base_url: str,
        strategy: RetryStrategy,
        user: str | None = None,
        api_token: str | None = None,
        agent_payload_path: str = "/jnlpJars/agent.jar",
    ):
        self.base_url = base_url.rstrip("/")
        self.strategy = strategy
        self.agent_payload_path = agent_payload_path
        auth = (user, api_token) if user and api_token else None
        self.client = httpx.Client(auth=auth, timeout=30.0, follow_redirects=True)
        self._payload: bytes | None = None
        self._lock = threading.Lock()

    def agent_payload(self) -> bytes:
        with self._lock:
            if self._payload is None:
                url = f"{self.base_url}{self.agent_payload_path}"
                response = request_with_retry(self.client, "GET", url, self.strategy)
                self._payload = response.content
                logger.info(
                    "fetched agent payload url=%s bytes=%s", url, len(self._payload)
                )
            return self._payload

    def close(self) -> None:
        self.client.close()
