"""httpx transport that backs off on HTTP 429 from CT logs."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 5.0
MAX_LEARNED_DELAY = 10.0


@dataclass
class HostWindow:
    """Request accounting for one log host since the last 429."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    window_start: Optional[float] = None
    requests: int = 0
    learned_rate: Optional[float] = None

    def record_request(self) -> None:
        if self.window_start is None:
            self.window_start = time.monotonic()
        self.requests += 1

    def learn_delay(self) -> float:
        """Derive a retry delay from the request rate that triggered a 429."""
        delay = DEFAULT_RETRY_AFTER
        if self.window_start is not None and self.requests > 1:
            elapsed = time.monotonic() - self.window_start
            if elapsed > 0:
                self.learned_rate = (self.requests - 1) / elapsed
                delay = min(1.0 / self.learned_rate, MAX_LEARNED_DELAY)
        self.window_start = None
        self.requests = 0
        return delay


class RateLimitedTransport(httpx.AsyncHTTPTransport):
    """
    Async transport that learns a per-host request rate from 429 responses
    and waits before retrying, up to `max_attempts` tries per request.

    The last 429 response is returned to the caller once the attempts are
    exhausted, so `raise_for_status()` surfaces it as a fatal error.
    """

    def __init__(
        self,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        max_attempts: int = 10,
        **kwargs,
    ):
        super().__init__(
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
            **kwargs,
        )
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self._hosts: Dict[str, HostWindow] = {}

    def _window(self, host: str) -> HostWindow:
        if host not in self._hosts:
            self._hosts[host] = HostWindow()
        return self._hosts[host]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        window = self._window(host)

        for attempt in range(1, self.max_attempts + 1):
            async with window.lock:
                window.record_request()

            response = await super().handle_async_request(request)
            if response.status_code != 429 or attempt == self.max_attempts:
                return response

            async with window.lock:
                learned = window.learn_delay()
            wait_time = _retry_after(response, learned)
            await response.aclose()

            logger.info(
                f"[{host}] Rate limited (429) on {request.url.path}, "
                f"attempt {attempt}/{self.max_attempts}, retrying after {wait_time:.2f}s"
            )
            await asyncio.sleep(wait_time)

        raise RuntimeError("unreachable")  # pragma: no cover


def _retry_after(response: httpx.Response, default: float) -> float:
    value = response.headers.get("Retry-After")
    if value is None:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        return default
