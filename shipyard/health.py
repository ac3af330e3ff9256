"""Health-check polling for a freshly deployed container.

Each attempt requests the configured paths in order (``/`` then ``/health`` by
default).  Any status below 400 counts as healthy, matching ``curl -f``.
Attempts are spaced by a :class:`~shipyard.config.BackoffPolicy` and the poll
never starts a new attempt past the policy's wall-clock budget.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence

import httpx
from pydantic import BaseModel, Field

from shipyard.config import BackoffPolicy


class HealthResult(BaseModel):
    """Outcome of a health poll."""

    healthy: bool = Field(default=False)
    attempts: int = Field(default=0, ge=0)
    url: str = Field(default="", description="URL that answered, or the last one requested")
    status_code: int | None = Field(default=None)
    elapsed_seconds: float = Field(default=0.0, ge=0.0)
    last_error: str | None = Field(default=None)


class HealthPoller:
    """Bounded poller against an HTTP service."""

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        paths: Sequence[str] = ("/", "/health"),
        request_timeout: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self.paths = list(paths) or ["/"]
        self.request_timeout = request_timeout
        self._sleep = sleep

    def _url(self, base_url: str, path: str) -> str:
        return base_url.rstrip("/") + "/" + path.lstrip("/")

    async def _request(self, client: httpx.AsyncClient, url: str) -> tuple[int | None, str | None]:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            return None, f"{type(exc).__name__}: {exc}"
        if response.status_code < 400:
            return response.status_code, None
        return response.status_code, f"HTTP {response.status_code}"

    async def poll(self, base_url: str) -> HealthResult:
        """Poll *base_url* until a path answers or the policy is exhausted."""
        start = time.monotonic()
        # Sleeping budget plus one request timeout per path for the final attempt.
        deadline = start + self.policy.max_elapsed() + self.request_timeout * len(self.paths)
        delays = self.policy.delays()
        result = HealthResult(url=self._url(base_url, self.paths[0]))

        timeout = httpx.Timeout(self.request_timeout, connect=min(3.0, self.request_timeout))
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
            while result.attempts < self.policy.attempts:
                result.attempts += 1
                for path in self.paths:
                    url = self._url(base_url, path)
                    status, error = await self._request(client, url)
                    result.url = url
                    result.status_code = status
                    if error is None:
                        result.healthy = True
                        result.last_error = None
                        result.elapsed_seconds = time.monotonic() - start
                        return result
                    result.last_error = error

                delay = next(delays, None)
                if delay is None or time.monotonic() + delay > deadline:
                    break
                await self._sleep(delay)

        result.elapsed_seconds = time.monotonic() - start
        return result
