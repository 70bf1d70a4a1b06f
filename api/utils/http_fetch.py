import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from api.utils.exceptions import SourceUnavailable

logger = logging.getLogger(__name__)


def backoff_seconds(attempt: int) -> int:
    """
    Wait after failed attempt number `attempt` (1-based):
    2s steps for the first two attempts, 5s steps afterwards.
    """
    return attempt * 2 if attempt <= 2 else attempt * 5


class RetryingFetcher:
    """
    GET with bounded retries against one upstream.

    Any timeout, transport error or non-2xx status counts as a failed
    attempt. When attempts run out a `SourceUnavailable` carrying the
    upstream host is raised; nothing else escapes.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.sleep = sleep

    async def fetch(self, url: str, timeout: float, max_attempts: int) -> httpx.Response:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        host = httpx.URL(url).host or url
        last_error = ""

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self.client.get(url, timeout=timeout)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as e:
                last_error = f"HTTP {e.response.status_code}"
            except httpx.TimeoutException:
                last_error = f"timed out after {timeout}s"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"

            logger.debug("GET %s attempt %d/%d failed: %s", host, attempt, max_attempts, last_error)

            if attempt < max_attempts:
                await self.sleep(backoff_seconds(attempt))

        raise SourceUnavailable(host, f"{last_error} (after {max_attempts} attempts)")
