"""
HTTP helpers shared by the embedding provider and the sync peer.

Requests are JSON over aiohttp, retried with exponential backoff on
timeouts, connection errors, 429 and 5xx responses. Other 4xx responses
fail immediately.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp
from loguru import logger


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry behavior for outbound requests.

    Uses exponential backoff: delay = base_delay * (2 ^ (attempt - 1))

    Attributes:
        max_attempts: Maximum attempts (including the first)
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound for any single delay
        timeout_seconds: Per-request timeout
    """
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    timeout_seconds: float = 30.0

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1 = first retry)."""
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


def _retryable(status: int) -> bool:
    return status == 429 or status >= 500


async def request_json(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    retry: RetryConfig,
    make_error: Callable[[str, Dict[str, Any]], Exception],
    *,
    json_body: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """
    Send a request and decode the JSON response.

    ``make_error(reason, context)`` builds the exception raised once the
    request fails permanently or retries are exhausted.
    """
    last_reason = "no attempt made"
    attempts = max(1, retry.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            async with session.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=retry.timeout_seconds),
            ) as response:
                if 200 <= response.status < 300:
                    return await response.json(content_type=None)

                body = await response.text()
                last_reason = f"HTTP {response.status}: {body[:200]}"
                if not _retryable(response.status):
                    raise make_error(last_reason, {"status": response.status, "url": url})
        except asyncio.TimeoutError:
            last_reason = f"timeout after {retry.timeout_seconds}s"
        except aiohttp.ClientError as e:
            last_reason = f"HTTP error: {e}"

        if attempt < attempts:
            delay = retry.get_delay(attempt)
            logger.warning(f"{method} {url} failed ({last_reason}); retry {attempt}/{attempts - 1} in {delay:.1f}s")
            await asyncio.sleep(delay)

    raise make_error(last_reason, {"url": url, "attempts": attempts})
