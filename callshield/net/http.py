"""
Async HTTP utilities (httpx) with retries and exponential backoff.

All network calls in callshield are async and cancellable so that the screening
deadline can abandon them at any point.
"""

from __future__ import annotations

import asyncio
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, cast

import httpx

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


@dataclass(frozen=True, slots=True)
class HttpClientConfig:
    timeout_seconds: float = 10.0
    max_retries: int = 2
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    user_agent: str = "callshield/0.1"


@asynccontextmanager
async def build_async_client(
    config: HttpClientConfig, *, base_url: str = ""
) -> AsyncIterator[httpx.AsyncClient]:
    timeout = httpx.Timeout(config.timeout_seconds)
    headers = {"User-Agent": config.user_agent}
    async with httpx.AsyncClient(
        base_url=base_url, timeout=timeout, headers=headers, follow_redirects=True
    ) as client:
        yield client


def compute_backoff(attempt: int, *, base: float, cap: float) -> float:
    # Full jitter around exponential backoff.
    raw = min(cap, base * (2**attempt))
    return float(raw * random.uniform(0.8, 1.2))


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    config: HttpClientConfig,
    max_retries: int | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make an HTTP request with retries and backoff.

    Retries on:
    - network/transport errors
    - HTTP 429 and 5xx responses

    `max_retries` overrides the config value (screening-time lookups pass 0).
    """

    retries = config.max_retries if max_retries is None else max_retries
    if retries < 0:
        raise ValueError("max_retries must be >= 0")

    last_exc: Exception | None = None

    for attempt in range(retries + 1):
        try:
            resp = await client.request(method, url, **kwargs)
        except asyncio.CancelledError:
            raise
        except httpx.TransportError as exc:
            last_exc = exc
            if attempt >= retries:
                raise
            await asyncio.sleep(
                compute_backoff(
                    attempt, base=config.backoff_base_seconds, cap=config.backoff_max_seconds
                )
            )
            continue

        if resp.status_code in RETRYABLE_STATUS:
            if attempt >= retries:
                resp.raise_for_status()
                return resp

            retry_after = resp.headers.get("Retry-After")
            if retry_after is not None:
                try:
                    sleep_for = float(retry_after)
                except ValueError:
                    sleep_for = compute_backoff(
                        attempt, base=config.backoff_base_seconds, cap=config.backoff_max_seconds
                    )
            else:
                sleep_for = compute_backoff(
                    attempt, base=config.backoff_base_seconds, cap=config.backoff_max_seconds
                )

            # Drain the body so the connection can be reused.
            await resp.aread()
            await asyncio.sleep(min(sleep_for, config.backoff_max_seconds))
            continue

        resp.raise_for_status()
        return resp

    # Should be unreachable.
    if last_exc is not None:
        raise last_exc
    raise RuntimeError("request_with_retries: exhausted attempts without a response")


def json_object(resp: httpx.Response) -> dict[str, Any]:
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object at the top level")
    return cast(dict[str, Any], data)
