"""HTTP helpers shared by the source adapters and remote enrichers.

All network I/O for fetching upstream feeds goes through ``fetch`` so
retry and error translation live in one place.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import __version__
from .exceptions import FetchError

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=300, connect=15)
USER_AGENT = f"vulnenrich/{__version__}"


class _Retryable(Exception):
    """Transport failure or 5xx worth another attempt."""


@dataclass
class HTTPResponse:
    """A fully-read HTTP response.

    Attributes:
        status: HTTP status code (200 or 304).
        body: Response body (empty for 304).
        headers: Response headers.
    """

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def not_modified(self) -> bool:
        return self.status == 304


def auth_headers() -> dict[str, str]:
    """Build default request headers.

    Picks up ``NVD_API_KEY`` from the environment when set.
    """
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }
    key = os.environ.get("NVD_API_KEY")
    if key:
        headers["apiKey"] = key
    return headers


def client_session(headers: Mapping[str, str] | None = None) -> aiohttp.ClientSession:
    """Create an ``aiohttp`` session with default headers and timeout."""
    merged = auth_headers()
    if headers:
        merged.update(headers)
    return aiohttp.ClientSession(headers=merged, timeout=DEFAULT_TIMEOUT)


@asynccontextmanager
async def session_scope(session: aiohttp.ClientSession | None = None) -> AsyncIterator[aiohttp.ClientSession]:
    """Yield ``session`` if given, else a temporary session closed on exit."""
    if session is not None:
        yield session
        return
    async with client_session() as owned:
        yield owned


async def _fetch_once(session: aiohttp.ClientSession, url: str, headers: Mapping[str, str] | None) -> HTTPResponse:
    try:
        async with session.get(url, headers=dict(headers or {})) as resp:
            if resp.status == 304:
                return HTTPResponse(status=304, headers=dict(resp.headers))
            if resp.status >= 500:
                raise _Retryable(f"{url}: HTTP {resp.status}")
            resp.raise_for_status()
            body = await resp.read()
            return HTTPResponse(status=resp.status, body=body, headers=dict(resp.headers))
    except aiohttp.ClientResponseError as exc:
        raise FetchError(f"{url}: HTTP {exc.status} {exc.message}") from exc
    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as exc:
        raise _Retryable(f"{url}: {exc}") from exc


async def fetch(
    session: aiohttp.ClientSession,
    url: str,
    headers: Mapping[str, str] | None = None,
    attempts: int = 3,
) -> HTTPResponse:
    """GET ``url`` with retry on transport errors and 5xx responses.

    Args:
        session: ``aiohttp`` client session.
        url: URL to fetch.
        headers: Extra request headers (e.g. ``If-None-Match``).
        attempts: Total attempts before giving up.

    Returns:
        ``HTTPResponse`` with status 200-class or 304.

    Raises:
        FetchError: On a 4xx response or after the last failed attempt.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            retry=retry_if_exception_type(_Retryable),
            reraise=True,
        ):
            with attempt:
                return await _fetch_once(session, url, headers)
    except _Retryable as exc:
        raise FetchError(f"giving up after {attempts} attempts: {exc}") from exc
    raise FetchError(f"{url}: no attempt made")


async def post_json(session: aiohttp.ClientSession, url: str, payload: Any, headers: Mapping[str, str] | None = None) -> bytes:
    """POST ``payload`` as JSON and return the raw response body.

    Raises:
        aiohttp.ClientError: On transport failure or a non-2xx status.
    """
    async with session.post(url, json=payload, headers=dict(headers or {})) as resp:
        resp.raise_for_status()
        return await resp.read()
