"""Retrying async HTTP transport shared by every platform adapter."""

from __future__ import annotations

import asyncio
import logging
import random
import tempfile
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from ci_leak_scanner.errors import (
    AccessDenied,
    Cancelled,
    NetworkError,
    NotFound,
    OversizedAfterDownload,
    StatusError,
    Throttled,
    Unauthenticated,
)
from ci_leak_scanner.models import RateLimitState

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}
DEFAULT_MAX_RETRIES = 4
DEFAULT_BACKOFF_SECONDS = 0.5
MAX_RETRY_AFTER_SECONDS = 300.0
DOWNLOAD_CHUNK_SIZE = 64 * 1024
# Downloads up to this size stay in memory, larger ones spill to a temp file.
SPOOL_MAX_MEMORY = 8 * 1024 * 1024


class HTTPTransport:
    """Async context manager wrapping httpx.AsyncClient with retries and error mapping.

    408, 429, 5xx and connection errors are retried with jittered exponential backoff.
    A ``Retry-After`` header on 429/503 is honored before the next attempt. Terminal
    statuses are raised as the matching :mod:`ci_leak_scanner.errors` kind.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        proxy: str | None = None,
        ignore_proxy: bool = False,
        timeout: float = 30.0,
        call_timeout: float | None = 300.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        cancel_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.cookies = dict(cookies or {})
        self.auth = auth
        self.proxy = proxy
        self.ignore_proxy = ignore_proxy
        self.timeout = timeout
        self.call_timeout = call_timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.cancel_event = cancel_event
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._rate_limit = RateLimitState()

    async def __aenter__(self) -> HTTPTransport:
        self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def open(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            cookies=self.cookies,
            auth=self.auth,
            proxy=self.proxy,
            trust_env=not self.ignore_proxy,
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTPTransport must be opened (use it as async context manager)")
        return self._client

    def rate_limit_state(self) -> RateLimitState:
        return self._rate_limit.model_copy()

    # --- requests ---

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with retries and return the successful response."""
        if self.call_timeout:
            try:
                return await asyncio.wait_for(self._request(method, url, **kwargs), timeout=self.call_timeout)
            except asyncio.TimeoutError as exc:
                raise NetworkError(f"{method} {url} exceeded {self.call_timeout}s") from exc
        return await self._request(method, url, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        resp = await self.request("GET", url, **kwargs)
        return resp.json()

    async def post_json(self, url: str, payload: dict, **kwargs: Any) -> Any:
        resp = await self.request("POST", url, json=payload, **kwargs)
        return resp.json()

    async def get_bytes(self, url: str, **kwargs: Any) -> bytes:
        resp = await self.request("GET", url, **kwargs)
        return resp.content

    async def download(self, url: str, max_bytes: int = 0, headers: dict[str, str] | None = None):
        """Stream ``url`` into a spooled temp file, stopping once ``max_bytes`` is crossed.

        Returns the file positioned at offset 0; the caller closes it.

        Raises:
            OversizedAfterDownload: more than ``max_bytes`` bytes were received.
        """
        for attempt in range(self.max_retries + 1):
            self._check_cancelled()
            spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
            try:
                async with self.client.stream("GET", url, headers=headers) as resp:
                    self._record_rate_limit(resp)
                    if resp.status_code in RETRYABLE_STATUS and attempt < self.max_retries:
                        await self._backoff(attempt, resp)
                        spool.close()
                        continue
                    self._raise_for_status(resp)

                    received = 0
                    async for chunk in resp.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        received += len(chunk)
                        if max_bytes > 0 and received > max_bytes:
                            raise OversizedAfterDownload(
                                f"download of {url} exceeded {max_bytes} bytes"
                            )
                        spool.write(chunk)
            except httpx.TransportError as exc:
                spool.close()
                if attempt >= self.max_retries:
                    raise NetworkError(f"GET {url}: {exc}") from exc
                logger.debug("Download of %s failed (%s), retrying", url, exc)
                await self._backoff(attempt)
                continue
            except httpx.HTTPError as exc:
                spool.close()
                raise NetworkError(f"GET {url}: {exc}") from exc
            except BaseException:
                spool.close()
                raise

            spool.seek(0)
            return spool

        raise NetworkError(f"GET {url}: retries exhausted")

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        last_status: int | None = None
        for attempt in range(self.max_retries + 1):
            self._check_cancelled()
            try:
                resp = await self.client.request(method, url, **kwargs)
            except httpx.ProxyError as exc:
                logger.warning("Proxy unreachable for %s %s: %s", method, url, exc)
                if attempt >= self.max_retries:
                    raise NetworkError(f"{method} {url}: {exc}") from exc
                await self._backoff(attempt)
                continue
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise NetworkError(f"{method} {url}: {exc}") from exc
                logger.debug("%s %s failed (%s), retrying", method, url, exc)
                await self._backoff(attempt)
                continue
            except httpx.HTTPError as exc:
                # Decoding errors and redirect loops do not improve on retry.
                raise NetworkError(f"{method} {url}: {exc}") from exc

            self._record_rate_limit(resp)
            status = resp.status_code
            if _is_rate_limited(resp):
                status = 429

            if status in RETRYABLE_STATUS:
                last_status = status
                if attempt < self.max_retries:
                    logger.debug("%s %s returned %d, retrying (attempt %d/%d)",
                                 method, url, resp.status_code, attempt + 1, self.max_retries)
                    await self._backoff(attempt, resp)
                    continue
                if status == 429:
                    self._rate_limit.throttled = True
                raise Throttled(f"{method} {url} still failing with HTTP {resp.status_code} after {self.max_retries} retries")

            if self._rate_limit.throttled and last_status == 429:
                logger.info("Rate limit recovered for %s", url)
            self._rate_limit.throttled = False
            self._raise_for_status(resp)
            return resp

        raise Throttled(f"{method} {url}: retries exhausted")

    # --- helpers ---

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled("scan cancelled")

    async def _backoff(self, attempt: int, resp: httpx.Response | None = None) -> None:
        delay = self.backoff_seconds * (2 ** attempt)
        delay *= 1 + random.random() * 0.25
        if resp is not None:
            if resp.status_code == 429 or _is_rate_limited(resp):
                self._rate_limit.throttled = True
            retry_after = _parse_retry_after(resp.headers.get("retry-after"))
            if retry_after is not None:
                delay = min(retry_after, MAX_RETRY_AFTER_SECONDS)

        if self.cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled("scan cancelled during backoff")

    def _record_rate_limit(self, resp: httpx.Response) -> None:
        headers = resp.headers
        remaining = headers.get("x-ratelimit-remaining") or headers.get("ratelimit-remaining")
        limit = headers.get("x-ratelimit-limit") or headers.get("ratelimit-limit")
        reset = headers.get("x-ratelimit-reset") or headers.get("ratelimit-reset")
        if remaining is not None and remaining.isdigit():
            self._rate_limit.remaining = int(remaining)
        if limit is not None and limit.isdigit():
            self._rate_limit.limit = int(limit)
        if reset is not None and reset.isdigit():
            self._rate_limit.reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        url = str(resp.request.url)
        if status == 401:
            raise Unauthenticated(f"HTTP 401 for {url}")
        if status == 403:
            raise AccessDenied(f"HTTP 403 for {url}")
        if status == 404:
            raise NotFound(f"HTTP 404 for {url}")
        raise StatusError(status, url)


def _is_rate_limited(resp: httpx.Response) -> bool:
    """GitHub signals primary rate limits with 403 and an exhausted remaining counter."""
    return resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
