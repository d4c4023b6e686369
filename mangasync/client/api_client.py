"""
Provider HTTP Client - Rate-Limited Async Client

Features:
- Async HTTP with connection pooling
- Concurrent request handling with an owned semaphore
- Token-bucket rate limiting
- Exponential backoff retry honouring Retry-After
- GraphQL request/response handling
- Prometheus metrics
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from mangasync.client.ratelimit import Clock, Sleep, TokenBucket, interruptible_sleep
from mangasync.client.retry import RetryPolicy, is_retryable_status, parse_retry_after
from mangasync.config import settings
from mangasync.errors import (
    Cancelled,
    PermanentAPIError,
    RateLimitedError,
    TransientNetworkError,
)
from mangasync.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class ClientStats:
    """Statistics for one client session."""

    http_requests: int = 0
    retries: int = 0
    errors: int = 0
    http_time: float = 0.0
    start_time: float = field(default_factory=time.time)

    def __str__(self) -> str:
        elapsed = time.time() - self.start_time
        return (
            f"HTTP Requests: {self.http_requests} | "
            f"Retries: {self.retries} | "
            f"Errors: {self.errors} | "
            f"HTTP Time: {self.http_time:.1f}s | "
            f"Total: {elapsed:.1f}s"
        )


class ApiClient:
    """
    Rate-limited, retrying async HTTP client for a catalog provider.

    Every attempt first takes a token from the bucket; transient failures
    (429, 5xx, connection errors) are retried with exponential backoff.
    Well-formed error responses fail immediately with PermanentAPIError.

    Usage:
        async with ApiClient("https://api.mangadex.org", "mangadex") as client:
            data = await client.request("GET", "/manga", params={"limit": 10})
    """

    def __init__(
        self,
        base_url: str,
        source_name: str,
        rate: float | None = None,
        burst: int | None = None,
        max_concurrent: int | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        headers: dict[str, str] | None = None,
        stop_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.base_url = base_url
        self.source_name = source_name
        self.max_concurrent = (
            max_concurrent if max_concurrent is not None else settings.max_concurrent_requests
        )
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.stop_event = stop_event
        self.limiter = TokenBucket(
            rate=rate if rate is not None else settings.requests_per_second,
            burst=burst if burst is not None else settings.burst_size,
            clock=clock,
            sleep=sleep,
        )

        self._headers = {
            "Accept": "application/json",
            "User-Agent": "mangasync/1.0",
            **(headers or {}),
        }
        self._transport = transport
        self._sleep = sleep

        # Concurrency control
        self._semaphore: asyncio.Semaphore | None = None
        self._client: httpx.AsyncClient | None = None

        self.stats = ClientStats()

    async def __aenter__(self) -> "ApiClient":
        """Async context manager entry."""
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            limits=httpx.Limits(
                max_connections=self.max_concurrent * 2,
                max_keepalive_connections=self.max_concurrent,
            ),
            headers=self._headers,
            transport=self._transport,
            follow_redirects=True,
        )
        self.stats = ClientStats()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Perform a request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Query parameters
            json: JSON body
            timeout: Per-request deadline in seconds (defaults to client timeout)

        Raises:
            Cancelled: The stop event fired before or between attempts
            PermanentAPIError: Non-retryable error response
            TransientNetworkError: Retries exhausted (RateLimitedError for 429)
        """
        if not self._client or not self._semaphore:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        async with self._semaphore:
            return await self._request_with_retry(method, path, params, json, timeout)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Any,
        json: Any,
        timeout: float | None,
    ) -> Any:
        """Issue the request with rate limiting and exponential backoff."""
        last_error: TransientNetworkError | None = None

        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                retry_after = last_error.retry_after if last_error else None
                delay = self.retry_policy.delay_for(attempt - 1, retry_after)
                logger.warning(
                    "[%s] %s (attempt %d/%d), retrying in %.1fs",
                    self.source_name,
                    last_error,
                    attempt,
                    self.retry_policy.max_retries + 1,
                    delay,
                )
                self.stats.retries += 1
                metrics.record_http_retry(self.source_name)
                await interruptible_sleep(delay, self.stop_event, self._sleep)

            if self.stop_event is not None and self.stop_event.is_set():
                raise Cancelled(f"[{self.source_name}] Request cancelled")

            await self.limiter.acquire(self.stop_event)

            try:
                return await self._do_request(method, path, params, json, timeout)
            except TransientNetworkError as e:
                last_error = e

        self.stats.errors += 1
        assert last_error is not None
        logger.error(
            "[%s] Request failed after %d attempts: %s",
            self.source_name,
            self.retry_policy.max_retries + 1,
            last_error,
        )
        raise last_error

    async def _do_request(
        self,
        method: str,
        path: str,
        params: Any,
        json: Any,
        timeout: float | None,
    ) -> Any:
        """Perform one HTTP exchange and classify the outcome."""
        assert self._client is not None

        kwargs: dict[str, Any] = {"params": params, "json": json}
        if timeout is not None:
            kwargs["timeout"] = timeout

        start = time.time()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            metrics.record_http_error(self.source_name, "timeout")
            raise TransientNetworkError(f"Timeout: {e}") from e
        except httpx.TransportError as e:
            metrics.record_http_error(self.source_name, "request_error")
            raise TransientNetworkError(f"Connection error: {e}") from e
        fetch_time = time.time() - start

        self.stats.http_requests += 1
        self.stats.http_time += fetch_time
        metrics.record_http_request(
            source=self.source_name,
            status=response.status_code,
            duration=fetch_time,
        )

        status = response.status_code
        if is_retryable_status(status):
            metrics.record_http_error(self.source_name, f"http_{status}")
            retry_after = parse_retry_after(response)
            if status == 429:
                raise RateLimitedError("HTTP 429: rate limited", retry_after=retry_after)
            raise TransientNetworkError(
                f"HTTP {status}", status_code=status, retry_after=retry_after
            )

        if status >= 400:
            metrics.record_http_error(self.source_name, f"http_{status}")
            raise PermanentAPIError(self._error_messages(response), status_code=status)

        try:
            return response.json()
        except ValueError as e:
            raise PermanentAPIError("Invalid JSON in response body", status_code=status) from e

    @staticmethod
    def _error_messages(response: httpx.Response) -> list[str]:
        """Pull provider error messages out of an error response."""
        try:
            body = response.json()
        except ValueError:
            text = response.text.strip()
            return [text[:500] or response.reason_phrase or "Request failed"]

        if isinstance(body, dict):
            errors = body.get("errors")
            if isinstance(errors, list) and errors:
                messages = []
                for error in errors:
                    if isinstance(error, dict):
                        messages.append(
                            str(error.get("message") or error.get("detail") or error)
                        )
                    else:
                        messages.append(str(error))
                return messages
            if body.get("message"):
                return [str(body["message"])]
        return [response.reason_phrase or "Request failed"]


class GraphQLClient(ApiClient):
    """
    GraphQL flavour of the client: single POST endpoint, ``{data, errors[]}``
    envelope. A non-empty ``errors`` array is a PermanentAPIError.
    """

    async def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Run a GraphQL query.

        Args:
            query: GraphQL document
            variables: Query variables
            timeout: Per-request deadline in seconds

        Returns:
            The ``data`` object of the response
        """
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables

        payload = await self.request("POST", "", json=body, timeout=timeout)

        if not isinstance(payload, dict):
            raise PermanentAPIError("Malformed GraphQL response")

        errors = payload.get("errors") or []
        if errors:
            raise PermanentAPIError(
                [
                    str(e.get("message", e)) if isinstance(e, dict) else str(e)
                    for e in errors
                ]
            )

        data = payload.get("data")
        if not isinstance(data, dict):
            raise PermanentAPIError("GraphQL response has no data")
        return data
