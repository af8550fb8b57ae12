# docparser/services/resilient_caller.py
from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from docparser.shared.errors import (
    CircuitOpenError,
    HttpStatusError,
    NetworkError,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from docparser.shared.metrics import MetricsRegistry, metrics

logger = logging.getLogger(__name__)

SERVICE_HEADERS: Dict[str, str] = {
    "User-Agent": "Smart-DocParser/1.0",
    "X-Title": "Smart-DocParser OCR Service",
    "HTTP-Referer": "https://smart-docparser.app",
}


# -------------------------- Policies --------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_interval: float = 1.0
    max_interval: float = 10.0
    jitter: float = 0.2

    def interval(self, n: int) -> float:
        """Backoff before retry n (0-based), with +/- jitter."""
        base = min(self.max_interval, self.initial_interval * (2 ** n))
        return base * random.uniform(1.0 - self.jitter, 1.0 + self.jitter)


class CircuitBreaker:
    """
    closed -> open after more than `failure_threshold` consecutive failures;
    open -> half_open after `open_timeout`; half_open admits up to
    `max_requests` calls, closes after that many successes, re-opens on any failure.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        open_timeout: float = 10.0,
        max_requests: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_timeout = open_timeout
        self.max_requests = max_requests
        self._clock = clock
        self._state = self.CLOSED
        self._failures = 0
        self._successes = 0
        self._admitted = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.open_timeout:
            self._to(self.HALF_OPEN)
        return self._state

    def _to(self, state: str) -> None:
        if state != self._state:
            logger.info("circuit %s: %s -> %s", self.name, self._state, state)
        self._state = state
        self._failures = 0
        self._successes = 0
        self._admitted = 0
        if state == self.OPEN:
            self._opened_at = self._clock()

    def allow(self) -> None:
        state = self.state
        if state == self.OPEN:
            raise CircuitOpenError(f"circuit '{self.name}' is open")
        if state == self.HALF_OPEN:
            if self._admitted >= self.max_requests:
                raise CircuitOpenError(f"circuit '{self.name}' is half-open and saturated")
            self._admitted += 1

    def record_success(self) -> None:
        if self._state == self.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.max_requests:
                self._to(self.CLOSED)
        else:
            self._failures = 0

    def record_failure(self) -> None:
        if self._state == self.HALF_OPEN:
            self._to(self.OPEN)
            return
        self._failures += 1
        if self._failures > self.failure_threshold:
            self._to(self.OPEN)

    def release(self) -> None:
        """Give back a half-open slot for a call that never finished."""
        if self._state == self.HALF_OPEN and self._admitted > 0:
            self._admitted -= 1


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HttpStatusError):
        return exc.transient
    return isinstance(exc, UpstreamUnavailable)


# -------------------------- Caller --------------------------

class ResilientCaller:
    """
    One outbound HTTP endpoint family: retry with exponential backoff and
    jitter, per-attempt timeout, service headers, circuit breaker, metrics.
    """

    def __init__(
        self,
        name: str,
        client: httpx.AsyncClient,
        *,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        registry: Optional[MetricsRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {**SERVICE_HEADERS, **(headers or {})}
        self._timeout = timeout
        self.policy = policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker(name)
        self._sleep = sleep
        reg = registry or metrics
        self._calls = reg.counter("http_client_requests_total")
        self._duration = reg.histogram("http_client_request_duration_seconds")

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self._base_url}/{endpoint.lstrip('/')}"

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.policy.interval(retry_state.attempt_number - 1)

    async def call(
        self,
        endpoint: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        streaming: bool = False,
    ) -> Tuple[int, str]:
        """
        Returns (status, body text). For streaming chat completions the body
        is the concatenated delta content.
        """
        url = self._url(endpoint)
        merged = {**self._headers, **(headers or {})}

        self.breaker.allow()
        outcome = "error"
        started = time.perf_counter()
        try:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.policy.max_retries + 1),
                wait=self._wait,
                retry=retry_if_exception(_is_transient),
                sleep=self._sleep,
                reraise=True,
                before_sleep=self._log_retry,
            )
            async for attempt in retrying:
                with attempt:
                    result = await self._attempt(method, url, merged, body, streaming)
            outcome = "success"
            self.breaker.record_success()
            return result
        except HttpStatusError as e:
            outcome = "http_error"
            if e.transient:
                self.breaker.record_failure()
            else:
                # upstream answered; the request itself was bad
                self.breaker.record_success()
            raise
        except UpstreamTimeout:
            outcome = "timeout"
            self.breaker.record_failure()
            raise
        except UpstreamUnavailable:
            outcome = "network_error"
            self.breaker.record_failure()
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            self.breaker.release()
            raise
        finally:
            self._calls.inc(caller=self.name, outcome=outcome)
            self._duration.observe(time.perf_counter() - started, caller=self.name)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s: attempt %d failed (%s), retrying",
            self.name, retry_state.attempt_number, exc,
        )

    async def _attempt(
        self, method: str, url: str, headers: Dict[str, str], body: Any, streaming: bool
    ) -> Tuple[int, str]:
        kwargs: Dict[str, Any] = {"headers": headers}
        if isinstance(body, (bytes, str)):
            kwargs["content"] = body
        elif body is not None:
            kwargs["json"] = body

        try:
            if streaming:
                return await asyncio.wait_for(self._stream(method, url, kwargs), self._timeout)
            resp = await asyncio.wait_for(self._client.request(method, url, **kwargs), self._timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise UpstreamTimeout(f"{self.name}: no response within {self._timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name}: {e.__class__.__name__}: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise HttpStatusError(resp.status_code, resp.text)
        return resp.status_code, resp.text

    async def _stream(self, method: str, url: str, kwargs: Dict[str, Any]) -> Tuple[int, str]:
        async with self._client.stream(method, url, **kwargs) as resp:
            if resp.status_code < 200 or resp.status_code >= 300:
                await resp.aread()
                raise HttpStatusError(resp.status_code, resp.text)

            parts = []
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except ValueError:
                    continue
                choices = chunk.get("choices") or []
                if choices:
                    delta = choices[0].get("delta") or {}
                    parts.append(delta.get("content") or "")
            return resp.status_code, "".join(parts)
