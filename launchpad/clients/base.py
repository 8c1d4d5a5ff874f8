"""Shared httpx plumbing for platform adapters."""

from __future__ import annotations

from typing import Any

import httpx

from ..resilience import CircuitBreaker, RetryPolicy


class HTTPAdapter:
    """Lazily created ``httpx.AsyncClient`` plus breaker-and-retry dispatch.

    Every remote call goes through :meth:`_call`, so the breaker sees each
    attempt and the retry policy sees the breaker's verdict.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self.breaker = breaker
        self.retry = retry or RetryPolicy()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _call(self, name: str, fn, *args: Any, **kwargs: Any) -> Any:
        return await self.retry.call(fn, *args, breaker=self.breaker, name=name, **kwargs)
