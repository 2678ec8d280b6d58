"""Async GitHub API client with rate-limit handling and retries."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog

log = structlog.get_logger("prfleet.forge")

_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds

DEFAULT_API_URL = "https://api.github.com"


class RateLimitError(Exception):
    """Raised when GitHub rate limit is exhausted and we need to wait."""

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"rate limit exceeded, retry after {retry_after}s")


class GitHubClient:
    """Thin async wrapper around the GitHub REST API."""

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = DEFAULT_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"token {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Single-resource GET, returns parsed JSON."""
        response = await self._request_with_retry("GET", path, params)
        await self._check_rate_limit(response)
        return response.json()

    async def post(self, path: str, payload: dict[str, Any]) -> Any:
        response = await self._request_with_retry("POST", path, json=payload)
        await self._check_rate_limit(response)
        return response.json()

    async def patch(self, path: str, payload: dict[str, Any]) -> Any:
        response = await self._request_with_retry("PATCH", path, json=payload)
        await self._check_rate_limit(response)
        return response.json()

    async def put(self, path: str, payload: dict[str, Any]) -> Any:
        response = await self._request_with_retry("PUT", path, json=payload)
        await self._check_rate_limit(response)
        return response.json()

    # ── internal ───────────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Request with exponential backoff on 5xx, 403 rate-limit, and timeout errors.

        Only idempotent methods are retried on timeouts and 5xx; a POST is
        sent once so a PR is never created twice.
        """
        retryable = method in ("GET", "PATCH", "PUT")
        attempts = _MAX_RETRIES if retryable else 1
        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                resp = await self._client.request(method, url, params=params, json=json)

                # 403 with rate-limit headers → sleep and retry
                if resp.status_code == 403 and self._is_rate_limited(resp):
                    wait = self._get_rate_limit_wait(resp)
                    log.warning(
                        "github.rate_limit",
                        url=url,
                        wait_seconds=wait,
                        attempt=attempt + 1,
                        max_retries=attempts,
                    )
                    await asyncio.sleep(wait)
                    last_exc = RateLimitError(wait)
                    continue

                if resp.status_code < 500:
                    resp.raise_for_status()
                    return resp

                # 5xx: retry
                log.warning(
                    "github.server_error",
                    method=method,
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=attempts,
                )
                last_exc = httpx.HTTPStatusError(
                    f"{resp.status_code}", request=resp.request, response=resp
                )
            except httpx.TimeoutException as exc:
                log.warning(
                    "github.timeout",
                    method=method,
                    url=url,
                    attempt=attempt + 1,
                    max_retries=attempts,
                )
                last_exc = exc

            if attempt < attempts - 1:
                delay = _RETRY_BASE_DELAY * (2**attempt)
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    async def _check_rate_limit(self, response: httpx.Response) -> None:
        """Sleep until rate-limit resets if remaining == 0."""
        remaining = self._parse_header_int(response.headers.get("X-RateLimit-Remaining"))
        if remaining is not None and remaining == 0:
            wait = self._get_rate_limit_wait(response)
            log.warning("github.rate_limit_wait", wait_seconds=wait)
            await asyncio.sleep(wait)

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        """Check if a 403 response is due to rate limiting."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                return int(remaining) == 0
            except (ValueError, TypeError):
                pass
        # GitHub also uses Retry-After header for abuse rate limits
        return "Retry-After" in response.headers

    @staticmethod
    def _get_rate_limit_wait(response: httpx.Response) -> int:
        """Calculate how long to wait based on rate-limit headers."""
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return max(int(retry_after), 1)
            except (ValueError, TypeError):
                pass
        reset_ts = response.headers.get("X-RateLimit-Reset")
        if reset_ts is not None:
            try:
                return max(int(reset_ts) - int(time.time()), 1)
            except (ValueError, TypeError):
                pass
        return 60

    @staticmethod
    def _parse_header_int(value: str | None) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (ValueError, TypeError):
            return None
