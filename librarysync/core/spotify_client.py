"""Concurrency-limited async HTTP client for the Spotify Web API."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from librarysync.config import CatalogConfig
from librarysync.errors import (
    ErrorCode,
    FatalError,
    RateLimitedError,
    RetryableError,
    UnauthorizedError,
    sanitize_error_message,
)
from librarysync.utils.concurrency import FifoLimiter
from librarysync.utils.retry import parse_retry_after_seconds

DEFAULT_RETRY_AFTER_SECONDS = 5.0
USER_AGENT = "librarysync/0.1"


@dataclass(slots=True, frozen=True)
class CoverImage:
    data: bytes
    content_type: str


@dataclass(slots=True)
class SpotifyApiClient:
    """HTTPX based client; every request passes through one shared FIFO gate.

    Failures are classified, never retried locally: 429 becomes
    :class:`RateLimitedError`, 401 :class:`UnauthorizedError`, timeouts,
    transport errors and 5xx :class:`RetryableError`, any other non-2xx
    :class:`FatalError`.
    """

    api_base_url: str
    token_url: str
    limiter: FifoLimiter
    timeout_ms: int = 15_000
    transport: httpx.AsyncBaseTransport | None = None
    default_retry_after_s: float = DEFAULT_RETRY_AFTER_SECONDS
    max_image_bytes: int = 10 * 1024 * 1024
    headers: dict[str, str] = field(default_factory=lambda: {"User-Agent": USER_AGENT})

    @classmethod
    def from_config(
        cls,
        config: CatalogConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        default_retry_after_s: float = DEFAULT_RETRY_AFTER_SECONDS,
    ) -> SpotifyApiClient:
        return cls(
            api_base_url=config.api_base_url,
            token_url=config.token_url,
            limiter=FifoLimiter(config.max_concurrency),
            timeout_ms=config.timeout_ms,
            transport=transport,
            default_retry_after_s=default_retry_after_s,
            max_image_bytes=config.cover_max_bytes,
        )

    async def get_json(
        self,
        path: str,
        *,
        access_token: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """GET ``path`` (relative to the API base, or absolute) with a bearer token."""

        response = await self._request(
            "GET",
            self._resolve_url(path),
            params=params,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        return self._decode_json(response)

    async def post_form(
        self,
        url: str,
        data: Mapping[str, str],
        *,
        auth: tuple[str, str] | None = None,
    ) -> Any:
        response = await self._request(
            "POST",
            url,
            data=dict(data),
            headers={"Accept": "application/json"},
            auth=auth,
        )
        return self._decode_json(response)

    async def get_image(self, url: str) -> CoverImage:
        response = await self._request("GET", url, headers={"Accept": "image/*"})
        content = response.content
        if len(content) > self.max_image_bytes:
            raise FatalError(
                f"image exceeds {self.max_image_bytes} bytes",
                code=ErrorCode.UPSTREAM_REJECTED,
            )
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return CoverImage(data=content, content_type=content_type or "image/jpeg")

    def _resolve_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.api_base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        timeout_seconds = max(self.timeout_ms, 100) / 1000
        request_headers = {**self.headers, **headers}
        async with self.limiter.slot():
            try:
                async with httpx.AsyncClient(
                    timeout=self._build_timeout(self.timeout_ms),
                    transport=self.transport,
                    follow_redirects=True,
                ) as client:
                    response = await asyncio.wait_for(
                        client.request(
                            method,
                            url,
                            params=params,
                            data=data,
                            headers=request_headers,
                            auth=auth,
                        ),
                        timeout=timeout_seconds,
                    )
            except (TimeoutError, httpx.TimeoutException) as exc:
                raise RetryableError(
                    f"{method} {httpx.URL(url).path} timed out after {self.timeout_ms}ms",
                    code=ErrorCode.TIMEOUT,
                ) from exc
            except httpx.HTTPError as exc:
                raise RetryableError(
                    sanitize_error_message(f"{method} {httpx.URL(url).path} failed: {exc}")
                ) from exc
        self._raise_for_status(response)
        return response

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == httpx.codes.TOO_MANY_REQUESTS:
            retry_after = parse_retry_after_seconds(
                response.headers.get("retry-after"), default=self.default_retry_after_s
            )
            raise RateLimitedError(
                f"rate limited; retry after {retry_after:g}s", retry_after_seconds=retry_after
            )
        body_preview = sanitize_error_message(response.text)
        if status == httpx.codes.UNAUTHORIZED:
            raise UnauthorizedError(f"SpotifyError:401:{body_preview}")
        if 500 <= status < 600:
            raise RetryableError(f"SpotifyError:{status}:{body_preview}", status_code=status)
        raise FatalError(f"SpotifyError:{status}:{body_preview}", status_code=status)

    @staticmethod
    def _decode_json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise RetryableError("upstream returned invalid JSON") from exc

    @staticmethod
    def _build_timeout(timeout_ms: int) -> httpx.Timeout:
        timeout_seconds = max(timeout_ms, 100) / 1000
        connect_timeout = min(timeout_seconds, 5.0)
        return httpx.Timeout(
            timeout_seconds,
            connect=connect_timeout,
            read=timeout_seconds,
            write=timeout_seconds,
        )


__all__ = ["CoverImage", "SpotifyApiClient"]
