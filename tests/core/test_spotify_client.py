from __future__ import annotations

import asyncio

import httpx
import pytest

from librarysync.core.spotify_client import SpotifyApiClient
from librarysync.errors import (
    ErrorCode,
    FatalError,
    RateLimitedError,
    RetryableError,
    UnauthorizedError,
)
from librarysync.utils.concurrency import FifoLimiter

API = "https://api.spotify.test/v1"


def make_client(handler, *, limit: int = 4, **kwargs) -> SpotifyApiClient:
    return SpotifyApiClient(
        api_base_url=API,
        token_url="https://accounts.spotify.test/api/token",
        limiter=FifoLimiter(limit),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_get_json_sends_bearer_and_resolves_paths() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"items": []})

    client = make_client(handler)

    assert await client.get_json("/me/tracks", access_token="tok", params={"limit": 5}) == {
        "items": []
    }
    await client.get_json(f"{API}/me/playlists", access_token="tok")

    assert seen[0].url.path == "/v1/me/tracks"
    assert seen[0].url.params["limit"] == "5"
    assert seen[0].headers["authorization"] == "Bearer tok"
    assert seen[1].url.path == "/v1/me/playlists"


@pytest.mark.asyncio
async def test_rate_limit_uses_retry_after_header_or_default() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(429),
    ]
    client = make_client(lambda request: responses.pop(0), default_retry_after_s=5)

    with pytest.raises(RateLimitedError) as first:
        await client.get_json("/me/tracks", access_token="tok")
    with pytest.raises(RateLimitedError) as second:
        await client.get_json("/me/tracks", access_token="tok")

    assert first.value.retry_after_seconds == 7
    assert second.value.retry_after_seconds == 5


@pytest.mark.asyncio
async def test_status_classification() -> None:
    statuses = [401, 503, 404]
    client = make_client(
        lambda request: httpx.Response(
            statuses.pop(0), json={"error": {"message": "refresh_token=leaked"}}
        )
    )

    with pytest.raises(UnauthorizedError):
        await client.get_json("/me/tracks", access_token="tok")
    with pytest.raises(RetryableError) as unavailable:
        await client.get_json("/me/tracks", access_token="tok")
    with pytest.raises(FatalError) as rejected:
        await client.get_json("/me/tracks", access_token="tok")

    assert unavailable.value.status_code == 503
    assert rejected.value.status_code == 404
    assert str(rejected.value).startswith("SpotifyError:404:")
    assert "leaked" not in str(rejected.value)


@pytest.mark.asyncio
async def test_transport_timeout_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = make_client(handler)

    with pytest.raises(RetryableError) as excinfo:
        await client.get_json("/me/tracks", access_token="tok")

    assert excinfo.value.code is ErrorCode.TIMEOUT


@pytest.mark.asyncio
async def test_transport_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = make_client(handler)

    with pytest.raises(RetryableError) as excinfo:
        await client.get_json("/me/tracks", access_token="tok")

    assert excinfo.value.code is ErrorCode.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_requests_share_the_concurrency_limit() -> None:
    active = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return httpx.Response(200, json={})

    client = make_client(handler, limit=2)

    await asyncio.gather(*(client.get_json("/me/tracks", access_token="t") for _ in range(6)))

    assert peak == 2
    assert client.limiter.in_flight == 0


@pytest.mark.asyncio
async def test_get_image_returns_bytes_and_enforces_size_cap() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        size = 10 if request.url.path == "/small" else 100
        return httpx.Response(
            200, content=b"x" * size, headers={"content-type": "image/png; charset=binary"}
        )

    client = make_client(handler, max_image_bytes=50)

    image = await client.get_image("https://images.spotify.test/small")
    assert image.data == b"x" * 10
    assert image.content_type == "image/png"

    with pytest.raises(FatalError):
        await client.get_image("https://images.spotify.test/large")


@pytest.mark.asyncio
async def test_post_form_sends_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "a"})

    client = make_client(handler)

    payload = await client.post_form(
        client.token_url, {"grant_type": "refresh_token"}, auth=("id", "secret")
    )

    assert payload == {"access_token": "a"}
    assert seen[0].headers["authorization"].startswith("Basic ")
    assert seen[0].content == b"grant_type=refresh_token"
