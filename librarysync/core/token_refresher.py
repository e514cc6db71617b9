"""Exchange stored refresh credentials for short-lived access credentials."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from librarysync.core.credential_vault import CredentialVault, StoredCredential
from librarysync.core.spotify_client import SpotifyApiClient
from librarysync.errors import CredentialError, FatalError
from librarysync.logging import get_logger
from librarysync.logging_events import log_event
from librarysync.utils.time import utcnow

logger = get_logger(__name__)

SAFETY_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(slots=True, frozen=True)
class _CachedToken:
    access_token: str
    expires_at: datetime


class TokenRefresher:
    """Per-process access credential cache backed by the credential vault.

    Cache entries live on the instance, so separate refreshers never share
    state.  A refresh credential rotated by the upstream is persisted before
    the new access credential is handed out.
    """

    def __init__(
        self,
        client: SpotifyApiClient,
        vault: CredentialVault,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        safety_margin_s: float = SAFETY_MARGIN_SECONDS,
    ) -> None:
        self._client = client
        self._vault = vault
        self._client_id = client_id
        self._client_secret = client_secret
        self._clock = clock
        self._margin = timedelta(seconds=max(0.0, float(safety_margin_s)))
        self._cache: dict[str, _CachedToken] = {}
        self._rejected: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def _fresh(self, expires_at: datetime | None) -> bool:
        return expires_at is not None and expires_at - self._margin > self._clock()

    def invalidate(self, user_id: str) -> None:
        """Forget the access credential for ``user_id`` after an upstream 401."""

        self._cache.pop(user_id, None)
        self._rejected.add(user_id)

    async def get_access_token(self, user_id: str) -> str:
        cached = self._cache.get(user_id)
        if cached is not None and self._fresh(cached.expires_at):
            return cached.access_token

        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            cached = self._cache.get(user_id)
            if cached is not None and self._fresh(cached.expires_at):
                return cached.access_token

            credential = await asyncio.to_thread(self._vault.get, user_id)
            if credential is None:
                raise CredentialError(f"no usable refresh credential for user {user_id}")

            if (
                user_id not in self._rejected
                and credential.access_token
                and credential.access_expires_at is not None
                and self._fresh(credential.access_expires_at)
            ):
                self._cache[user_id] = _CachedToken(
                    credential.access_token, credential.access_expires_at
                )
                return credential.access_token

            return await self._exchange(credential)

    async def _exchange(self, credential: StoredCredential) -> str:
        form = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        auth: tuple[str, str] | None = None
        if self._client_id and self._client_secret:
            auth = (self._client_id, self._client_secret)
        elif self._client_id:
            form["client_id"] = self._client_id

        payload = await self._client.post_form(self._client.token_url, form, auth=auth)
        access_token, expires_at, rotated, scope = self._parse_exchange(payload)

        await asyncio.to_thread(
            self._vault.store_exchange,
            credential.user_id,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=rotated,
            scope=scope,
        )
        self._cache[credential.user_id] = _CachedToken(access_token, expires_at)
        self._rejected.discard(credential.user_id)
        log_event(
            logger,
            "token.refreshed",
            component="token_refresher",
            user_id=credential.user_id,
            rotated=rotated is not None,
            expires_in_s=int((expires_at - self._clock()).total_seconds()),
        )
        return access_token

    def _parse_exchange(
        self, payload: Any
    ) -> tuple[str, datetime, str | None, str | None]:
        if not isinstance(payload, Mapping):
            raise FatalError("token endpoint returned an unexpected payload")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise FatalError("token endpoint response is missing access_token")
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        rotated = payload.get("refresh_token")
        if not isinstance(rotated, str) or not rotated:
            rotated = None
        scope = payload.get("scope")
        return (
            access_token,
            self._clock() + timedelta(seconds=max(0, expires_in)),
            rotated,
            scope if isinstance(scope, str) else None,
        )


__all__ = ["TokenRefresher"]
