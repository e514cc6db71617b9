from __future__ import annotations

import asyncio

import pytest

from librarysync.core.token_refresher import TokenRefresher
from librarysync.db import session_scope
from librarysync.errors import CredentialError, FatalError
from librarysync.models import OAuthToken
from librarysync.orchestrator.context import SyncContext
from tests.support.factories import create_user
from tests.support.fake_spotify import FakeSpotify


def fresh_refresher(ctx: SyncContext) -> TokenRefresher:
    return TokenRefresher(
        ctx.client,
        ctx.vault,
        client_id=FakeSpotify.client_id,
        client_secret=FakeSpotify.client_secret,
    )


@pytest.mark.asyncio
async def test_access_token_is_cached_per_process(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    first = await sync_context.tokens.get_access_token(user_id)
    second = await sync_context.tokens.get_access_token(user_id)

    assert first == second == "access-1"
    assert fake_spotify.token_requests == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_exchange(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    tokens = await asyncio.gather(
        *(sync_context.tokens.get_access_token(user_id) for _ in range(5))
    )

    assert set(tokens) == {"access-1"}
    assert fake_spotify.token_requests == 1


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_persisted(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    fake_spotify.rotate_refresh_tokens = True

    await sync_context.tokens.get_access_token(user_id)

    credential = sync_context.vault.get(user_id)
    assert credential is not None
    assert credential.refresh_token == fake_spotify.refresh_token == "refresh-1"
    assert credential.access_token == "access-1"


@pytest.mark.asyncio
async def test_new_process_reuses_stored_access_token(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    await sync_context.tokens.get_access_token(user_id)

    token = await fresh_refresher(sync_context).get_access_token(user_id)

    assert token == "access-1"
    assert fake_spotify.token_requests == 1


@pytest.mark.asyncio
async def test_stored_access_token_without_expiry_is_not_reused(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    await sync_context.tokens.get_access_token(user_id)
    with session_scope() as session:
        session.get(OAuthToken, user_id).access_expires_at = None

    token = await fresh_refresher(sync_context).get_access_token(user_id)

    assert token == "access-2"
    assert fake_spotify.token_requests == 2


@pytest.mark.asyncio
async def test_invalidate_forces_a_new_exchange(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    fake_spotify.rotate_refresh_tokens = True
    await sync_context.tokens.get_access_token(user_id)

    sync_context.tokens.invalidate(user_id)
    token = await sync_context.tokens.get_access_token(user_id)

    assert token == "access-2"
    assert fake_spotify.token_requests == 2
    assert sync_context.vault.get(user_id).refresh_token == "refresh-2"


@pytest.mark.asyncio
async def test_missing_credential_is_fatal(sync_context: SyncContext) -> None:
    create_user("no-token")

    with pytest.raises(CredentialError):
        await sync_context.tokens.get_access_token("no-token")


@pytest.mark.asyncio
async def test_rejected_refresh_credential_is_fatal(
    sync_context: SyncContext, fake_spotify: FakeSpotify, user_id: str
) -> None:
    fake_spotify.refresh_token = "revoked-elsewhere"

    with pytest.raises(FatalError) as excinfo:
        await sync_context.tokens.get_access_token(user_id)

    assert "SpotifyError:400" in str(excinfo.value)
