"""Bootstrap helpers for wiring the sync runtime."""

from __future__ import annotations

from dataclasses import dataclass
import random

import httpx

from librarysync.config import AppConfig
from librarysync.core.credential_vault import CredentialVault
from librarysync.core.spotify_client import SpotifyApiClient
from librarysync.core.token_refresher import TokenRefresher
from librarysync.errors import ConfigurationError
from librarysync.orchestrator.context import SyncContext
from librarysync.orchestrator.dispatcher import Dispatcher
from librarysync.orchestrator.scheduler import Scheduler
from librarysync.services.sync_state import SyncStateTracker


@dataclass(slots=True)
class SyncRuntime:
    """Container bundling the scheduler with its resolved dependencies."""

    context: SyncContext
    dispatcher: Dispatcher
    scheduler: Scheduler


def build_context(
    config: AppConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    rng: random.Random | None = None,
) -> SyncContext:
    if config.vault is None:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not set")
    client = SpotifyApiClient.from_config(
        config.catalog,
        transport=transport,
        default_retry_after_s=config.scheduler.default_retry_after_s,
    )
    vault = CredentialVault.from_config(config.vault)
    tokens = TokenRefresher(
        client,
        vault,
        client_id=config.catalog.client_id,
        client_secret=config.catalog.client_secret,
    )
    return SyncContext(
        config=config.scheduler,
        client=client,
        vault=vault,
        tokens=tokens,
        tracker=SyncStateTracker(),
        rng=rng or random.Random(),
    )


def bootstrap_runtime(
    config: AppConfig, *, transport: httpx.AsyncBaseTransport | None = None
) -> SyncRuntime:
    """Initialise the scheduler, dispatcher and context from ``config``."""

    context = build_context(config, transport=transport)
    dispatcher = Dispatcher(context)
    scheduler = Scheduler(context, dispatcher=dispatcher)
    return SyncRuntime(context=context, dispatcher=dispatcher, scheduler=scheduler)


__all__ = ["SyncRuntime", "bootstrap_runtime", "build_context"]
