"""Process-scoped dependencies shared by the dispatcher and the sync algorithms."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
import random
from types import ModuleType

from librarysync.config import SchedulerConfig
from librarysync.core.credential_vault import CredentialVault
from librarysync.core.spotify_client import SpotifyApiClient
from librarysync.core.token_refresher import TokenRefresher
from librarysync.services.catalog_store import CatalogStore
from librarysync.services.sync_state import SyncStateTracker
from librarysync.utils.time import utcnow
from librarysync.workers import persistence


@dataclass(slots=True)
class SyncContext:
    """Everything a job needs; the token cache and the concurrency gate live here."""

    config: SchedulerConfig
    client: SpotifyApiClient
    vault: CredentialVault
    tokens: TokenRefresher
    tracker: SyncStateTracker
    store: CatalogStore = field(default_factory=CatalogStore)
    queue: ModuleType = persistence
    clock: Callable[[], datetime] = utcnow
    rng: random.Random = field(default_factory=random.Random)


__all__ = ["SyncContext"]
