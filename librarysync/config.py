"""Configuration loading for the librarysync worker."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

from librarysync.errors import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./librarysync.db"
DEFAULT_SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"
DEFAULT_SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_TIMEOUT_MS = 15_000
DEFAULT_COVER_MAX_BYTES = 10 * 1024 * 1024
ENCRYPTION_KEY_BYTES = 32

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge a ``.env`` file with the process environment (environment wins)."""

    env: dict[str, str] = {}
    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))
    source = dict(base_env or os.environ)
    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    env = get_runtime_env()
    return env.get(name, default)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _optional_str(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> DatabaseConfig:
        return cls(url=_optional_str(env, "DATABASE_URL") or DEFAULT_DATABASE_URL)


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str
    log_file: str | None

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoggingConfig:
        level = (_optional_str(env, "LIBRARYSYNC_LOG_LEVEL") or "INFO").upper()
        return cls(level=level, log_file=_optional_str(env, "LIBRARYSYNC_LOG_FILE"))


@dataclass(slots=True, frozen=True)
class CatalogConfig:
    api_base_url: str
    token_url: str
    client_id: str | None
    client_secret: str | None
    max_concurrency: int
    timeout_ms: int
    cover_max_bytes: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> CatalogConfig:
        api_base_url = _optional_str(env, "SPOTIFY_API_BASE_URL") or DEFAULT_SPOTIFY_API_BASE_URL
        token_url = _optional_str(env, "SPOTIFY_TOKEN_URL") or DEFAULT_SPOTIFY_TOKEN_URL
        return cls(
            api_base_url=api_base_url.rstrip("/"),
            token_url=token_url,
            client_id=_optional_str(env, "SPOTIFY_CLIENT_ID"),
            client_secret=_optional_str(env, "SPOTIFY_CLIENT_SECRET"),
            max_concurrency=_bounded_int(
                env.get("SPOTIFY_MAX_CONCURRENCY"),
                default=DEFAULT_MAX_CONCURRENCY,
                minimum=1,
                maximum=64,
            ),
            timeout_ms=_bounded_int(
                env.get("SPOTIFY_TIMEOUT_MS"), default=DEFAULT_TIMEOUT_MS, minimum=100
            ),
            cover_max_bytes=_bounded_int(
                env.get("COVER_MAX_BYTES"), default=DEFAULT_COVER_MAX_BYTES, minimum=1024
            ),
        )


@dataclass(slots=True, frozen=True)
class VaultConfig:
    key: bytes
    key_version: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> VaultConfig:
        raw = _optional_str(env, "TOKEN_ENCRYPTION_KEY")
        if raw is None:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not set")
        return cls(
            key=decode_encryption_key(raw),
            key_version=_bounded_int(
                env.get("TOKEN_ENCRYPTION_KEY_VERSION"), default=1, minimum=1
            ),
        )


def decode_encryption_key(raw: str) -> bytes:
    """Decode a base64 encryption key, requiring exactly 32 bytes."""

    try:
        key = base64.b64decode(raw.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != ENCRYPTION_KEY_BYTES:
        raise ConfigurationError(
            f"TOKEN_ENCRYPTION_KEY must decode to {ENCRYPTION_KEY_BYTES} bytes, got {len(key)}"
        )
    return key


@dataclass(slots=True, frozen=True)
class SchedulerConfig:
    poll_interval_s: float
    heartbeat_interval_s: float
    schedule_interval_s: float
    continuation_delay_s: float
    backoff_base_s: float
    backoff_max_s: float
    jitter_s: float
    default_retry_after_s: float
    heartbeat_stale_after_s: float
    page_limit: int
    playlist_items_page_limit: int
    max_pages_per_run: int
    backfill_limit: int
    backfill_max_batches: int
    job_lease_s: float

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SchedulerConfig:
        backoff_base_s = _bounded_float(
            env.get("SYNC_BACKOFF_BASE_S"), default=5.0, minimum=0.1
        )
        backoff_max_s = _bounded_float(
            env.get("SYNC_BACKOFF_MAX_S"), default=900.0, minimum=backoff_base_s
        )
        return cls(
            poll_interval_s=_bounded_float(
                env.get("SYNC_POLL_INTERVAL_S"), default=2.0, minimum=0.05
            ),
            heartbeat_interval_s=_bounded_float(
                env.get("SYNC_HEARTBEAT_INTERVAL_S"), default=10.0, minimum=1.0
            ),
            schedule_interval_s=_bounded_float(
                env.get("SYNC_SCHEDULE_INTERVAL_S"), default=600.0, minimum=1.0
            ),
            continuation_delay_s=_bounded_float(
                env.get("SYNC_CONTINUATION_DELAY_S"), default=2.0, minimum=0.0
            ),
            backoff_base_s=backoff_base_s,
            backoff_max_s=backoff_max_s,
            jitter_s=_bounded_float(
                env.get("SYNC_JITTER_S"),
                default=1.0,
                minimum=0.0,
                maximum=backoff_base_s,
            ),
            default_retry_after_s=_bounded_float(
                env.get("SYNC_DEFAULT_RETRY_AFTER_S"), default=5.0, minimum=0.0
            ),
            heartbeat_stale_after_s=_bounded_float(
                env.get("WORKER_HEARTBEAT_STALE_S"), default=30.0, minimum=1.0
            ),
            page_limit=_bounded_int(env.get("SYNC_PAGE_LIMIT"), default=50, minimum=1, maximum=50),
            playlist_items_page_limit=_bounded_int(
                env.get("SYNC_PLAYLIST_ITEMS_PAGE_LIMIT"), default=100, minimum=1, maximum=100
            ),
            max_pages_per_run=_bounded_int(
                env.get("SYNC_MAX_PAGES_PER_RUN"), default=5, minimum=1
            ),
            backfill_limit=_bounded_int(
                env.get("SYNC_BACKFILL_LIMIT"), default=50, minimum=1, maximum=50
            ),
            backfill_max_batches=_bounded_int(
                env.get("SYNC_BACKFILL_MAX_BATCHES"), default=5, minimum=1
            ),
            job_lease_s=_bounded_float(
                env.get("SYNC_JOB_LEASE_S"), default=600.0, minimum=5.0
            ),
        )


@dataclass(slots=True, frozen=True)
class AppConfig:
    database: DatabaseConfig
    logging: LoggingConfig
    catalog: CatalogConfig
    scheduler: SchedulerConfig
    vault: VaultConfig | None


def load_config(
    runtime_env: Mapping[str, Any] | None = None, *, require_vault: bool = False
) -> AppConfig:
    """Assemble the application configuration from the runtime environment.

    The vault section is optional unless ``require_vault`` is set; a key that is
    present but malformed always raises :class:`ConfigurationError`.
    """

    env = runtime_env if runtime_env is not None else get_runtime_env()
    vault: VaultConfig | None = None
    if require_vault or _optional_str(env, "TOKEN_ENCRYPTION_KEY") is not None:
        vault = VaultConfig.from_env(env)
    return AppConfig(
        database=DatabaseConfig.from_env(env),
        logging=LoggingConfig.from_env(env),
        catalog=CatalogConfig.from_env(env),
        scheduler=SchedulerConfig.from_env(env),
        vault=vault,
    )


__all__ = [
    "AppConfig",
    "CatalogConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "SchedulerConfig",
    "VaultConfig",
    "decode_encryption_key",
    "get_env",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
