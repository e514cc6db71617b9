import base64
from pathlib import Path

import pytest

from librarysync.config import (
    DEFAULT_SPOTIFY_API_BASE_URL,
    decode_encryption_key,
    load_config,
    load_runtime_env,
)
from librarysync.errors import ConfigurationError

VALID_KEY = base64.b64encode(b"\x01" * 32).decode("ascii")


def test_defaults_from_empty_environment() -> None:
    config = load_config({})

    assert config.vault is None
    assert config.database.url == "sqlite:///./librarysync.db"
    assert config.catalog.api_base_url == DEFAULT_SPOTIFY_API_BASE_URL
    assert config.catalog.max_concurrency == 4
    assert config.scheduler.backoff_base_s == 5.0
    assert config.scheduler.backoff_max_s == 900.0
    assert config.scheduler.page_limit == 50
    assert config.scheduler.playlist_items_page_limit == 100
    assert config.scheduler.job_lease_s == 600.0


def test_vault_required_but_missing() -> None:
    with pytest.raises(ConfigurationError):
        load_config({}, require_vault=True)


def test_vault_parsed_when_key_present() -> None:
    config = load_config({"TOKEN_ENCRYPTION_KEY": VALID_KEY})

    assert config.vault is not None
    assert config.vault.key == b"\x01" * 32
    assert config.vault.key_version == 1


@pytest.mark.parametrize(
    "raw",
    ["not base64!!", base64.b64encode(b"short").decode("ascii")],
)
def test_malformed_key_is_rejected(raw: str) -> None:
    with pytest.raises(ConfigurationError):
        decode_encryption_key(raw)
    with pytest.raises(ConfigurationError):
        load_config({"TOKEN_ENCRYPTION_KEY": raw})


def test_scheduler_bounds_are_enforced() -> None:
    config = load_config(
        {
            "SYNC_BACKOFF_BASE_S": "2",
            "SYNC_BACKOFF_MAX_S": "1",
            "SYNC_JITTER_S": "30",
            "SYNC_PAGE_LIMIT": "500",
            "SPOTIFY_MAX_CONCURRENCY": "0",
            "SYNC_JOB_LEASE_S": "1",
        }
    )

    assert config.scheduler.backoff_max_s == 2.0
    assert config.scheduler.jitter_s == 2.0
    assert config.scheduler.page_limit == 50
    assert config.catalog.max_concurrency == 1
    assert config.scheduler.job_lease_s == 5.0


def test_env_file_is_overridden_by_process_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\nSYNC_PAGE_LIMIT=20\nLIBRARYSYNC_LOG_LEVEL='DEBUG'\n", encoding="utf-8"
    )

    env = load_runtime_env(env_file=env_file, base_env={"SYNC_PAGE_LIMIT": "10"})

    assert env["SYNC_PAGE_LIMIT"] == "10"
    assert env["LIBRARYSYNC_LOG_LEVEL"] == "DEBUG"
