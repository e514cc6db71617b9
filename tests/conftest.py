import asyncio
import base64
import inspect
import os
from pathlib import Path
import random
import sys
from collections.abc import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from librarysync.config import AppConfig, load_config, override_runtime_env  # noqa: E402
from librarysync.db import init_db, reset_engine_for_tests  # noqa: E402
from librarysync.orchestrator.bootstrap import build_context  # noqa: E402
from librarysync.orchestrator.context import SyncContext  # noqa: E402
from tests.support.factories import create_user  # noqa: E402
from tests.support.fake_spotify import FakeSpotify  # noqa: E402

TEST_ENCRYPTION_KEY = base64.b64encode(b"k" * 32).decode("ascii")
TEST_USER_ID = "user-1"


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None
    fixtureinfo = getattr(pyfuncitem, "_fixtureinfo", None)
    if fixtureinfo is None:
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in fixtureinfo.argnames}
    asyncio.run(test_func(**kwargs))
    return True


@pytest.fixture(autouse=True)
def _test_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "librarysync.db"

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("SPOTIFY_CLIENT_ID", "test-client")
    monkeypatch.setenv("SPOTIFY_CLIENT_SECRET", "test-secret")
    monkeypatch.setenv("SPOTIFY_API_BASE_URL", FakeSpotify.api_base)
    monkeypatch.setenv("SPOTIFY_TOKEN_URL", FakeSpotify.token_url)
    monkeypatch.setenv("SYNC_CONTINUATION_DELAY_S", "0")
    monkeypatch.delenv("DB_RESET", raising=False)

    override_runtime_env(None)
    reset_engine_for_tests()
    init_db()
    try:
        yield
    finally:
        reset_engine_for_tests()
        override_runtime_env(None)


@pytest.fixture()
def app_config() -> AppConfig:
    return load_config(require_vault=True)


@pytest.fixture()
def fake_spotify() -> FakeSpotify:
    return FakeSpotify()


@pytest.fixture()
def sync_context(app_config: AppConfig, fake_spotify: FakeSpotify) -> SyncContext:
    return build_context(app_config, transport=fake_spotify.transport, rng=random.Random(1234))


@pytest.fixture()
def user_id(sync_context: SyncContext, fake_spotify: FakeSpotify) -> str:
    create_user(TEST_USER_ID, vault=sync_context.vault, refresh_token=fake_spotify.refresh_token)
    return TEST_USER_ID
