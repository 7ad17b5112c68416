"""Pytest configuration and shared fixtures.

Tests never touch the network or the real home directory: remote services
are replaced by the in-memory fakes in tests/fakes.py, and every test gets
its own home and working directory under tmp_path.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from envsync.core.settings import clear_settings_cache
from envsync.models import KeyRecord
from envsync.services.keystore import KeyStore
from envsync.services.local_cache import LocalCache
from envsync.services.retry import RetryPolicy
from envsync.services.synchroniser import Synchroniser
from tests.factories import create_key
from tests.fakes import FakeEnvStore, FakeKeyService

ORG_ID = "org_1"
PROJECT_ID = "proj_1"
APP_ID = "app_1"


async def _no_sleep(delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Drop ENVSYNC_* variables and point the home directory at tmp_path."""
    for name in list(os.environ):
        if name.startswith("ENVSYNC_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("ENVSYNC_HOME_DIR", str(tmp_path / "home"))
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Filesystem fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def home_dir(tmp_path: Path) -> Path:
    """User home directory holding the global .hx and .hxkey."""
    path = tmp_path / "home"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Workspace directory holding the env files."""
    path = tmp_path / "work"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def cache(home_dir: Path) -> LocalCache:
    """Local cache stored in the isolated home .hx."""
    return LocalCache(home_dir / ".hx", lock_timeout=0.2)


# ---------------------------------------------------------------------------
# Remote fakes
# ---------------------------------------------------------------------------
@pytest.fixture
def no_retry() -> RetryPolicy:
    """Retry policy that never sleeps."""
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0, sleep=_no_sleep)


@pytest.fixture
def project_key() -> KeyRecord:
    """Current project key as held by the key service."""
    return create_key(key_id=7)


@pytest.fixture
def key_service(project_key: KeyRecord) -> FakeKeyService:
    """Key service that already holds the project key."""
    return FakeKeyService(key=project_key)


@pytest.fixture
def env_store() -> FakeEnvStore:
    """Env store with three named environments and no payloads."""
    return FakeEnvStore(environments=["dev", "staging", "prod"])


@pytest.fixture
def keystore(
    key_service: FakeKeyService, workdir: Path, home_dir: Path, no_retry: RetryPolicy
) -> KeyStore:
    """Key store resolving through the fake key service."""
    return KeyStore.for_workspace(
        ORG_ID,
        PROJECT_ID,
        cwd=workdir,
        home_dir=home_dir,
        key_service=key_service,
        retry=no_retry,
    )


@pytest.fixture
def synchroniser(
    env_store: FakeEnvStore, keystore: KeyStore, cache: LocalCache, workdir: Path
) -> Synchroniser:
    """Synchroniser wired to the fakes."""
    return Synchroniser(
        env_store,
        keystore,
        cache,
        organization_id=ORG_ID,
        project_id=PROJECT_ID,
        app_id=APP_ID,
        workdir=workdir,
    )
