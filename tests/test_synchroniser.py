"""Tests for push and pull.

Test Categories:
1. Selection - parsing of the environment selection
2. Push - first push, no-op push, cloud-ahead, key-id renegotiation
3. Push all - discovery, ordering and per-environment failures
4. Pull - local modification, force, versions, keys
5. Pull all - filtering of removed environments and ordering
6. Round trip - push then pull reproduces files byte for byte
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from envsync.core.errors import (
    EnvNameError,
    RemoteConflictError,
    RemoteConnectionError,
    SyncError,
    SyncErrorKind,
)
from envsync.models import DEFAULT_ENVIRONMENT, CacheEntry, KeyRecord, NamedEnvironment
from envsync.services import cipher
from envsync.services.keystore import KeyStore
from envsync.services.local_cache import LocalCache
from envsync.services.retry import RetryPolicy
from envsync.services.synchroniser import (
    NO_LOCAL_CHANGE,
    OutcomeStatus,
    Selection,
    SelectionMode,
    Synchroniser,
    filter_envs_by_current_environments,
)
from tests.conftest import APP_ID, ORG_ID, PROJECT_ID
from tests.factories import create_key, create_payload, write_key_file
from tests.fakes import FakeEnvStore, FakeKeyService


def _write(workdir: Path, file_name: str, content: bytes) -> Path:
    path = workdir / file_name
    path.write_bytes(content)
    return path


def _sha(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


# =============================================================================
# Selection
# =============================================================================


class TestSelection:
    """Tests for Selection construction."""

    def test_single_is_canonicalised(self):
        assert Selection.single("Staging") == Selection(SelectionMode.SINGLE, "staging")

    @pytest.mark.parametrize("name", ["default", "DEFAULT", ""])
    def test_single_default(self, name: str):
        assert Selection.single(name).mode is SelectionMode.DEFAULT

    def test_single_rejects_invalid_name(self):
        with pytest.raises(EnvNameError):
            Selection.single("my env")

    def test_filter_keeps_default_and_order(self, project_key: KeyRecord):
        """Payloads of removed environments are dropped; order is preserved."""
        store = FakeEnvStore(["b", "a"])
        payloads = [
            store.seed("b", create_payload(b"B=1\n", project_key)),
            store.seed("gone", create_payload(b"G=1\n", project_key)),
            store.seed("default", create_payload(b"D=1\n", project_key)),
            store.seed("a", create_payload(b"A=1\n", project_key)),
        ]

        kept = filter_envs_by_current_environments(
            payloads, [*store.environments, DEFAULT_ENVIRONMENT]
        )

        assert [p.env_name for p in kept] == ["b", "default", "a"]


# =============================================================================
# Push
# =============================================================================


class TestPush:
    """Tests for pushing a single environment."""

    @pytest.mark.asyncio
    async def test_first_push(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        """A new environment is written at version 1 under the current key."""
        _write(workdir, ".env.staging", b"FOO=bar\nBAZ=qux\n")

        result = await synchroniser.push(Selection.single("staging"))

        assert result.ok
        assert len(env_store.put_calls) == 1
        call = env_store.put_calls[0]
        assert call.env_name == "staging"
        assert call.secret_key_id == project_key.key_id
        assert call.payload.version == 1
        assert call.payload.count_variables == 2
        assert call.payload.size == "16 bytes"
        assert call.payload.secret_key_id == project_key.key_id
        assert cipher.decrypt(call.payload.data, project_key) == b"FOO=bar\nBAZ=qux\n"
        assert cache.get(PROJECT_ID, APP_ID, "staging") == CacheEntry(
            version=1, hash=_sha(b"FOO=bar\nBAZ=qux\n")
        )
        assert result.pushed[0].version == 1
        assert [item.reason for item in result.plan] == ["first push"]

    @pytest.mark.asyncio
    async def test_no_op_push(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        """An unchanged file is skipped without touching the remote."""
        _write(workdir, ".env.staging", b"FOO=bar\nBAZ=qux\n")
        await synchroniser.push(Selection.single("staging"))
        env_store.get_calls.clear()

        result = await synchroniser.push(Selection.single("staging"))

        assert len(env_store.put_calls) == 1
        assert env_store.get_calls == []
        outcome = result.outcome_for("staging")
        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason == NO_LOCAL_CHANGE

    @pytest.mark.asyncio
    async def test_changed_file_bumps_version(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, cache: LocalCache, workdir: Path
    ):
        _write(workdir, ".env.staging", b"FOO=bar\n")
        await synchroniser.push(Selection.single("staging"))
        _write(workdir, ".env.staging", b"FOO=baz\n")

        result = await synchroniser.push(Selection.single("staging"))

        assert result.pushed[0].version == 2
        assert env_store.latest("staging").version == 2
        assert cache.get(PROJECT_ID, APP_ID, "staging").version == 2

    @pytest.mark.asyncio
    async def test_cloud_ahead(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        """A newer remote version blocks the push."""
        cache.put(PROJECT_ID, APP_ID, "staging", b"FOO=old\n", version=1)
        env_store.seed("staging", create_payload(b"FOO=remote\n", project_key, version=2))
        _write(workdir, ".env.staging", b"FOO=local\n")

        result = await synchroniser.push(Selection.single("staging"))

        assert env_store.put_calls == []
        error = result.outcome_for("staging").error
        assert error.kind is SyncErrorKind.CLOUD_AHEAD
        assert (error.env_name, error.cloud_version, error.local_version) == ("staging", 2, 1)
        assert cache.get(PROJECT_ID, APP_ID, "staging").version == 1

    @pytest.mark.asyncio
    async def test_cloud_ahead_without_cache(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        workdir: Path,
        project_key: KeyRecord,
    ):
        """A workspace that never synced counts as version 0."""
        env_store.seed("staging", create_payload(b"FOO=remote\n", project_key, version=1))
        _write(workdir, ".env.staging", b"FOO=local\n")

        result = await synchroniser.push(Selection.single("staging"))

        error = result.outcome_for("staging").error
        assert error.kind is SyncErrorKind.CLOUD_AHEAD
        assert (error.cloud_version, error.local_version) == (1, 0)

    @pytest.mark.asyncio
    async def test_put_conflict_is_cloud_ahead(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        """With nothing readable in the cloud, the conflicting version is reported."""
        env_store.put_errors["staging"] = [RemoteConflictError("taken", status_code=409)]
        _write(workdir, ".env.staging", b"FOO=bar\n")

        result = await synchroniser.push(Selection.single("staging"))

        error = result.outcome_for("staging").error
        assert error.kind is SyncErrorKind.CLOUD_AHEAD
        assert error.cloud_version == 1

    @pytest.mark.asyncio
    async def test_put_conflict_reports_winning_version(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        workdir: Path,
        project_key: KeyRecord,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """After losing a race the cloud copy is re-read for its version."""
        _write(workdir, ".env.staging", b"FOO=bar\n")

        async def racing_put(*args, **kwargs):
            for version in (1, 2):
                env_store.seed("staging", create_payload(b"FOO=theirs\n", project_key, version))
            raise RemoteConflictError("taken", status_code=409)

        monkeypatch.setattr(env_store, "put_env", racing_put)

        result = await synchroniser.push(Selection.single("staging"))

        error = result.outcome_for("staging").error
        assert error.kind is SyncErrorKind.CLOUD_AHEAD
        assert (error.cloud_version, error.local_version) == (2, 0)
        assert env_store.get_calls[-1] == ("staging", 7, None)

    @pytest.mark.asyncio
    async def test_put_transport_failure(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, cache: LocalCache, workdir: Path
    ):
        env_store.put_errors["staging"] = [RemoteConnectionError("refused")]
        _write(workdir, ".env.staging", b"FOO=bar\n")

        result = await synchroniser.push(Selection.single("staging"))

        assert result.outcome_for("staging").error.kind is SyncErrorKind.TRANSPORT
        assert cache.get(PROJECT_ID, APP_ID, "staging") is None

    @pytest.mark.asyncio
    async def test_keeps_key_of_existing_payload(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        keystore: KeyStore,
    ):
        """Updates are encrypted under the key the cloud copy was written with."""
        old_key = create_key(key_id=3)
        keystore.remember(old_key)
        env_store.seed("staging", create_payload(b"FOO=1\n", old_key, version=1))
        cache.put(PROJECT_ID, APP_ID, "staging", b"FOO=1\n", version=1)
        _write(workdir, ".env.staging", b"FOO=2\n")

        result = await synchroniser.push(Selection.single("staging"))

        call = env_store.put_calls[0]
        assert call.secret_key_id == 3
        assert cipher.decrypt(call.payload.data, old_key) == b"FOO=2\n"
        assert result.pushed[0].secret_key_id == 3

    @pytest.mark.asyncio
    async def test_unknown_key_of_existing_payload(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
    ):
        lost_key = create_key(key_id=99)
        env_store.seed("staging", create_payload(b"FOO=1\n", lost_key, version=1))
        cache.put(PROJECT_ID, APP_ID, "staging", b"FOO=1\n", version=1)
        _write(workdir, ".env.staging", b"FOO=2\n")

        result = await synchroniser.push(Selection.single("staging"))

        error = result.outcome_for("staging").error
        assert error.kind is SyncErrorKind.UNKNOWN_KEY
        assert error.key_id == 99
        assert env_store.put_calls == []

    @pytest.mark.asyncio
    async def test_unknown_environment(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        _write(workdir, ".env.qa", b"A=1\n")

        result = await synchroniser.push(Selection.single("qa"))

        assert result.outcome_for("qa").error.kind is SyncErrorKind.UNKNOWN_ENVIRONMENT
        assert env_store.put_calls == []

    @pytest.mark.asyncio
    async def test_missing_file(self, synchroniser: Synchroniser):
        result = await synchroniser.push(Selection.single("prod"))
        assert result.outcome_for("prod").error.kind is SyncErrorKind.MISSING_FILE

    @pytest.mark.asyncio
    async def test_default_is_unsupported(self, synchroniser: Synchroniser, workdir: Path):
        _write(workdir, ".env", b"A=1\n")

        with pytest.raises(SyncError) as exc_info:
            await synchroniser.push(Selection.single("default"))

        assert exc_info.value.kind is SyncErrorKind.UNSUPPORTED

    @pytest.mark.asyncio
    async def test_listing_failure_aborts(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        env_store.list_error = RemoteConnectionError("refused")
        _write(workdir, ".env.staging", b"A=1\n")

        with pytest.raises(SyncError) as exc_info:
            await synchroniser.push(Selection.single("staging"))

        assert exc_info.value.kind is SyncErrorKind.TRANSPORT


# =============================================================================
# Key-id renegotiation
# =============================================================================


class TestKeyIdRenegotiation:
    """Tests for the single retry after a rejected key id."""

    @pytest.mark.asyncio
    async def test_retries_with_refreshed_key_id(
        self,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        home_dir: Path,
        no_retry: RetryPolicy,
    ):
        """A locally minted key id is replaced by the service's id, ciphertext unchanged."""
        local_key = create_key(key_id=0)
        write_key_file(workdir, local_key)
        service = FakeKeyService()
        keystore = KeyStore.for_workspace(
            ORG_ID, PROJECT_ID, cwd=workdir, home_dir=home_dir, key_service=service, retry=no_retry
        )
        sync = Synchroniser(
            env_store,
            keystore,
            cache,
            organization_id=ORG_ID,
            project_id=PROJECT_ID,
            app_id=APP_ID,
            workdir=workdir,
        )

        def key_uploaded_meanwhile() -> None:
            service.key = local_key.with_id(17)

        env_store.accepted_key_ids = {17}
        env_store.on_key_rejected = key_uploaded_meanwhile
        _write(workdir, ".env.staging", b"FOO=bar\n")

        result = await sync.push(Selection.single("staging"))

        assert result.ok
        first, second = env_store.put_calls
        assert (first.secret_key_id, second.secret_key_id) == (0, 17)
        assert second.payload.data == first.payload.data
        assert second.payload.secret_key_id == 17
        assert env_store.latest("staging").secret_key_id == 17
        assert result.pushed[0].secret_key_id == 17

    @pytest.mark.asyncio
    async def test_genuine_mismatch_surfaces(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        """Only one retry is made; a persistent rejection is reported."""
        env_store.accepted_key_ids = {17}
        _write(workdir, ".env.staging", b"FOO=bar\n")

        result = await synchroniser.push(Selection.single("staging"))

        assert len(env_store.put_calls) == 2
        assert result.outcome_for("staging").error.kind is SyncErrorKind.TRANSPORT


# =============================================================================
# Push all
# =============================================================================


class TestPushAll:
    """Tests for pushing every env file of the workspace."""

    @pytest.mark.asyncio
    async def test_discovery_and_order(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        """Valid files are pushed in order; bad names and unknown envs fail alone."""
        _write(workdir, ".env", b"D=1\n")
        _write(workdir, ".env.staging", b"S=1\n")
        _write(workdir, ".env.dev", b"V=1\n")
        _write(workdir, ".env.local", b"L=1\n")
        _write(workdir, ".env.Bad", b"B=1\n")
        _write(workdir, ".env.ghost", b"G=1\n")

        result = await synchroniser.push(Selection.all())

        assert [call.env_name for call in env_store.put_calls] == ["dev", "staging"]
        assert [o.env_name for o in result.outcomes] == [".env.Bad", "dev", "ghost", "staging"]
        assert [o.env_name for o in result.failed] == [".env.Bad", "ghost"]
        assert not result.ok
        assert "default" not in env_store.history

    @pytest.mark.asyncio
    async def test_nothing_to_push(self, synchroniser: Synchroniser, env_store: FakeEnvStore):
        result = await synchroniser.push(Selection.all())
        assert result.outcomes == []
        assert result.ok


# =============================================================================
# Pull
# =============================================================================


class TestPull:
    """Tests for pulling a single environment."""

    @pytest.mark.asyncio
    async def test_pull_creates_file(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=3))

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.ok
        assert (workdir / ".env.prod").read_bytes() == b"A=1\n"
        assert cache.get(PROJECT_ID, APP_ID, "prod") == CacheEntry(3, _sha(b"A=1\n"))
        outcome = result.pulled[0]
        assert (outcome.version, outcome.secret_key_id, outcome.plaintext) == (3, 7, b"A=1\n")

    @pytest.mark.asyncio
    async def test_local_modification_blocks_pull(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        """Without --force a locally edited file is left untouched."""
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=3))
        cache.put(PROJECT_ID, APP_ID, "prod", b"A=0\n", version=2)
        path = _write(workdir, ".env.prod", b"A=2\n")

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.outcome_for("prod").error.kind is SyncErrorKind.LOCAL_MODIFIED
        assert path.read_bytes() == b"A=2\n"
        assert cache.get(PROJECT_ID, APP_ID, "prod").version == 2

    @pytest.mark.asyncio
    async def test_force_overwrites(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=3))
        cache.put(PROJECT_ID, APP_ID, "prod", b"A=0\n", version=2)
        path = _write(workdir, ".env.prod", b"A=2\n")

        result = await synchroniser.pull(Selection.single("prod"), force=True)

        assert result.ok
        assert path.read_bytes() == b"A=1\n"
        assert cache.get(PROJECT_ID, APP_ID, "prod") == CacheEntry(3, _sha(b"A=1\n"))

    @pytest.mark.asyncio
    async def test_unmodified_file_is_updated(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        """A file matching the cache is replaced by the newer cloud copy."""
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=3))
        cache.put(PROJECT_ID, APP_ID, "prod", b"A=0\n", version=2)
        path = _write(workdir, ".env.prod", b"A=0\n")

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.ok
        assert path.read_bytes() == b"A=1\n"

    @pytest.mark.asyncio
    async def test_uncached_differing_file_is_local_change(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        workdir: Path,
        project_key: KeyRecord,
    ):
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=3))
        path = _write(workdir, ".env.prod", b"A=2\n")

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.outcome_for("prod").error.kind is SyncErrorKind.LOCAL_MODIFIED
        assert path.read_bytes() == b"A=2\n"

    @pytest.mark.asyncio
    async def test_uncached_identical_file(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        cache: LocalCache,
        workdir: Path,
        project_key: KeyRecord,
    ):
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=3))
        _write(workdir, ".env.prod", b"A=1\n")

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.ok
        assert cache.get(PROJECT_ID, APP_ID, "prod").version == 3

    @pytest.mark.asyncio
    async def test_specific_version(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path, project_key
    ):
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=1))
        env_store.seed("prod", create_payload(b"A=2\n", project_key, version=2))

        result = await synchroniser.pull(Selection.single("prod"), version=1)

        assert result.pulled[0].version == 1
        assert (workdir / ".env.prod").read_bytes() == b"A=1\n"

    @pytest.mark.asyncio
    async def test_missing_version_falls_back_to_latest(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path, project_key
    ):
        env_store.seed("prod", create_payload(b"A=1\n", project_key, version=1))
        env_store.seed("prod", create_payload(b"A=2\n", project_key, version=2))

        result = await synchroniser.pull(Selection.single("prod"), version=5)

        assert result.pulled[0].version == 2
        assert env_store.get_calls == [("prod", 7, 5), ("prod", 7, None)]

    @pytest.mark.asyncio
    async def test_default_environment(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path, project_key
    ):
        """`default` is pulled into .env without an environment lookup."""
        env_store.seed("default", create_payload(b"D=1\n", project_key, version=4))

        result = await synchroniser.pull(Selection.single("default"))

        assert result.pulled[0].env_name == "default"
        assert (workdir / ".env").read_bytes() == b"D=1\n"

    @pytest.mark.asyncio
    async def test_unknown_environment(self, synchroniser: Synchroniser):
        result = await synchroniser.pull(Selection.single("nope"))
        assert result.outcome_for("nope").error.kind is SyncErrorKind.UNKNOWN_ENVIRONMENT

    @pytest.mark.asyncio
    async def test_environment_without_payload(self, synchroniser: Synchroniser):
        result = await synchroniser.pull(Selection.single("staging"))
        assert result.outcome_for("staging").error.kind is SyncErrorKind.UNKNOWN_ENVIRONMENT

    @pytest.mark.asyncio
    async def test_historical_key(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        workdir: Path,
    ):
        """Payloads written before a rotation decrypt with their own key."""
        old_key = create_key(key_id=3)
        write_key_file(workdir, old_key)
        env_store.seed("prod", create_payload(b"OLD=1\n", old_key, version=1))

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.pulled[0].secret_key_id == 3
        assert (workdir / ".env.prod").read_bytes() == b"OLD=1\n"

    @pytest.mark.asyncio
    async def test_unknown_key(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        env_store.seed("prod", create_payload(b"A=1\n", create_key(key_id=99), version=1))

        result = await synchroniser.pull(Selection.single("prod"))

        error = result.outcome_for("prod").error
        assert error.kind is SyncErrorKind.UNKNOWN_KEY
        assert error.key_id == 99
        assert not (workdir / ".env.prod").exists()

    @pytest.mark.asyncio
    async def test_wrong_key(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        workdir: Path,
        project_key: KeyRecord,
    ):
        """Garbage from a mislabelled payload is never written."""
        other = create_key(key_id=1)
        plaintext = b"DATABASE_URL=postgres://db.internal/app\nAPI_TOKEN=abcdef0123456789\n"
        env_store.seed(
            "prod",
            create_payload(plaintext, other, version=1, secret_key_id=project_key.key_id),
        )

        result = await synchroniser.pull(Selection.single("prod"))

        assert result.outcome_for("prod").error.kind is SyncErrorKind.WRONG_KEY
        assert not (workdir / ".env.prod").exists()


# =============================================================================
# Pull all
# =============================================================================


class TestPullAll:
    """Tests for pulling every environment of the app."""

    @pytest.mark.asyncio
    async def test_filters_and_orders(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path, project_key
    ):
        """Removed environments are skipped; `default` comes last."""
        env_store.seed("default", create_payload(b"D=1\n", project_key))
        env_store.seed("staging", create_payload(b"S=1\n", project_key))
        env_store.seed("retired", create_payload(b"R=1\n", project_key))
        env_store.seed("dev", create_payload(b"V=1\n", project_key))

        result = await synchroniser.pull(Selection.all())

        assert [o.env_name for o in result.outcomes] == ["dev", "staging", "default"]
        assert (workdir / ".env").read_bytes() == b"D=1\n"
        assert not (workdir / ".env.retired").exists()

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_run(
        self,
        synchroniser: Synchroniser,
        env_store: FakeEnvStore,
        workdir: Path,
        project_key: KeyRecord,
    ):
        env_store.seed("dev", create_payload(b"V=1\n", project_key))
        env_store.seed("staging", create_payload(b"S=1\n", create_key(key_id=99)))
        env_store.seed("prod", create_payload(b"P=1\n", project_key))

        result = await synchroniser.pull(Selection.all())

        assert [o.env_name for o in result.pulled] == ["dev", "prod"]
        assert [o.env_name for o in result.failed] == ["staging"]

    @pytest.mark.asyncio
    async def test_version_is_ignored(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, project_key
    ):
        env_store.seed("dev", create_payload(b"V=1\n", project_key, version=1))
        env_store.seed("dev", create_payload(b"V=2\n", project_key, version=2))

        result = await synchroniser.pull(Selection.all(), version=1)

        assert result.pulled[0].version == 2

    @pytest.mark.asyncio
    async def test_listing_failure_aborts(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore
    ):
        env_store.list_error = RemoteConnectionError("refused")

        with pytest.raises(SyncError) as exc_info:
            await synchroniser.pull(Selection.all())

        assert exc_info.value.kind is SyncErrorKind.TRANSPORT


# =============================================================================
# Round trip
# =============================================================================


class TestRoundTrip:
    """Tests for push followed by pull."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        [
            b"",
            b"NO_TRAILING_NEWLINE=1",
            b"# comment\n\nA=\"quoted value\"\nB=x=y\r\n",
            "UNICODE=café\n".encode(),
            b"PS1=\x1b[32m$ \x1b[0m\n",
        ],
    )
    async def test_bytes_survive(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path, content: bytes
    ):
        path = _write(workdir, ".env.dev", content)
        await synchroniser.push(Selection.single("dev"))
        path.unlink()

        result = await synchroniser.pull(Selection.single("dev"))

        assert result.ok
        assert path.read_bytes() == content

    @pytest.mark.asyncio
    async def test_empty_file_metadata(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        _write(workdir, ".env.dev", b"")
        await synchroniser.push(Selection.single("dev"))

        payload = env_store.put_calls[0].payload
        assert (payload.count_variables, payload.size) == (0, "0 bytes")

    @pytest.mark.asyncio
    async def test_list_versions(
        self, synchroniser: Synchroniser, env_store: FakeEnvStore, workdir: Path
    ):
        _write(workdir, ".env.dev", b"A=1\n")
        await synchroniser.push(Selection.single("dev"))
        _write(workdir, ".env.dev", b"A=2\n")
        await synchroniser.push(Selection.single("dev"))

        versions = await synchroniser.list_versions("Dev")

        assert [v.version for v in versions] == [2, 1]
        assert all(v.secret_key_id == 7 for v in versions)

    def test_environment_refs(self):
        named = NamedEnvironment(id="env_1", alternate_id="qa")
        assert not named.is_default
        assert DEFAULT_ENVIRONMENT.is_default
        assert DEFAULT_ENVIRONMENT.env_name == "default"
