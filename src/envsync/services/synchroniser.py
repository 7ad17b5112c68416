"""Push and pull of env files against the remote env store.

Push reads local env files, skips those whose plaintext hash matches the
local cache, refuses to overwrite a newer cloud version, encrypts, and
writes `version = prior + 1`. Pull fetches payloads, decrypts them with the
key they were written with, refuses to clobber locally modified files unless
forced, and writes files atomically.

Per-environment failures are collected into the result and do not stop the
run. Whole-run failures (key store, cache lock, listing environments) raise.

Within a run, environments are processed in lexicographic order with
`default` last.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from envsync.core.errors import (
    CipherError,
    EnvNameError,
    KeyStoreError,
    KeyStoreErrorKind,
    RemoteBadRequestError,
    RemoteConflictError,
    RemoteError,
    RemoteNotFoundError,
    SyncError,
    SyncErrorKind,
)
from envsync.models import (
    DEFAULT_ENV_NAME,
    EnvironmentRef,
    EnvPayload,
    KeyRecord,
    SyncDirection,
    SyncPlan,
)
from envsync.services import cipher
from envsync.services.env_client import EnvClient
from envsync.services.envfile import (
    content_hash,
    count_variables,
    discover_env_files,
    env_name,
    env_name_from_file,
    file_name_for,
    is_well_formed,
    read_env_file,
    size_label,
    write_env_file,
)
from envsync.services.keystore import KeyStore
from envsync.services.local_cache import LocalCache

logger = logging.getLogger(__name__)


# =============================================================================
# Selection
# =============================================================================


class SelectionMode(str, Enum):
    SINGLE = "single"
    ALL = "all"
    DEFAULT = "default"


@dataclass(frozen=True)
class Selection:
    """Which environments a push or pull covers."""

    mode: SelectionMode
    env_name: str | None = None

    @classmethod
    def single(cls, name: str) -> Selection:
        canonical = env_name(name)
        if canonical == DEFAULT_ENV_NAME:
            return cls(SelectionMode.DEFAULT)
        return cls(SelectionMode.SINGLE, canonical)

    @classmethod
    def all(cls) -> Selection:
        return cls(SelectionMode.ALL)

    @classmethod
    def default(cls) -> Selection:
        return cls(SelectionMode.DEFAULT)


def env_sort_key(name: str) -> tuple[bool, str]:
    """Lexicographic order with `default` last."""
    return (name == DEFAULT_ENV_NAME, name)


def filter_envs_by_current_environments(
    payloads: Iterable[EnvPayload],
    environments: Iterable[EnvironmentRef],
) -> list[EnvPayload]:
    """Drop payloads whose environment no longer exists in the project.

    Payloads without an environment back-pointer belong to `default` and
    are always kept. Input order is preserved.
    """
    known = {environment.alternate_id for environment in environments}
    return [
        payload
        for payload in payloads
        if payload.environment is None or payload.environment.alternate_id in known
    ]


# =============================================================================
# Results
# =============================================================================


class OutcomeStatus(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


# Skip reasons
NO_LOCAL_CHANGE = "no local change"
ALREADY_UP_TO_DATE = "already up to date"


@dataclass
class EnvOutcome:
    """What happened to one environment."""

    env_name: str
    status: OutcomeStatus
    reason: str = ""
    version: int | None = None
    secret_key_id: int | None = None
    error: SyncError | None = None
    plaintext: bytes | None = field(default=None, repr=False)

    @classmethod
    def failed(cls, error: SyncError) -> EnvOutcome:
        return cls(
            env_name=error.env_name or "",
            status=OutcomeStatus.FAILED,
            reason=error.message,
            error=error,
        )


@dataclass
class SyncResult:
    """Per-environment outcomes of one push or pull."""

    plan: SyncPlan
    outcomes: list[EnvOutcome] = field(default_factory=list)

    def add(self, outcome: EnvOutcome) -> EnvOutcome:
        self.outcomes.append(outcome)
        return outcome

    def _with_status(self, status: OutcomeStatus) -> list[EnvOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def synced(self) -> list[EnvOutcome]:
        return self._with_status(OutcomeStatus.SYNCED)

    @property
    def skipped(self) -> list[EnvOutcome]:
        return self._with_status(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> list[EnvOutcome]:
        return self._with_status(OutcomeStatus.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def outcome_for(self, name: str) -> EnvOutcome | None:
        return next((o for o in self.outcomes if o.env_name == name), None)


@dataclass
class PushResult(SyncResult):
    plan: SyncPlan = field(default_factory=lambda: SyncPlan(SyncDirection.PUSH))

    @property
    def pushed(self) -> list[EnvOutcome]:
        return self.synced


@dataclass
class PullResult(SyncResult):
    plan: SyncPlan = field(default_factory=lambda: SyncPlan(SyncDirection.PULL))

    @property
    def pulled(self) -> list[EnvOutcome]:
        return self.synced


# =============================================================================
# Synchroniser
# =============================================================================


class Synchroniser:
    """Push/pull orchestration for one app of one project.

    Example usage:
        sync = Synchroniser(
            env_client, keystore, cache,
            organization_id="org_1", project_id="proj_1", app_id="app_1",
            workdir=Path.cwd(),
        )
        result = await sync.push(Selection.all())
    """

    def __init__(
        self,
        env_client: EnvClient,
        keystore: KeyStore,
        cache: LocalCache,
        *,
        organization_id: str,
        project_id: str,
        app_id: str,
        workdir: Path,
    ) -> None:
        self._client = env_client
        self._keystore = keystore
        self._cache = cache
        self._org = organization_id
        self._project = project_id
        self._app = app_id
        self._workdir = workdir

    def _path_for(self, name: str) -> Path:
        return self._workdir / file_name_for(name)

    async def _list_environments(self) -> list[EnvironmentRef]:
        try:
            return list(await self._client.list_all_environments(self._org, self._project))
        except RemoteError as e:
            raise SyncError(
                f"cannot list environments of project {self._project}: {e.message}",
                kind=SyncErrorKind.TRANSPORT,
            ) from e

    async def _key_for(self, key_id: int | None, current: KeyRecord, name: str) -> KeyRecord:
        if key_id is None or key_id == current.key_id:
            return current
        try:
            return await self._keystore.by_id(key_id)
        except KeyStoreError as e:
            if e.kind is not KeyStoreErrorKind.NOT_FOUND:
                raise
            raise SyncError(
                f"{name}: key {key_id} is not available",
                kind=SyncErrorKind.UNKNOWN_KEY,
                env_name=name,
                key_id=key_id,
            ) from e

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    def _push_selection(self, selection: Selection, result: PushResult) -> list[str]:
        if selection.mode is SelectionMode.DEFAULT:
            raise SyncError(
                "pushing the default environment is not supported",
                kind=SyncErrorKind.UNSUPPORTED,
                env_name=DEFAULT_ENV_NAME,
            )
        if selection.mode is SelectionMode.SINGLE:
            return [selection.env_name or ""]

        names = []
        for file_name in discover_env_files(self._workdir):
            try:
                name = env_name_from_file(file_name)
            except EnvNameError as e:
                result.add(
                    EnvOutcome.failed(
                        SyncError(
                            f"{file_name}: {e.message}",
                            kind=SyncErrorKind.UNKNOWN_ENVIRONMENT,
                            env_name=file_name,
                        )
                    )
                )
                continue
            if name == DEFAULT_ENV_NAME:
                logger.debug("Not pushing %s: default has no remote endpoint", file_name)
                continue
            names.append(name)
        return names

    async def push(self, selection: Selection) -> PushResult:
        """Upload changed env files.

        Raises:
            SyncError: UNSUPPORTED for the default environment, TRANSPORT if the
                project's environments cannot be listed.
            KeyStoreError: The current key cannot be resolved.
            CacheError: The local cache is locked or corrupt.
        """
        result = PushResult()
        names = self._push_selection(selection, result)

        environments = await self._list_environments()
        known = {environment.alternate_id for environment in environments}
        current = await self._keystore.current()

        for name in sorted(names, key=env_sort_key):
            if name not in known:
                result.add(
                    EnvOutcome.failed(
                        SyncError(
                            f"{name}: environment does not exist in project {self._project}",
                            kind=SyncErrorKind.UNKNOWN_ENVIRONMENT,
                            env_name=name,
                        )
                    )
                )
                continue
            try:
                outcome = await self._push_one(name, current, result.plan)
            except SyncError as e:
                logger.warning("Push of %s failed: %s", name, e.message)
                outcome = EnvOutcome.failed(e)
            result.add(outcome)

        logger.info(
            "Push finished: %d pushed, %d skipped, %d failed",
            len(result.pushed),
            len(result.skipped),
            len(result.failed),
        )
        return result

    async def _fetch_cloud(self, name: str, current: KeyRecord) -> EnvPayload | None:
        try:
            return await self._client.get_env(self._org, self._app, name, key_id=current.key_id)
        except RemoteNotFoundError:
            return None
        except RemoteError as e:
            raise SyncError(
                f"{name}: cannot fetch cloud copy: {e.message}",
                kind=SyncErrorKind.TRANSPORT,
                env_name=name,
            ) from e

    async def _put(self, name: str, key_id: int, payload: EnvPayload) -> None:
        await self._client.put_env(self._org, self._app, name, key_id, payload)

    async def _version_after_conflict(self, name: str, current: KeyRecord, attempted: int) -> int:
        """Cloud version that won a conflicting write.

        A conflict means another writer already stored *attempted*, so that
        is the floor when the cloud copy cannot be re-read.
        """
        try:
            cloud = await self._client.get_env(self._org, self._app, name, key_id=current.key_id)
        except RemoteError as e:
            logger.debug("Cannot re-read %s after conflict: %s", name, e.message)
            return attempted
        return max(cloud.version or 0, attempted)

    async def _push_one(self, name: str, current: KeyRecord, plan: SyncPlan) -> EnvOutcome:
        plaintext = read_env_file(self._path_for(name))
        if plaintext is None:
            raise SyncError(
                f"{name}: {file_name_for(name)} does not exist",
                kind=SyncErrorKind.MISSING_FILE,
                env_name=name,
            )

        digest = content_hash(plaintext)
        cached = self._cache.get(self._project, self._app, name)
        if cached is not None and cached.hash == digest:
            logger.debug("Skipping %s: no local change (hash %s)", name, digest[:16])
            plan.add(name, NO_LOCAL_CHANGE, cached.version)
            return EnvOutcome(
                name, OutcomeStatus.SKIPPED, NO_LOCAL_CHANGE, version=cached.version
            )

        local_version = cached.version if cached is not None else 0
        cloud = await self._fetch_cloud(name, current)
        if cloud is not None:
            cloud_version = cloud.version or 0
            if cloud_version > local_version:
                raise SyncError.cloud_ahead(name, cloud_version, local_version)
            prior = cloud_version
            write_key_id = (
                cloud.secret_key_id if cloud.secret_key_id is not None else current.key_id
            )
        else:
            prior = 0
            write_key_id = current.key_id

        version = prior + 1
        plan.add(name, "local change" if cloud is not None else "first push", version)
        write_key = await self._key_for(write_key_id, current, name)

        text = plaintext.decode("utf-8", errors="replace")
        payload = EnvPayload(
            data=cipher.encrypt(plaintext, write_key),
            count_variables=count_variables(text),
            size=size_label(plaintext),
            secret_key_id=write_key_id,
            version=version,
        )

        try:
            try:
                await self._put(name, write_key_id, payload)
            except RemoteBadRequestError as e:
                if not e.key_id_mismatch:
                    raise
                refreshed = await self._keystore.refresh()
                logger.warning(
                    "Key %d rejected for %s; retrying once with key %d",
                    write_key_id,
                    name,
                    refreshed.key_id,
                )
                write_key_id = refreshed.key_id
                payload = payload.model_copy(update={"secret_key_id": write_key_id})
                await self._put(name, write_key_id, payload)
        except RemoteConflictError as e:
            cloud_version = await self._version_after_conflict(name, current, version)
            raise SyncError.cloud_ahead(name, cloud_version, local_version) from e
        except RemoteError as e:
            raise SyncError(
                f"{name}: upload failed: {e.message}",
                kind=SyncErrorKind.TRANSPORT,
                env_name=name,
            ) from e

        self._cache.put(self._project, self._app, name, plaintext, version)
        logger.info("Pushed %s version %d (hash %s)", name, version, digest[:16])
        return EnvOutcome(
            name,
            OutcomeStatus.SYNCED,
            "pushed",
            version=version,
            secret_key_id=write_key_id,
        )

    # -------------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------------

    async def _fetch_single(self, name: str, current: KeyRecord, version: int | None) -> EnvPayload:
        try:
            try:
                return await self._client.get_env(
                    self._org, self._app, name, key_id=current.key_id, version=version
                )
            except RemoteNotFoundError:
                if version is None:
                    raise
                logger.warning(
                    "No version %d found for environment %s; pulling the latest version",
                    version,
                    name,
                )
                return await self._client.get_env(self._org, self._app, name, key_id=current.key_id)
        except RemoteNotFoundError as e:
            raise SyncError(
                f"{name}: nothing has been pushed to this environment yet",
                kind=SyncErrorKind.UNKNOWN_ENVIRONMENT,
                env_name=name,
            ) from e
        except RemoteError as e:
            raise SyncError(
                f"{name}: cannot fetch: {e.message}",
                kind=SyncErrorKind.TRANSPORT,
                env_name=name,
            ) from e

    async def _pull_payloads(
        self, selection: Selection, current: KeyRecord, version: int | None, result: PullResult
    ) -> list[EnvPayload]:
        if selection.mode is SelectionMode.ALL:
            try:
                payloads = await self._client.list_all_envs(self._org, self._app)
            except RemoteError as e:
                raise SyncError(
                    f"cannot list envs of app {self._app}: {e.message}",
                    kind=SyncErrorKind.TRANSPORT,
                ) from e
            environments = await self._list_environments()
            kept = filter_envs_by_current_environments(payloads, environments)
            return sorted(kept, key=lambda p: env_sort_key(p.env_name))

        name = DEFAULT_ENV_NAME if selection.mode is SelectionMode.DEFAULT else selection.env_name
        try:
            if name != DEFAULT_ENV_NAME:
                try:
                    ref = await self._client.get_environment(self._org, self._project, name)
                except RemoteError as e:
                    raise SyncError(
                        f"{name}: cannot look up environment: {e.message}",
                        kind=SyncErrorKind.TRANSPORT,
                        env_name=name,
                    ) from e
                if ref is None:
                    raise SyncError(
                        f"{name}: environment does not exist in project {self._project}",
                        kind=SyncErrorKind.UNKNOWN_ENVIRONMENT,
                        env_name=name,
                    )
            return [await self._fetch_single(name, current, version)]
        except SyncError as e:
            logger.warning("Pull of %s failed: %s", name, e.message)
            result.add(EnvOutcome.failed(e))
            return []

    async def pull(
        self,
        selection: Selection,
        *,
        force: bool = False,
        version: int | None = None,
    ) -> PullResult:
        """Download, decrypt and write env files.

        Args:
            selection: Environments to pull.
            force: Overwrite files modified since the last sync.
            version: Specific version to fetch; only for a single environment.
                Falls back to the latest version if it does not exist.

        Raises:
            SyncError: TRANSPORT if the app's payloads cannot be listed.
            KeyStoreError: The current key cannot be resolved.
            CacheError: The local cache is locked or corrupt.
        """
        result = PullResult()
        current = await self._keystore.current()
        if selection.mode is SelectionMode.ALL and version is not None:
            logger.warning("Ignoring version %d when pulling all environments", version)
            version = None

        payloads = await self._pull_payloads(selection, current, version, result)
        for payload in payloads:
            name = payload.env_name
            try:
                outcome = await self._pull_one(payload, current, force, result.plan)
            except SyncError as e:
                logger.warning("Pull of %s failed: %s", name, e.message)
                outcome = EnvOutcome.failed(e)
            result.add(outcome)

        logger.info(
            "Pull finished: %d pulled, %d failed",
            len(result.pulled),
            len(result.failed),
        )
        return result

    async def _pull_one(
        self, payload: EnvPayload, current: KeyRecord, force: bool, plan: SyncPlan
    ) -> EnvOutcome:
        name = payload.env_name
        try:
            path = self._path_for(name)
        except EnvNameError as e:
            raise SyncError(
                e.message, kind=SyncErrorKind.UNKNOWN_ENVIRONMENT, env_name=name
            ) from e

        key = await self._key_for(payload.secret_key_id, current, name)
        try:
            plaintext = cipher.decrypt(payload.data, key)
        except CipherError as e:
            raise SyncError(
                f"{name}: cannot decrypt: {e.message}",
                kind=SyncErrorKind.WRONG_KEY,
                env_name=name,
                key_id=key.key_id,
            ) from e
        if not is_well_formed(plaintext):
            raise SyncError(
                f"{name}: decrypted data is not an env file; wrong key {key.key_id}?",
                kind=SyncErrorKind.WRONG_KEY,
                env_name=name,
                key_id=key.key_id,
            )

        cloud_version = payload.version or 0
        local = read_env_file(path)
        cached = self._cache.get(self._project, self._app, name)
        if local is not None and not force:
            baseline = cached.hash if cached is not None else content_hash(plaintext)
            if content_hash(local) != baseline:
                raise SyncError(
                    f"{name}: {path.name} was modified locally; use --force to overwrite",
                    kind=SyncErrorKind.LOCAL_MODIFIED,
                    env_name=name,
                )

        plan.add(name, "overwrite" if local is not None else "create", cloud_version)
        if local != plaintext:
            write_env_file(path, plaintext)
        self._cache.put(self._project, self._app, name, plaintext, cloud_version)
        logger.info("Pulled %s version %d into %s", name, cloud_version, path.name)
        return EnvOutcome(
            name,
            OutcomeStatus.SYNCED,
            "pulled",
            version=cloud_version,
            secret_key_id=key.key_id,
            plaintext=plaintext,
        )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def list_versions(
        self, name: str, page_num: int = 1, page_size: int | None = None
    ) -> list[EnvPayload]:
        """Stored versions of an environment (metadata only, nothing is decrypted)."""
        return await self._client.list_env_versions(
            self._org, self._app, env_name(name), page_num, page_size
        )
