"""Resolution, caching and minting of the project key record.

The current key of a project comes from the first provider that has one:

1. the remote key service;
2. a `.hxkey` file in the working directory or its closest ancestor
   (monorepos share one key from their root);
3. the `.hxkey` in the user's home directory.

If none has a key, a new record is minted and persisted, either to the
working directory `.hxkey` (local secret mode) or to the key service.
Old records stay addressable by id for decrypting pre-rotation payloads.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from envsync.core.config import KEY_FILE_NAME
from envsync.core.errors import (
    KeyStoreError,
    KeyStoreErrorKind,
    RemoteError,
    RemoteNotFoundError,
)
from envsync.core.files import atomic_write_text
from envsync.models import KeyRecord
from envsync.services.key_service import KeyServiceClient
from envsync.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


# =============================================================================
# Providers
# =============================================================================


class KeyProvider(Protocol):
    """A source of the current key record of a project."""

    name: str

    async def load(self, organization_id: str, project_id: str) -> KeyRecord | None: ...


class RemoteKeyProvider:
    """Current key as held by the key service."""

    name = "key service"

    def __init__(self, client: KeyServiceClient, retry: RetryPolicy | None = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    async def load(self, organization_id: str, project_id: str) -> KeyRecord | None:
        try:
            return await self._retry.run(
                lambda: self._client.get_key(organization_id, project_id),
                f"get key for {project_id}",
            )
        except RemoteNotFoundError:
            return None
        except RemoteError as e:
            raise KeyStoreError(
                f"key service unavailable: {e.message}", kind=KeyStoreErrorKind.TRANSPORT
            ) from e


def read_key_file(path: Path) -> KeyRecord | None:
    """Parse a `.hxkey` file; None if it does not exist.

    Raises:
        KeyStoreError: If the file exists but does not hold a key record.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return KeyRecord.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise KeyStoreError(
            f"{path} does not contain a valid key record", kind=KeyStoreErrorKind.NOT_FOUND
        ) from e


def write_key_file(path: Path, key: KeyRecord) -> None:
    atomic_write_text(path, json.dumps(key.to_file_dict(), indent=2) + "\n")
    logger.info("Wrote key %d to %s", key.key_id, path)


class KeyFileProvider:
    """Key read from the first existing `.hxkey` among candidate paths."""

    def __init__(self, candidates: list[Path], name: str = "key file") -> None:
        self.name = name
        self._candidates = candidates
        self.source: Path | None = None

    @classmethod
    def nearest(cls, start_dir: Path) -> KeyFileProvider:
        """Search `start_dir` and every ancestor, closest first."""
        start = start_dir.resolve()
        return cls([d / KEY_FILE_NAME for d in (start, *start.parents)], name="workspace key file")

    @classmethod
    def home(cls, home_dir: Path) -> KeyFileProvider:
        return cls([home_dir / KEY_FILE_NAME], name="home key file")

    async def load(self, organization_id: str, project_id: str) -> KeyRecord | None:
        for path in self._candidates:
            record = read_key_file(path)
            if record is not None:
                self.source = path
                return record
        return None

    def records(self) -> list[KeyRecord]:
        """Every readable record among the candidates, closest first."""
        found = []
        for path in self._candidates:
            record = read_key_file(path)
            if record is not None:
                found.append(record)
        return found


# =============================================================================
# Key store
# =============================================================================


class KeyStore:
    """First-match resolver over key providers, with an in-memory cache.

    Example usage:
        store = KeyStore.for_workspace(
            "org_1", "proj_1", cwd=Path.cwd(), home_dir=Path.home(), key_service=client
        )
        key = await store.current()
        old_key = await store.by_id(payload.secret_key_id)
    """

    def __init__(
        self,
        organization_id: str,
        project_id: str,
        providers: list[KeyProvider],
        *,
        key_service: KeyServiceClient | None = None,
        local_secret: bool = False,
        local_key_path: Path,
    ) -> None:
        self._organization_id = organization_id
        self._project_id = project_id
        self._providers = providers
        self._key_service = key_service
        self._local_secret = local_secret
        self._local_key_path = local_key_path
        self._current: KeyRecord | None = None
        self._by_id: dict[int, KeyRecord] = {}

    @classmethod
    def for_workspace(
        cls,
        organization_id: str,
        project_id: str,
        *,
        cwd: Path,
        home_dir: Path,
        key_service: KeyServiceClient | None = None,
        local_secret: bool = False,
        retry: RetryPolicy | None = None,
    ) -> KeyStore:
        """Standard provider chain: key service, nearest `.hxkey`, home `.hxkey`."""
        providers: list[KeyProvider] = []
        if key_service is not None:
            providers.append(RemoteKeyProvider(key_service, retry))
        providers.append(KeyFileProvider.nearest(cwd))
        providers.append(KeyFileProvider.home(home_dir))
        return cls(
            organization_id,
            project_id,
            providers,
            key_service=key_service,
            local_secret=local_secret,
            local_key_path=cwd / KEY_FILE_NAME,
        )

    @property
    def project_id(self) -> str:
        return self._project_id

    def remember(self, key: KeyRecord) -> None:
        """Make a record addressable by id without making it current."""
        self._by_id[key.key_id] = key

    async def _resolve(self) -> KeyRecord | None:
        for provider in self._providers:
            record = await provider.load(self._organization_id, self._project_id)
            if record is not None:
                logger.debug("Using key %d from %s", record.key_id, provider.name)
                return record
        return None

    async def current(self) -> KeyRecord:
        """The project's current key record, minting one on first use.

        Raises:
            KeyStoreError: TRANSPORT if the key service fails, CANNOT_PERSIST
                if a newly minted key cannot be stored.
        """
        if self._current is not None:
            return self._current
        record = await self._resolve()
        if record is None:
            record = await self._persist_new(KeyRecord.generate())
        self._current = record
        self.remember(record)
        return record

    async def refresh(self) -> KeyRecord:
        """Forget the cached current record and resolve it again."""
        self._current = None
        return await self.current()

    def mint(self) -> KeyRecord:
        """A fresh record that is neither persisted nor current."""
        return KeyRecord.generate()

    async def _persist_new(self, key: KeyRecord) -> KeyRecord:
        logger.info("No key found for project %s; creating one", self._project_id)
        if self._local_secret:
            write_key_file(self._local_key_path, key)
            return key
        if self._key_service is None:
            raise KeyStoreError(
                "no key service configured to store the new project key",
                kind=KeyStoreErrorKind.CANNOT_PERSIST,
            )
        try:
            return await self._key_service.save_key(self._organization_id, self._project_id, key)
        except RemoteError as e:
            raise KeyStoreError(
                f"cannot store new project key: {e.message}",
                kind=KeyStoreErrorKind.CANNOT_PERSIST,
            ) from e

    async def put(self, key: KeyRecord) -> KeyRecord:
        """Publish a record as the project's current key.

        Returns:
            The canonical record; the key service may assign a new id.

        Raises:
            KeyStoreError: CANNOT_PERSIST if the record cannot be stored.
        """
        if self._local_secret:
            write_key_file(self._local_key_path, key)
            canonical = key
        else:
            if self._key_service is None:
                raise KeyStoreError(
                    "no key service configured to publish the project key",
                    kind=KeyStoreErrorKind.CANNOT_PERSIST,
                )
            try:
                canonical = await self._key_service.save_key(
                    self._organization_id, self._project_id, key
                )
            except RemoteError as e:
                raise KeyStoreError(
                    f"cannot publish project key: {e.message}",
                    kind=KeyStoreErrorKind.CANNOT_PERSIST,
                ) from e
        self._current = canonical
        self.remember(canonical)
        return canonical

    async def by_id(self, key_id: int) -> KeyRecord:
        """A record by id, current or historical.

        Raises:
            KeyStoreError: NOT_FOUND if no provider knows the id.
        """
        if key_id in self._by_id:
            return self._by_id[key_id]
        current = await self.current()
        if current.key_id == key_id:
            return current

        for provider in self._providers:
            if isinstance(provider, KeyFileProvider):
                candidates = provider.records()
            else:
                record = await provider.load(self._organization_id, self._project_id)
                candidates = [record] if record is not None else []
            for record in candidates:
                self.remember(record)
                if record.key_id == key_id:
                    return record

        raise KeyStoreError(
            f"key {key_id} is not known for project {self._project_id}",
            kind=KeyStoreErrorKind.NOT_FOUND,
            key_id=key_id,
        )
