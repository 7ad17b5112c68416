"""Plaintext-hash and version cache of synchronised environments.

The cache lives in the `database` subtree of the user-level `.hx`:

    {"database": {"secrets": {<project>: {<app>: {<env>: {"version": 3, "hash": "..."}}}}}}

Other keys of the file are preserved on every write. Writes take an
advisory lock on a `.hx.lock` sidecar and replace the file atomically;
reads take no lock and may observe a stale, but never a partial, cache.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from envsync.core.errors import CacheError, CacheErrorKind
from envsync.core.files import atomic_write_text, locked_file
from envsync.models import CacheEntry, KeyRecord
from envsync.services.envfile import content_hash

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 2.0


class LocalCache:
    """Content-hash cache keyed by (project, app, env name).

    Example usage:
        cache = LocalCache(Path.home() / ".hx")
        entry = cache.get("proj_1", "app_1", "staging")
        cache.put("proj_1", "app_1", "staging", b"FOO=bar\\n", version=2)
    """

    def __init__(self, path: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self._path = path
        self._lock_timeout = lock_timeout

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CacheError(
                f"cache file {self._path} is not valid JSON",
                kind=CacheErrorKind.CORRUPT,
                path=str(self._path),
            ) from e
        if not isinstance(data, dict):
            raise CacheError(
                f"cache file {self._path} must hold a JSON object",
                kind=CacheErrorKind.CORRUPT,
                path=str(self._path),
            )
        return data

    def _database(self, data: dict[str, Any]) -> dict[str, Any]:
        database = data.get("database")
        if database is None:
            return {}
        if not isinstance(database, dict):
            raise CacheError(
                "cache 'database' entry must be an object",
                kind=CacheErrorKind.CORRUPT,
                path=str(self._path),
            )
        return database

    def _section(
        self, database: dict[str, Any], *path: str, create: bool = False
    ) -> dict[str, Any]:
        """Nested object at *path* below `database`, empty (or created) if absent.

        Raises:
            CacheError: If a value along the path is not an object.
        """
        section = database
        for depth, name in enumerate(path, start=1):
            value = section.get(name)
            if value is None:
                if not create:
                    return {}
                value = section[name] = {}
            if not isinstance(value, dict):
                raise CacheError(
                    f"cache entry 'database.{'.'.join(path[:depth])}' must be an object",
                    kind=CacheErrorKind.CORRUPT,
                    path=str(self._path),
                )
            section = value
        return section

    def _update(self, mutate: Callable[[dict[str, Any]], None]) -> None:
        """Apply *mutate* to the loaded config under the lock and write it back."""
        try:
            with locked_file(self._path, timeout=self._lock_timeout):
                data = self._load()
                database = self._database(data)
                mutate(database)
                data["database"] = database
                atomic_write_text(self._path, json.dumps(data, indent=2) + "\n")
        except TimeoutError as e:
            raise CacheError(
                f"cache file {self._path} is locked by another envsync process",
                kind=CacheErrorKind.LOCKED,
                path=str(self._path),
            ) from e

    # -------------------------------------------------------------------------
    # Environment entries
    # -------------------------------------------------------------------------

    def get(self, project_id: str, app_id: str, env_name: str) -> CacheEntry | None:
        """Cached entry for an environment, or None if it was never synchronised.

        Raises:
            CacheError: If the cache file is corrupt.
        """
        app_entries = self._section(self._database(self._load()), "secrets", project_id, app_id)
        entry = app_entries.get(env_name)
        if not isinstance(entry, dict):
            return None
        try:
            return CacheEntry(version=int(entry["version"]), hash=str(entry["hash"]))
        except (KeyError, TypeError, ValueError) as e:
            raise CacheError(
                f"malformed cache entry for {project_id}/{app_id}/{env_name}",
                kind=CacheErrorKind.CORRUPT,
                path=str(self._path),
            ) from e

    def put(
        self,
        project_id: str,
        app_id: str,
        env_name: str,
        plaintext: str | bytes,
        version: int,
    ) -> CacheEntry:
        """Record the plaintext hash and version accepted for an environment.

        Raises:
            CacheError: If the lock cannot be taken in time or the file is corrupt.
        """
        entry = CacheEntry(version=version, hash=content_hash(plaintext))

        def mutate(database: dict[str, Any]) -> None:
            app_entries = self._section(database, "secrets", project_id, app_id, create=True)
            app_entries[env_name] = {"version": entry.version, "hash": entry.hash}

        self._update(mutate)
        logger.debug(
            "Cached %s/%s/%s at version %d (hash %s)",
            project_id,
            app_id,
            env_name,
            version,
            entry.hash[:16],
        )
        return entry

    # -------------------------------------------------------------------------
    # Pending rotation key
    # -------------------------------------------------------------------------

    def get_pending_rotation(self, project_id: str) -> KeyRecord | None:
        """Key minted by an unfinished rotation of the project, if any."""
        pending = self._section(self._database(self._load()), "rotations").get(project_id)
        if not pending:
            return None
        try:
            return KeyRecord.model_validate(pending)
        except ValueError as e:
            raise CacheError(
                f"malformed pending rotation for {project_id}",
                kind=CacheErrorKind.CORRUPT,
                path=str(self._path),
            ) from e

    def put_pending_rotation(self, project_id: str, key: KeyRecord) -> None:
        """Remember a rotation key until the rotation is published."""

        def mutate(database: dict[str, Any]) -> None:
            self._section(database, "rotations", create=True)[project_id] = key.to_file_dict()

        self._update(mutate)

    def clear_pending_rotation(self, project_id: str) -> None:
        self._update(lambda database: self._section(database, "rotations").pop(project_id, None))
