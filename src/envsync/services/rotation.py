"""Project key rotation.

Protocol:

1. Pull every environment with force, so local files and the cache match
   the cloud. Any pull failure aborts the rotation before anything is
   written.
2. Mint a new key record, or reuse the one left by an interrupted rotation.
   The pending key is saved in the local cache before any payload uses it.
3. Re-encrypt each environment under the new key and write it as
   `version + 1`. A conflict means another writer got there first and
   aborts the rotation. Environments already rewritten stay on the new key.
4. Publish the new key as the project's current key.

The remote is never rolled back, so a failed rotation is visible there.
Re-running it resumes: environments already stored under the pending key
are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from envsync.core.errors import (
    RemoteConflictError,
    RemoteError,
    RotationError,
    RotationErrorKind,
)
from envsync.models import EnvPayload, KeyRecord
from envsync.services import cipher
from envsync.services.env_client import EnvClient
from envsync.services.envfile import count_variables, size_label
from envsync.services.keystore import KeyStore
from envsync.services.local_cache import LocalCache
from envsync.services.synchroniser import EnvOutcome, Selection, Synchroniser, env_sort_key

logger = logging.getLogger(__name__)


@dataclass
class RotationResult:
    """Outcome of a completed rotation."""

    previous_key_id: int
    key: KeyRecord = field(repr=False)
    rotated: list[str] = field(default_factory=list)
    already_rotated: list[str] = field(default_factory=list)

    @property
    def key_id(self) -> int:
        return self.key.key_id


class RotationCoordinator:
    """Re-encrypts every environment of an app under a fresh project key.

    Example usage:
        coordinator = RotationCoordinator(synchroniser, env_client, keystore, cache, ...)
        result = await coordinator.rotate()
    """

    def __init__(
        self,
        synchroniser: Synchroniser,
        env_client: EnvClient,
        keystore: KeyStore,
        cache: LocalCache,
        *,
        organization_id: str,
        project_id: str,
        app_id: str,
    ) -> None:
        self._sync = synchroniser
        self._client = env_client
        self._keystore = keystore
        self._cache = cache
        self._org = organization_id
        self._project = project_id
        self._app = app_id

    async def rotate(self) -> RotationResult:
        """Run the full rotation protocol.

        Raises:
            RotationError: ABORTED if the initial pull fails, RACED if another
                writer updates an environment mid-rotation, TRANSPORT on any
                other remote failure.
            KeyStoreError: The new key cannot be published.
            CacheError: The local cache is locked or corrupt.
        """
        pending = self._cache.get_pending_rotation(self._project)
        if pending is not None:
            logger.info("Resuming interrupted rotation to key %d", pending.key_id)
            self._keystore.remember(pending)

        previous = await self._keystore.current()
        pulled = await self._sync.pull(Selection.all(), force=True)
        if not pulled.ok:
            names = ", ".join(o.env_name for o in pulled.failed)
            raise RotationError(
                f"rotation aborted: could not pull {names}",
                kind=RotationErrorKind.ABORTED,
            )

        new_key = pending or self._keystore.mint()
        if pending is None:
            self._cache.put_pending_rotation(self._project, new_key)
            self._keystore.remember(new_key)
            logger.info("Minted key %d to replace key %d", new_key.key_id, previous.key_id)

        result = RotationResult(previous_key_id=previous.key_id, key=new_key)
        for outcome in sorted(pulled.pulled, key=lambda o: env_sort_key(o.env_name)):
            if outcome.secret_key_id == new_key.key_id:
                logger.debug("%s already uses key %d", outcome.env_name, new_key.key_id)
                result.already_rotated.append(outcome.env_name)
                continue
            await self._rewrite(outcome, new_key)
            result.rotated.append(outcome.env_name)

        published = await self._keystore.put(new_key)
        if published.key_id != new_key.key_id:
            logger.warning(
                "Key service stored the new key as %d; payloads reference %d",
                published.key_id,
                new_key.key_id,
            )
            self._keystore.remember(new_key)
        self._cache.clear_pending_rotation(self._project)
        result.key = published
        logger.info(
            "Rotation to key %d complete: %d rewritten, %d already rotated",
            published.key_id,
            len(result.rotated),
            len(result.already_rotated),
        )
        return result

    async def _rewrite(self, outcome: EnvOutcome, new_key: KeyRecord) -> None:
        name = outcome.env_name
        plaintext = outcome.plaintext or b""
        version = (outcome.version or 0) + 1
        payload = EnvPayload(
            data=cipher.encrypt(plaintext, new_key),
            count_variables=count_variables(plaintext.decode("utf-8", errors="replace")),
            size=size_label(plaintext),
            secret_key_id=new_key.key_id,
            version=version,
        )
        try:
            await self._client.put_env(self._org, self._app, name, new_key.key_id, payload)
        except RemoteConflictError as e:
            raise RotationError(
                f"rotation stopped: {name} was updated by someone else; pull and retry",
                kind=RotationErrorKind.RACED,
                env_name=name,
            ) from e
        except RemoteError as e:
            raise RotationError(
                f"rotation stopped at {name}: {e.message}",
                kind=RotationErrorKind.TRANSPORT,
                env_name=name,
            ) from e
        self._cache.put(self._project, self._app, name, plaintext, version)
        logger.info("Re-encrypted %s as version %d under key %d", name, version, new_key.key_id)
