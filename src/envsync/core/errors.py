"""Error taxonomy for envsync.

Domain errors derive from EnvsyncError and carry a `kind` plus structured
context. Remote transport errors derive from RemoteError and are raised by
the HTTP clients; the synchroniser maps them onto domain errors.

Per-environment errors (SyncError) are collected into result objects by the
synchroniser. Everything else aborts the running command.
"""

from __future__ import annotations

from enum import Enum

# Body fragment returned by the env store when it rejects a secretKeyId
KEY_ID_MISMATCH_MARKER = "secretKeyId must be >= 1"


class EnvsyncError(Exception):
    """Base exception for envsync operations.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------


class CipherErrorKind(str, Enum):
    """Why a cipher operation failed."""

    MALFORMED = "malformed"
    ENTROPY = "entropy"


class CipherError(EnvsyncError):
    """Cryptographic input or output failure. Never retried."""

    def __init__(self, message: str, *, kind: CipherErrorKind) -> None:
        super().__init__(message)
        self.kind = kind


# ---------------------------------------------------------------------------
# Environment names
# ---------------------------------------------------------------------------


class EnvNameError(EnvsyncError):
    """User input cannot be turned into an environment name.

    Attributes:
        name: The rejected input.
        suggestion: Canonicalised alternative the user may want instead.
    """

    def __init__(self, name: str, suggestion: str) -> None:
        super().__init__(
            f"invalid environment name {name!r}: use lowercase letters, digits, "
            f"'-' and '_' (did you mean {suggestion!r}?)"
        )
        self.name = name
        self.suggestion = suggestion


# ---------------------------------------------------------------------------
# Key store
# ---------------------------------------------------------------------------


class KeyStoreErrorKind(str, Enum):
    """Why a key lookup or write failed."""

    NOT_FOUND = "not_found"
    CANNOT_PERSIST = "cannot_persist"
    TRANSPORT = "transport"


class KeyStoreError(EnvsyncError):
    """Project key lookup or write failure."""

    def __init__(
        self,
        message: str,
        *,
        kind: KeyStoreErrorKind,
        key_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.key_id = key_id


# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------


class CacheErrorKind(str, Enum):
    """Why the local cache is unusable."""

    LOCKED = "locked"
    CORRUPT = "corrupt"


class CacheError(EnvsyncError):
    """Local cache unusable. Aborts the whole run."""

    def __init__(self, message: str, *, kind: CacheErrorKind, path: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.path = path


# ---------------------------------------------------------------------------
# Synchronisation
# ---------------------------------------------------------------------------


class SyncErrorKind(str, Enum):
    """Per-environment synchronisation failure reasons."""

    UNKNOWN_ENVIRONMENT = "unknown_environment"
    UNKNOWN_KEY = "unknown_key"
    WRONG_KEY = "wrong_key"
    CLOUD_AHEAD = "cloud_ahead"
    LOCAL_MODIFIED = "local_modified"
    TRANSPORT = "transport"
    UNSUPPORTED = "unsupported"
    MISSING_FILE = "missing_file"


class SyncError(EnvsyncError):
    """Failure of one environment during push or pull.

    Attributes:
        kind: Failure reason.
        env_name: Canonical environment name.
        cloud_version: Remote version, for CLOUD_AHEAD.
        local_version: Locally cached version, for CLOUD_AHEAD.
        key_id: Key id that could not be resolved, for UNKNOWN_KEY.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: SyncErrorKind,
        env_name: str | None = None,
        cloud_version: int | None = None,
        local_version: int | None = None,
        key_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.env_name = env_name
        self.cloud_version = cloud_version
        self.local_version = local_version
        self.key_id = key_id

    @classmethod
    def cloud_ahead(cls, env_name: str, cloud_version: int, local_version: int) -> SyncError:
        """Build the error raised when the remote holds a newer version."""
        return cls(
            f"{env_name}: cloud is at version {cloud_version}, local copy is at "
            f"{local_version}; pull before pushing",
            kind=SyncErrorKind.CLOUD_AHEAD,
            env_name=env_name,
            cloud_version=cloud_version,
            local_version=local_version,
        )


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


class RotationErrorKind(str, Enum):
    """Why a key rotation stopped."""

    RACED = "raced"
    TRANSPORT = "transport"
    ABORTED = "aborted"


class RotationError(EnvsyncError):
    """Rotation-wide failure; environments already rewritten stay rewritten."""

    def __init__(
        self,
        message: str,
        *,
        kind: RotationErrorKind,
        env_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.env_name = env_name


# ---------------------------------------------------------------------------
# Remote transport
# ---------------------------------------------------------------------------


class RemoteError(Exception):
    """Base exception for remote API errors.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status, or None when no response was received.
        body: Raw response body, if any.
    """

    retriable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class RemoteConnectionError(RemoteError):
    """Failed to reach the remote API."""

    retriable = True


class RemoteTransientError(RemoteError):
    """Server-side or rate-limit failure, or a timeout."""

    retriable = True


class RemoteNotFoundError(RemoteError):
    """Requested resource does not exist."""


class RemoteConflictError(RemoteError):
    """Remote already holds a version at or above the one written."""


class RemoteAuthError(RemoteError):
    """Credentials missing, expired, or not allowed."""


class RemoteBadRequestError(RemoteError):
    """Request rejected as invalid."""

    @property
    def key_id_mismatch(self) -> bool:
        """True when the server refused the secretKeyId of a write."""
        return KEY_ID_MISMATCH_MARKER in (self.body or self.message)
