"""envsync service layer.

This package contains the synchroniser and its collaborators:
- cipher: AES-CFB encryption of env payloads
- envfile: `.env` parsing, naming and hashing
- LocalCache: plaintext-hash and version cache in the user `.hx`
- KeyServiceClient / KeyStore: project key resolution and minting
- EnvClient: remote env store operations
- RetryPolicy: backoff for idempotent reads
- Synchroniser: push and pull orchestration
- RotationCoordinator: re-encryption under a fresh project key
"""

from envsync.services.env_client import EnvClient
from envsync.services.key_service import KeyServiceClient
from envsync.services.keystore import KeyFileProvider, KeyStore, RemoteKeyProvider
from envsync.services.local_cache import LocalCache
from envsync.services.remote import RemoteClient, RemoteConfig
from envsync.services.retry import RetryPolicy
from envsync.services.rotation import RotationCoordinator, RotationResult
from envsync.services.synchroniser import (
    EnvOutcome,
    OutcomeStatus,
    PullResult,
    PushResult,
    Selection,
    SelectionMode,
    Synchroniser,
    filter_envs_by_current_environments,
)

__all__ = [
    "EnvClient",
    "EnvOutcome",
    "KeyFileProvider",
    "KeyServiceClient",
    "KeyStore",
    "LocalCache",
    "OutcomeStatus",
    "PullResult",
    "PushResult",
    "RemoteClient",
    "RemoteConfig",
    "RemoteKeyProvider",
    "RetryPolicy",
    "RotationCoordinator",
    "RotationResult",
    "Selection",
    "SelectionMode",
    "Synchroniser",
    "filter_envs_by_current_environments",
]
