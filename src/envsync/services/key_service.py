"""Client for the remote key service.

The key service stores one current key record per (organization, project):

    GET  {key_service_url}/{org}/{project}/key   -> {"key": {"secret_key_id": 17, "secret_key": "..."}}
    POST {key_service_url}/{org}/{project}/key   <- {"secret_key_id": ..., "secret_key": "..."}

On save the service may assign a different `secret_key_id`; the returned
record is canonical.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError

from envsync.core.config import EnvsyncSettings
from envsync.core.errors import RemoteError
from envsync.models import KeyRecord
from envsync.services.remote import RemoteClient, RemoteConfig

logger = logging.getLogger(__name__)


def _parse_key_response(body: Any, what: str) -> KeyRecord:
    key = body.get("key") if isinstance(body, dict) else None
    if not isinstance(key, dict):
        raise RemoteError(f"{what} returned no key record")
    try:
        return KeyRecord.model_validate(key)
    except ValidationError as e:
        raise RemoteError(f"{what} returned an invalid key record: {e.error_count()} errors") from e


class KeyServiceClient(RemoteClient):
    """Client for the project key endpoints.

    Example usage:
        async with KeyServiceClient(config) as keys:
            record = await keys.get_key("org_1", "proj_1")
    """

    @classmethod
    def from_settings(
        cls, settings: EnvsyncSettings, **credentials: str | None
    ) -> KeyServiceClient:
        config = RemoteConfig.from_settings(
            settings, base_url=settings.api.resolved_key_service_url, **credentials
        )
        return cls(config)

    def _key_url(self, organization_id: str, project_id: str) -> str:
        return f"/{quote(organization_id, safe='')}/{quote(project_id, safe='')}/key"

    async def get_key(self, organization_id: str, project_id: str) -> KeyRecord:
        """Fetch the current key record of a project.

        Raises:
            RemoteNotFoundError: The project has no key yet.
            RemoteError: Transport or server failure.
        """
        what = f"get key for project {project_id}"
        body = await self._send("GET", self._key_url(organization_id, project_id), what=what)
        record = _parse_key_response(body, what)
        logger.debug("Key service returned key id %d for %s", record.key_id, project_id)
        return record

    async def save_key(self, organization_id: str, project_id: str, key: KeyRecord) -> KeyRecord:
        """Store a key record as the project's current key.

        Returns:
            The record as accepted by the service, possibly with a new id.

        Raises:
            RemoteError: The service refused or could not be reached.
        """
        what = f"save key for project {project_id}"
        body = await self._send(
            "POST",
            self._key_url(organization_id, project_id),
            what=what,
            json=key.to_file_dict(),
        )
        saved = _parse_key_response(body, what)
        if saved.key_id != key.key_id:
            logger.info("Key service assigned key id %d (sent %d)", saved.key_id, key.key_id)
        return saved
