"""Client for the remote env store.

Endpoints (relative to the API base URL):

    GET /api/organizations/{org}/projects/{project}/environments/          paginated environments
    GET /api/organizations/{org}/projects/{project}/environments/{name}    one environment
    GET /api/organizations/{org}/apps/{app}/envs/                          paginated payloads
    GET /api/organizations/{org}/apps/{app}/envs/{name}                    one payload
    PUT /api/organizations/{org}/apps/{app}/envs/{name}?secretKeyId=N      write a payload
    GET /api/organizations/{org}/apps/{app}/envs/{name}/versions           payload history

Reads are retried on transient failures; writes never are.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from envsync.core.config import EnvsyncSettings
from envsync.core.errors import RemoteError, RemoteNotFoundError
from envsync.models import (
    DEFAULT_ENV_NAME,
    DEFAULT_ENVIRONMENT,
    EnvironmentRef,
    EnvPayload,
    NamedEnvironment,
)
from envsync.services.remote import RemoteClient, RemoteConfig
from envsync.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


def _q(value: str) -> str:
    return quote(value, safe="")


def _parse_items(body: Any, model: type[BaseModel], what: str) -> list[Any]:
    """Parse a list response; pages arrive as a bare list or as {"data": [...]}."""
    items = body.get("data") if isinstance(body, dict) else body
    if items is None:
        return []
    if not isinstance(items, list):
        raise RemoteError(f"{what} returned an unexpected body")
    try:
        return [model.model_validate(item) for item in items]
    except ValidationError as e:
        raise RemoteError(f"{what} returned invalid items: {e.error_count()} errors") from e


class EnvClient(RemoteClient):
    """Typed operations on environments and encrypted env payloads.

    Example usage:
        async with EnvClient(config) as client:
            envs = await client.list_all_environments("org_1", "proj_1")
            payload = await client.get_env("org_1", "app_1", "staging", key_id=17)
    """

    def __init__(
        self,
        config: RemoteConfig,
        *,
        retry: RetryPolicy | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        super().__init__(config)
        self._retry = retry or RetryPolicy()
        self._page_size = page_size

    @classmethod
    def from_settings(cls, settings: EnvsyncSettings, **credentials: str | None) -> EnvClient:
        return cls(
            RemoteConfig.from_settings(settings, **credentials),
            retry=RetryPolicy.from_settings(settings.sync),
            page_size=settings.sync.page_size,
        )

    async def _read(self, url: str, *, what: str, params: dict[str, Any] | None = None) -> Any:
        return await self._retry.run(lambda: self._send("GET", url, what=what, params=params), what)

    def _page_params(self, page_num: int, page_size: int | None) -> dict[str, Any]:
        return {"pageNum": page_num, "pageSize": page_size or self._page_size}

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    def _environments_url(self, organization_id: str, project_id: str) -> str:
        return f"/api/organizations/{_q(organization_id)}/projects/{_q(project_id)}/environments/"

    async def list_environments(
        self,
        organization_id: str,
        project_id: str,
        page_num: int = 1,
        page_size: int | None = None,
    ) -> list[NamedEnvironment]:
        """One page of the project's environments, in server order.

        Raises:
            RemoteNotFoundError: The project does not exist.
            RemoteError: Transport or server failure.
        """
        what = f"list environments of project {project_id}"
        body = await self._read(
            self._environments_url(organization_id, project_id),
            what=what,
            params=self._page_params(page_num, page_size),
        )
        return _parse_items(body, NamedEnvironment, what)

    async def list_all_environments(
        self, organization_id: str, project_id: str
    ) -> list[NamedEnvironment]:
        """Every environment of the project, walking pages until a short one."""
        environments: list[NamedEnvironment] = []
        page_num = 1
        while True:
            page = await self.list_environments(organization_id, project_id, page_num)
            environments.extend(page)
            if len(page) < self._page_size:
                return environments
            page_num += 1

    async def get_environment(
        self, organization_id: str, project_id: str, env_name: str
    ) -> EnvironmentRef | None:
        """Descriptor of one environment, or None if the project has no such environment.

        `default` has no remote descriptor and is always returned without a call.
        """
        if env_name == DEFAULT_ENV_NAME:
            return DEFAULT_ENVIRONMENT
        what = f"get environment {env_name}"
        try:
            body = await self._read(
                f"{self._environments_url(organization_id, project_id)}{_q(env_name)}", what=what
            )
        except RemoteNotFoundError:
            return None
        try:
            return NamedEnvironment.model_validate(body)
        except ValidationError as e:
            raise RemoteError(f"{what} returned an invalid environment") from e

    # -------------------------------------------------------------------------
    # Env payloads
    # -------------------------------------------------------------------------

    def _envs_url(self, organization_id: str, app_id: str) -> str:
        return f"/api/organizations/{_q(organization_id)}/apps/{_q(app_id)}/envs/"

    def _env_url(self, organization_id: str, app_id: str, env_name: str) -> str:
        return f"{self._envs_url(organization_id, app_id)}{_q(env_name)}"

    async def get_env(
        self,
        organization_id: str,
        app_id: str,
        env_name: str,
        *,
        key_id: int | None = None,
        version: int | None = None,
    ) -> EnvPayload:
        """The encrypted payload of an environment, latest unless a version is given.

        Raises:
            RemoteNotFoundError: No payload (or no such version) exists.
            RemoteError: Transport or server failure.
        """
        params: dict[str, Any] = {}
        if key_id is not None:
            params["secretKeyId"] = key_id
        if version is not None:
            params["version"] = version
        what = f"get env {env_name}"
        body = await self._read(
            self._env_url(organization_id, app_id, env_name), what=what, params=params or None
        )
        try:
            return EnvPayload.model_validate(body)
        except ValidationError as e:
            raise RemoteError(f"{what} returned an invalid payload") from e

    async def list_envs(
        self,
        organization_id: str,
        app_id: str,
        page_num: int = 1,
        page_size: int | None = None,
    ) -> list[EnvPayload]:
        """One page of the app's latest payloads, in server order."""
        what = f"list envs of app {app_id}"
        body = await self._read(
            self._envs_url(organization_id, app_id),
            what=what,
            params=self._page_params(page_num, page_size),
        )
        return _parse_items(body, EnvPayload, what)

    async def list_all_envs(self, organization_id: str, app_id: str) -> list[EnvPayload]:
        payloads: list[EnvPayload] = []
        page_num = 1
        while True:
            page = await self.list_envs(organization_id, app_id, page_num)
            payloads.extend(page)
            if len(page) < self._page_size:
                return payloads
            page_num += 1

    async def list_env_versions(
        self,
        organization_id: str,
        app_id: str,
        env_name: str,
        page_num: int = 1,
        page_size: int | None = None,
    ) -> list[EnvPayload]:
        """One page of stored versions of an environment's payload."""
        what = f"list versions of env {env_name}"
        body = await self._read(
            f"{self._env_url(organization_id, app_id, env_name)}/versions",
            what=what,
            params=self._page_params(page_num, page_size),
        )
        return _parse_items(body, EnvPayload, what)

    async def put_env(
        self,
        organization_id: str,
        app_id: str,
        env_name: str,
        secret_key_id: int,
        payload: EnvPayload,
    ) -> EnvPayload | None:
        """Write a new version of an environment's payload. Never retried.

        Returns:
            The stored payload when the server echoes it, else None.

        Raises:
            RemoteConflictError: The remote already holds this version or a later one.
            RemoteBadRequestError: Rejected; check `key_id_mismatch`.
            RemoteError: Transport or server failure.
        """
        what = f"put env {env_name}"
        body = await self._send(
            "PUT",
            self._env_url(organization_id, app_id, env_name),
            what=what,
            params={"secretKeyId": secret_key_id},
            json=payload.to_wire(),
        )
        logger.info("Stored %s version %s under key %d", env_name, payload.version, secret_key_id)
        if not isinstance(body, dict) or "data" not in body:
            return None
        try:
            return EnvPayload.model_validate(body)
        except ValidationError:
            logger.debug("Ignoring unparseable put response for %s", env_name)
            return None
