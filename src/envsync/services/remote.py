"""Shared HTTP plumbing for the env store and key service clients.

Both clients speak JSON over HTTPS with the same credentials: an API key
sent as `x-api-key`, or else a bearer token. Status codes are mapped onto
the RemoteError hierarchy in envsync.core.errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Self

import httpx

from envsync.core.config import EnvsyncSettings
from envsync.core.errors import (
    RemoteAuthError,
    RemoteBadRequestError,
    RemoteConflictError,
    RemoteConnectionError,
    RemoteError,
    RemoteNotFoundError,
    RemoteTransientError,
)

logger = logging.getLogger(__name__)

# Default timeout for remote API requests (seconds)
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class RemoteConfig:
    """Connection settings for a remote API."""

    base_url: str
    api_key: str | None = None
    access_token: str | None = None
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_settings(
        cls,
        settings: EnvsyncSettings,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        access_token: str | None = None,
    ) -> RemoteConfig:
        """Build a config from settings.

        Credentials passed in (typically read from `.hx`) are used only when
        the environment does not provide them.
        """
        api = settings.api
        return cls(
            base_url=(base_url or api.base_url).rstrip("/"),
            api_key=api.api_key.get_secret_value() if api.api_key else api_key,
            access_token=(
                api.access_token.get_secret_value() if api.access_token else access_token
            ),
            timeout=api.timeout,
        )

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        elif self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of the server's error message."""
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text.strip() or response.reason_phrase


def raise_for_remote_status(response: httpx.Response, what: str) -> None:
    """Raise the RemoteError matching a non-2xx response.

    Args:
        response: Response to check.
        what: Short description of the request, used in messages.
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    detail = _error_message(response)
    message = f"{what} failed ({status}): {detail}"
    kwargs = {"status_code": status, "body": response.text}

    if status == 400:
        raise RemoteBadRequestError(message, **kwargs)
    if status in (401, 403):
        raise RemoteAuthError(message, **kwargs)
    if status == 404:
        raise RemoteNotFoundError(message, **kwargs)
    if status == 409:
        raise RemoteConflictError(message, **kwargs)
    if status == 429 or status >= 500:
        raise RemoteTransientError(message, **kwargs)
    raise RemoteError(message, **kwargs)


class RemoteClient:
    """Base for JSON API clients used as async context managers.

    Example usage:
        async with EnvClient(config) as client:
            payload = await client.get_env("org_1", "app_1", "staging")
    """

    def __init__(self, config: RemoteConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            headers=self._config.headers(),
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = f"{type(self).__name__} must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    async def _send(
        self,
        method: str,
        url: str,
        *,
        what: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and return its decoded JSON body (None when empty).

        Raises:
            RemoteConnectionError: The server could not be reached.
            RemoteTransientError: Timeout, rate limit or server error.
            RemoteError: Any other non-2xx response, as the matching subclass.
        """
        client = self._get_client()
        logger.debug("%s %s params=%s", method, url, params)
        try:
            response = await client.request(method, url, params=params, json=json)
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"{what} timed out") from e
        except httpx.TransportError as e:
            raise RemoteConnectionError(
                f"cannot reach {self._config.base_url} for {what}: {e}"
            ) from e

        raise_for_remote_status(response, what)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError(
                f"{what} returned invalid JSON",
                status_code=response.status_code,
                body=response.text,
            ) from e
