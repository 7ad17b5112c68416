"""Workspace identifiers loaded from `.hx` files.

The user-level `.hx` in the home directory provides defaults (typically the
organization and credentials); the `.hx` in the working directory names the
project and app. Values from the working directory win, and command-line
overrides win over both.

Only identifier and credential fields are read here. The `database` subtree
of the user-level file belongs to envsync.services.local_cache.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from envsync.core.config import CONFIG_FILE_NAME, ConfigValidationError

logger = logging.getLogger(__name__)


class WorkspaceConfig(BaseModel):
    """Identifiers of the organization, project and app being synchronised."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    organization_id: str | None = None
    project_id: str | None = None
    project_alternate_id: str | None = None
    project_name: str | None = None
    app_id: str | None = None
    app_alternate_id: str | None = None
    app_name: str | None = None
    hyphen_api_key: str | None = None
    hyphen_access_token: str | None = None

    def require(self, field: str) -> str:
        """Return an identifier, failing with a readable message when it is unset.

        Raises:
            ConfigValidationError: If the field is missing or empty.
        """
        value = getattr(self, field)
        if not value:
            msg = f"{field} is not set; run from an initialised workspace or pass it explicitly"
            raise ConfigValidationError(msg, field=field)
        return value

    @property
    def organization(self) -> str:
        return self.require("organization_id")

    @property
    def project(self) -> str:
        return self.require("project_id")

    @property
    def app(self) -> str:
        return self.require("app_id")


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a `.hx` file as a JSON object; a missing file reads as empty.

    Raises:
        ConfigValidationError: If the file is not a JSON object.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        msg = f"{path} is not valid JSON: {e}"
        raise ConfigValidationError(msg) from e
    if not isinstance(data, dict):
        msg = f"{path} must contain a JSON object"
        raise ConfigValidationError(msg)
    return data


def load_workspace(
    cwd: Path,
    home_dir: Path,
    overrides: dict[str, str | None] | None = None,
) -> WorkspaceConfig:
    """Merge home and working-directory `.hx` files with explicit overrides.

    Args:
        cwd: Working directory holding the project `.hx`.
        home_dir: Directory holding the user-level `.hx`.
        overrides: Field values that win over both files; None values are ignored.

    Returns:
        The merged, validated workspace configuration.

    Raises:
        ConfigValidationError: If a file is unreadable or a field has the wrong type.
    """
    merged: dict[str, Any] = {}
    sources = [home_dir / CONFIG_FILE_NAME]
    local_path = cwd / CONFIG_FILE_NAME
    if local_path.resolve() != sources[0].resolve():
        sources.append(local_path)

    for path in sources:
        data = read_config_file(path)
        merged.update({k: v for k, v in data.items() if v is not None and k != "database"})

    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})

    try:
        workspace = WorkspaceConfig.model_validate(merged)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(x) for x in first["loc"])
        msg = f"invalid workspace configuration: {loc}: {first['msg']}"
        raise ConfigValidationError(msg, field=loc) from e

    logger.debug(
        "Workspace loaded: organization=%s project=%s app=%s",
        workspace.organization_id,
        workspace.project_id,
        workspace.app_id,
    )
    return workspace
