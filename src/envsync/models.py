"""Data model shared by the envsync services.

Wire models (KeyRecord, NamedEnvironment, EnvPayload) are pydantic models
whose aliases match the JSON exchanged with the env store, the key service
and the `.hxkey` file. Purely local values are frozen dataclasses.
"""

from __future__ import annotations

import base64
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from envsync.core.errors import CipherError, CipherErrorKind

logger = logging.getLogger(__name__)

DEFAULT_ENV_NAME = "default"

# Random bytes behind a key and the length of their truncated base64 form
KEY_ENTROPY_BYTES = 256
KEY_MATERIAL_LENGTH = 256


class KeyRecord(BaseModel):
    """Project-scoped symmetric key plus its id.

    `key_id` is assigned by the key service; locally minted records carry
    the unix time of their creation until the service accepts them.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key_id: int = Field(alias="secret_key_id", ge=0)
    material: str = Field(alias="secret_key", repr=False)

    @field_validator("material")
    @classmethod
    def validate_material(cls, v: str) -> str:
        if len(v) != KEY_MATERIAL_LENGTH:
            msg = f"key material must be {KEY_MATERIAL_LENGTH} characters, got {len(v)}"
            raise ValueError(msg)
        return v

    @classmethod
    def generate(cls, key_id: int | None = None) -> KeyRecord:
        """Mint a fresh record from the system entropy source.

        Args:
            key_id: Id to assign; defaults to the current unix time.

        Raises:
            CipherError: If the entropy source is unavailable.
        """
        try:
            raw = os.urandom(KEY_ENTROPY_BYTES)
        except (OSError, NotImplementedError) as e:
            raise CipherError(
                "system entropy source unavailable", kind=CipherErrorKind.ENTROPY
            ) from e
        material = base64.b64encode(raw).decode("ascii")[:KEY_MATERIAL_LENGTH]
        return cls(key_id=int(time.time()) if key_id is None else key_id, material=material)

    def with_id(self, key_id: int) -> KeyRecord:
        """Same material under a different id."""
        return self.model_copy(update={"key_id": key_id})

    def to_file_dict(self) -> dict[str, Any]:
        """JSON shape used by `.hxkey` and the key service."""
        return self.model_dump(by_alias=True)


class NamedEnvironment(BaseModel):
    """An environment descriptor returned by the env store."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = ""
    alternate_id: str = Field(alias="alternateId")
    name: str = ""
    project_id: str | None = Field(default=None, alias="projectId")

    @model_validator(mode="before")
    @classmethod
    def lift_project_id(cls, data: Any) -> Any:
        # Listings nest the owner as {"project": {"id": ...}}
        if isinstance(data, dict) and "projectId" not in data and "project_id" not in data:
            project = data.get("project")
            if isinstance(project, dict) and project.get("id"):
                data = {**data, "projectId": project["id"]}
        return data

    @property
    def env_name(self) -> str:
        return self.alternate_id

    @property
    def is_default(self) -> bool:
        return False


@dataclass(frozen=True)
class DefaultEnvironment:
    """The synthetic `default` environment.

    It has no remote descriptor, yet is always addressable.
    """

    @property
    def env_name(self) -> str:
        return DEFAULT_ENV_NAME

    @property
    def alternate_id(self) -> str:
        return DEFAULT_ENV_NAME

    @property
    def is_default(self) -> bool:
        return True


DEFAULT_ENVIRONMENT = DefaultEnvironment()

EnvironmentRef = Union[NamedEnvironment, DefaultEnvironment]


class EnvPayload(BaseModel):
    """One encrypted env file as stored by the env store."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    data: str
    count_variables: int = Field(default=0, alias="countVariables", ge=0)
    size: str = ""
    secret_key_id: int | None = Field(default=None, alias="secretKeyId")
    version: int | None = None
    id: str | None = None
    published_at: str | None = Field(
        default=None,
        validation_alias=AliasChoices("published", "publishedAt", "published_at"),
        serialization_alias="published",
    )
    environment: NamedEnvironment | None = Field(
        default=None,
        validation_alias=AliasChoices("projectEnvironment", "environment"),
        serialization_alias="projectEnvironment",
    )

    @property
    def env_ref(self) -> EnvironmentRef:
        """Environment this payload belongs to; no back-pointer means `default`."""
        return self.environment if self.environment is not None else DEFAULT_ENVIRONMENT

    @property
    def env_name(self) -> str:
        return self.env_ref.env_name

    def to_wire(self) -> dict[str, Any]:
        """JSON body for a PUT."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


@dataclass(frozen=True)
class CacheEntry:
    """Last synchronised plaintext hash and version for one environment."""

    version: int
    hash: str


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"


@dataclass(frozen=True)
class PlanItem:
    """One step of a push or pull."""

    env_name: str
    direction: SyncDirection
    reason: str
    expected_version: int | None = None


@dataclass
class SyncPlan:
    """Ordered decisions taken during one push or pull invocation."""

    direction: SyncDirection
    items: list[PlanItem] = field(default_factory=list)

    def add(self, env_name: str, reason: str, expected_version: int | None = None) -> PlanItem:
        item = PlanItem(env_name, self.direction, reason, expected_version)
        self.items.append(item)
        return item

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)
