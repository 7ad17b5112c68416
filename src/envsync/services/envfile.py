"""`.env` file handling: names, parsing, hashing and atomic writes.

A line is blank, a comment (first non-whitespace character is `#`) or
`NAME=VALUE`, where VALUE is the rest of the line verbatim: no quote
stripping, no expansion.

Environment names are lowercase `[a-z0-9_-]` and may not start or end with
`-` or `_`. The `default` environment lives in `.env`; any other one in
`.env.<name>`. `.env.local` holds private overrides and is never synced.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from envsync.core.errors import EnvNameError
from envsync.core.files import atomic_write_bytes
from envsync.models import DEFAULT_ENV_NAME

logger = logging.getLogger(__name__)

ENV_FILE_PREFIX = ".env"
LOCAL_OVERRIDE_FILE = ".env.local"
ENV_FILE_MODE = 0o644

_VALID_NAME = re.compile(r"^[a-z0-9](?:[a-z0-9_-]*[a-z0-9])?$")
_INVALID_RUN = re.compile(r"[^a-z0-9_-]+")
_VARIABLE_LINE = re.compile(r"^[^#=\s][^=\n]*=", re.MULTILINE)


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


def suggest_env_name(value: str) -> str:
    """Turn arbitrary input into the closest valid environment name."""
    suggestion = _INVALID_RUN.sub("-", value.lower())
    suggestion = re.sub(r"-+", "-", suggestion).strip("-_")
    return suggestion or DEFAULT_ENV_NAME


def env_name(value: str | None) -> str:
    """Canonicalise a user-supplied environment name.

    Empty input and `default` (in any case) map to `default`.

    Raises:
        EnvNameError: If the name contains anything but lowercase letters,
            digits, `-` and `_`, or starts or ends with `-` or `_`.
    """
    name = (value or "").lower()
    if not name or name == DEFAULT_ENV_NAME:
        return DEFAULT_ENV_NAME
    if not _VALID_NAME.match(name):
        raise EnvNameError(value or "", suggest_env_name(name))
    return name


def file_name_for(name: str) -> str:
    """File name holding an environment."""
    canonical = env_name(name)
    if canonical == DEFAULT_ENV_NAME:
        return ENV_FILE_PREFIX
    return f"{ENV_FILE_PREFIX}.{canonical}"


def env_name_from_file(file_name: str) -> str:
    """Environment name stored in an env file.

    Raises:
        EnvNameError: If the file name carries an invalid environment name.
    """
    if file_name == ENV_FILE_PREFIX:
        return DEFAULT_ENV_NAME
    suffix = file_name.removeprefix(f"{ENV_FILE_PREFIX}.")
    if suffix == file_name or not suffix:
        raise EnvNameError(file_name, suggest_env_name(file_name))
    # File names are case sensitive; `.env.Prod` is not `prod`
    if suffix != suffix.lower():
        raise EnvNameError(suffix, suggest_env_name(suffix))
    return env_name(suffix)


def discover_env_files(directory: Path) -> list[str]:
    """List the env file names in a directory, `.env.local` excluded."""
    names = []
    for path in directory.iterdir():
        name = path.name
        if name == LOCAL_OVERRIDE_FILE or not path.is_file():
            continue
        if name == ENV_FILE_PREFIX or name.startswith(f"{ENV_FILE_PREFIX}."):
            names.append(name)
    return sorted(names)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class LineKind(str, Enum):
    BLANK = "blank"
    COMMENT = "comment"
    PAIR = "pair"
    INVALID = "invalid"


@dataclass(frozen=True)
class EnvLine:
    """One parsed line; `raw` excludes the line terminator."""

    kind: LineKind
    raw: str
    name: str | None = None
    value: str | None = None


def _split_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line.removesuffix("\r") for line in lines]


def parse_line(line: str) -> EnvLine:
    stripped = line.strip()
    if not stripped:
        return EnvLine(LineKind.BLANK, line)
    if stripped.startswith("#"):
        return EnvLine(LineKind.COMMENT, line)
    name, sep, value = line.partition("=")
    name = name.strip()
    if not sep or not name:
        return EnvLine(LineKind.INVALID, line)
    return EnvLine(LineKind.PAIR, line, name=name, value=value)


def parse_lines(text: str) -> list[EnvLine]:
    return [parse_line(line) for line in _split_lines(text)]


def parse_pairs(text: str) -> list[tuple[str, str]]:
    """The NAME=VALUE pairs of a file, in file order."""
    return [
        (line.name, line.value)
        for line in parse_lines(text)
        if line.kind is LineKind.PAIR and line.name is not None and line.value is not None
    ]


def render(pairs: list[tuple[str, str]]) -> str:
    return "".join(f"{name}={value}\n" for name, value in pairs)


def count_variables(text: str) -> int:
    """Number of lines that define a variable."""
    return len(_VARIABLE_LINE.findall(text))


def content_hash(content: str | bytes) -> str:
    """SHA-256 hex digest of plaintext content."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def size_label(content: bytes) -> str:
    return f"{len(content)} bytes"


def is_well_formed(content: bytes) -> bool:
    """Whether decrypted bytes look like an env file.

    Used to notice decryption under the wrong key: the result must be
    UTF-8 without NUL bytes, and every line that is neither blank
    nor a comment must contain `=`.
    """
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return False
    if "\x00" in text:
        return False
    return all(
        line.kind is not LineKind.INVALID or "=" in line.raw for line in parse_lines(text)
    )


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def read_env_file(path: Path) -> bytes | None:
    """Raw bytes of an env file, or None if it does not exist."""
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def write_env_file(path: Path, content: bytes) -> None:
    """Replace an env file atomically with mode 0644."""
    atomic_write_bytes(path, content, mode=ENV_FILE_MODE)
    logger.debug("Wrote %s (%d bytes)", path, len(content))
