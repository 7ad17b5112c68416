"""Tests for `.env` file handling.

Test Categories:
1. Environment names - canonicalisation and suggestions
2. File names - mapping between names and files, discovery
3. Parsing - line kinds, pairs, rendering, counting
4. Validation - detection of garbage plaintext
5. Files - atomic writes and permissions
"""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from envsync.core.errors import EnvNameError
from envsync.services import envfile
from envsync.services.envfile import LineKind

# =============================================================================
# Environment names
# =============================================================================


class TestEnvName:
    """Tests for env_name canonicalisation."""

    @pytest.mark.parametrize("value", ["", None, "default", "DEFAULT", "Default"])
    def test_default_sentinel(self, value):
        """Empty input and any casing of 'default' map to default."""
        assert envfile.env_name(value) == "default"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("staging", "staging"),
            ("Production", "production"),
            ("qa-2", "qa-2"),
            ("feature_x", "feature_x"),
            ("a", "a"),
        ],
    )
    def test_valid_names(self, value: str, expected: str):
        """Valid names are lowercased and kept."""
        assert envfile.env_name(value) == expected

    @pytest.mark.parametrize(
        ("value", "suggestion"),
        [
            ("my env", "my-env"),
            ("prod!!", "prod"),
            ("-dev", "dev"),
            ("dev_", "dev"),
            ("_qa-", "qa"),
            ("a..b", "a-b"),
            ("Stage 2 / EU", "stage-2-eu"),
        ],
    )
    def test_invalid_names_carry_suggestion(self, value: str, suggestion: str):
        """Illegal input raises EnvNameError with a cleaned-up suggestion."""
        with pytest.raises(EnvNameError) as exc_info:
            envfile.env_name(value)
        assert exc_info.value.suggestion == suggestion
        assert exc_info.value.name == value

    @pytest.mark.parametrize("value", ["Staging", "qa-2", "default", "", "X_Y"])
    def test_idempotent(self, value: str):
        """Canonicalising a canonical name returns it unchanged."""
        canonical = envfile.env_name(value)
        assert envfile.env_name(canonical) == canonical

    def test_suggestion_is_valid(self):
        """Suggestions are themselves canonical names."""
        suggestion = envfile.suggest_env_name("--Weird Name!!__")
        assert envfile.env_name(suggestion) == suggestion


# =============================================================================
# File names
# =============================================================================


class TestFileNames:
    """Tests for env file naming and discovery."""

    def test_default_file(self):
        assert envfile.file_name_for("default") == ".env"

    def test_named_file(self):
        assert envfile.file_name_for("Staging") == ".env.staging"

    def test_name_from_file(self):
        assert envfile.env_name_from_file(".env") == "default"
        assert envfile.env_name_from_file(".env.prod") == "prod"

    @pytest.mark.parametrize("file_name", [".env.Prod", ".env.my env", ".env.", ".envrc"])
    def test_invalid_file_names(self, file_name: str):
        """Files that do not carry a canonical name are rejected."""
        with pytest.raises(EnvNameError):
            envfile.env_name_from_file(file_name)

    def test_discover_excludes_local_overrides(self, tmp_path: Path):
        """.env.local and unrelated files are never picked up."""
        for name in [".env", ".env.staging", ".env.local", ".envrc", "env.txt", ".env.prod"]:
            (tmp_path / name).write_text("A=1\n")
        (tmp_path / ".env.dir").mkdir()

        assert envfile.discover_env_files(tmp_path) == [".env", ".env.prod", ".env.staging"]


# =============================================================================
# Parsing
# =============================================================================


class TestParsing:
    """Tests for line parsing, rendering and counting."""

    def test_line_kinds(self):
        """Blank, comment, pair and invalid lines are told apart."""
        lines = envfile.parse_lines("\n# comment\n  # indented\nA=1\nnot a pair\n=x\n")
        assert [line.kind for line in lines] == [
            LineKind.BLANK,
            LineKind.COMMENT,
            LineKind.COMMENT,
            LineKind.PAIR,
            LineKind.INVALID,
            LineKind.INVALID,
        ]

    def test_value_is_verbatim(self):
        """Values keep quotes, spaces and further '=' characters."""
        pairs = envfile.parse_pairs('A="quoted value"\nB= spaced \nC=x=y\nD=$HOME\n')
        assert pairs == [
            ("A", '"quoted value"'),
            ("B", " spaced "),
            ("C", "x=y"),
            ("D", "$HOME"),
        ]

    def test_crlf_lines(self):
        """Windows line endings do not leak into values."""
        assert envfile.parse_pairs("A=1\r\nB=2\r\n") == [("A", "1"), ("B", "2")]

    def test_render_keeps_order(self):
        """Rendering emits pairs in insertion order, one per line."""
        assert envfile.render([("B", "2"), ("A", "1")]) == "B=2\nA=1\n"

    def test_render_parse_round_trip(self):
        pairs = [("KEY", "value with = sign"), ("EMPTY", "")]
        assert envfile.parse_pairs(envfile.render(pairs)) == pairs

    @pytest.mark.parametrize(
        ("text", "count"),
        [
            ("", 0),
            ("FOO=bar\nBAZ=qux\n", 2),
            ("# A=1\nB=2\n", 1),
            ("=novalue\n", 0),
            (" LEADING=1\n", 0),
            ("NO_NEWLINE=1", 1),
            ("\n\n", 0),
            ("NOEQUALS\n# A=1\n", 0),
            ("NOEQUALS\nB=2\n", 1),
        ],
    )
    def test_count_variables(self, text: str, count: int):
        """Only lines starting with a name and containing '=' count."""
        assert envfile.count_variables(text) == count

    def test_content_hash_is_sha256_of_plaintext(self):
        assert envfile.content_hash("FOO=bar\n") == envfile.content_hash(b"FOO=bar\n")
        assert len(envfile.content_hash(b"")) == 64

    def test_size_label(self):
        assert envfile.size_label(b"FOO=bar\nBAZ=qux\n") == "16 bytes"


# =============================================================================
# Validation
# =============================================================================


class TestWellFormed:
    """Tests for is_well_formed, used to notice wrong-key decryption."""

    @pytest.mark.parametrize(
        "content",
        [
            b"",
            b"A=1\n",
            b"# only a comment\n",
            b"\n\nA=1\n\n",
            b"A=1\r\nB=2",
            "NAME=café\n".encode(),
            b"TAB=\tindented\n",
            b"PS1=\x1b[32m$ \x1b[0m\n",
            b"BANNER=page\x0cbreak\x7f\n",
        ],
    )
    def test_accepts_env_files(self, content: bytes):
        assert envfile.is_well_formed(content)

    @pytest.mark.parametrize(
        "content",
        [
            b"\xff\xfe\x00garbage",
            b"A=1\nno equals sign here\n",
            b"A=1\x00\n",
        ],
    )
    def test_rejects_garbage(self, content: bytes):
        assert not envfile.is_well_formed(content)


# =============================================================================
# Files
# =============================================================================


class TestFiles:
    """Tests for reading and atomically writing env files."""

    def test_read_missing_file(self, tmp_path: Path):
        assert envfile.read_env_file(tmp_path / ".env") is None

    def test_write_is_exact_and_0644(self, tmp_path: Path):
        """Written bytes are reproduced exactly, with mode 0644."""
        path = tmp_path / ".env.prod"
        envfile.write_env_file(path, b"A=1\nNO_NEWLINE=2")

        assert path.read_bytes() == b"A=1\nNO_NEWLINE=2"
        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    def test_write_leaves_no_temp_files(self, tmp_path: Path):
        path = tmp_path / ".env"
        envfile.write_env_file(path, b"A=1\n")
        envfile.write_env_file(path, b"A=2\n")

        assert sorted(p.name for p in tmp_path.iterdir()) == [".env"]
        assert path.read_bytes() == b"A=2\n"
