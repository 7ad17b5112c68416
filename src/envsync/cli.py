"""Command-line entry point for envsync.

Usage:
    envsync push [--environment NAME]
    envsync pull [--environment NAME] [--force] [--version N]
    envsync rotate-key --yes
    envsync list-versions NAME [--page N] [--page-size N]
    envsync encrypt VALUE
    envsync decrypt CIPHERTEXT

Organization, project and app come from the `.hx` files unless given with
--org, --project and --app.

Exit codes:
    0 - Success
    1 - Any error, including a partial push or pull
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path

from envsync import __version__
from envsync.core.config import ConfigValidationError, EnvsyncSettings
from envsync.core.errors import EnvsyncError, RemoteError
from envsync.core.settings import get_settings
from envsync.core.workspace import WorkspaceConfig, load_workspace
from envsync.services import cipher
from envsync.services.env_client import EnvClient
from envsync.services.key_service import KeyServiceClient
from envsync.services.keystore import KeyStore
from envsync.services.local_cache import LocalCache
from envsync.services.retry import RetryPolicy
from envsync.services.rotation import RotationCoordinator
from envsync.services.synchroniser import Selection, SyncResult, Synchroniser

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="envsync",
        description="Synchronise encrypted environment files with the env store.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--org", dest="organization_id", help="Organization ID")
    parser.add_argument("--project", dest="project_id", help="Project ID")
    parser.add_argument("--app", dest="app_id", help="App ID")
    parser.add_argument(
        "--local-secret",
        action="store_true",
        help="Store a newly created project key in .hxkey instead of the key service",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    push = commands.add_parser("push", help="Upload changed env files")
    push.add_argument("-e", "--environment", help="Only push this environment")

    pull = commands.add_parser("pull", help="Download env files")
    pull.add_argument("-e", "--environment", help="Only pull this environment")
    pull.add_argument(
        "--force", action="store_true", help="Overwrite files modified since the last sync"
    )
    pull.add_argument(
        "--version", dest="env_version", type=int, help="Version to pull (single environment)"
    )

    rotate = commands.add_parser("rotate-key", help="Re-encrypt every environment under a new key")
    rotate.add_argument("--yes", action="store_true", help="Confirm the rotation")

    versions = commands.add_parser("list-versions", help="List stored versions of an environment")
    versions.add_argument("environment")
    versions.add_argument("--page", type=int, default=1)
    versions.add_argument("--page-size", type=int, default=None)

    encrypt = commands.add_parser("encrypt", help="Encrypt a value with the project key")
    encrypt.add_argument("value")

    decrypt = commands.add_parser("decrypt", help="Decrypt a value with the project key")
    decrypt.add_argument("ciphertext")

    return parser


@dataclass
class Services:
    """Collaborators wired for one invocation."""

    workspace: WorkspaceConfig
    env_client: EnvClient
    keystore: KeyStore
    cache: LocalCache

    def synchroniser(self, workdir: Path) -> Synchroniser:
        return Synchroniser(
            self.env_client,
            self.keystore,
            self.cache,
            organization_id=self.workspace.organization,
            project_id=self.workspace.project,
            app_id=self.workspace.app,
            workdir=workdir,
        )


def print_result(title: str, result: SyncResult) -> None:
    if result.synced:
        print(f"{title}:")
        for outcome in result.synced:
            print(f"  - {outcome.env_name} (version {outcome.version})")
    if result.skipped:
        print("Skipped:")
        for outcome in result.skipped:
            print(f"  - {outcome.env_name}: {outcome.reason}")
    if result.failed:
        print("Failed:")
        for outcome in result.failed:
            print(f"  - {outcome.env_name}: {outcome.reason}")
    if not result.outcomes:
        print("Nothing to do")


def _selection(environment: str | None) -> Selection:
    return Selection.single(environment) if environment else Selection.all()


async def run_command(args: argparse.Namespace, settings: EnvsyncSettings, cwd: Path) -> int:
    """Execute a parsed command; returns the exit code."""
    workspace = load_workspace(
        cwd,
        settings.home_dir,
        {
            "organization_id": args.organization_id,
            "project_id": args.project_id,
            "app_id": args.app_id,
        },
    )
    credentials = {
        "api_key": workspace.hyphen_api_key,
        "access_token": workspace.hyphen_access_token,
    }

    async with AsyncExitStack() as stack:
        env_client = await stack.enter_async_context(
            EnvClient.from_settings(settings, **credentials)
        )
        key_service = await stack.enter_async_context(
            KeyServiceClient.from_settings(settings, **credentials)
        )
        services = Services(
            workspace=workspace,
            env_client=env_client,
            keystore=KeyStore.for_workspace(
                workspace.organization,
                workspace.project,
                cwd=cwd,
                home_dir=settings.home_dir,
                key_service=key_service,
                local_secret=args.local_secret or settings.sync.local_secret,
                retry=RetryPolicy.from_settings(settings.sync),
            ),
            cache=LocalCache(settings.user_config_path, lock_timeout=settings.sync.lock_timeout),
        )

        if args.command == "push":
            result = await services.synchroniser(cwd).push(_selection(args.environment))
            print_result("Pushed environments", result)
            return 0 if result.ok else 1

        if args.command == "pull":
            result = await services.synchroniser(cwd).pull(
                _selection(args.environment), force=args.force, version=args.env_version
            )
            print_result("Pulled environments", result)
            return 0 if result.ok else 1

        if args.command == "rotate-key":
            if not args.yes:
                print("Key rotation re-encrypts every environment; re-run with --yes to proceed")
                return 1
            coordinator = RotationCoordinator(
                services.synchroniser(cwd),
                env_client,
                services.keystore,
                services.cache,
                organization_id=workspace.organization,
                project_id=workspace.project,
                app_id=workspace.app,
            )
            rotation = await coordinator.rotate()
            print(f"Rotated from key {rotation.previous_key_id} to key {rotation.key_id}")
            for name in rotation.rotated:
                print(f"  - {name}: re-encrypted")
            for name in rotation.already_rotated:
                print(f"  - {name}: already on the new key")
            return 0

        if args.command == "list-versions":
            payloads = await services.synchroniser(cwd).list_versions(
                args.environment, args.page, args.page_size
            )
            if not payloads:
                print("No versions found")
            for payload in payloads:
                published = payload.published_at or "-"
                print(
                    f"  v{payload.version}  {published}  {payload.count_variables} variables  "
                    f"{payload.size}  key {payload.secret_key_id}"
                )
            return 0

        key = await services.keystore.current()
        if args.command == "encrypt":
            print(cipher.encrypt(args.value, key))
            return 0
        if args.command == "decrypt":
            plaintext = cipher.decrypt(args.ciphertext, key)
            try:
                print(plaintext.decode("utf-8"))
            except UnicodeDecodeError:
                print("Error: value does not decrypt with the current project key", file=sys.stderr)
                return 1
            return 0

    msg = f"unknown command {args.command!r}"
    raise ValueError(msg)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run a command.

    Returns:
        Exit code (0 for success, 1 for any error).
    """
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format=LOG_FORMAT,
    )
    logger.debug("Configuration: %s", settings.get_snapshot())

    try:
        return asyncio.run(run_command(args, settings, Path.cwd()))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1
    except (EnvsyncError, RemoteError, ConfigValidationError) as e:
        if settings.debug:
            logger.exception("Command %s failed", args.command)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def run() -> None:
    """Console script entry point."""
    sys.exit(main())
