"""
Command-line entry point.

    session-mirror status
    session-mirror sign-in
    session-mirror sync
    session-mirror list [--remote] [--limit N]
    session-mirror sign-out
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Settings
from .exceptions import AuthenticationError, SessionStorageError
from .identity.credentials import CredentialManager, open_system_browser
from .identity.secrets import SecretStore
from .logging_utils import configure_structured_logging
from .manager import SessionManager


def _format_ms(value: int | None) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _announce_and_open(url: str) -> None:
    print("Opening browser for authentication...")
    print(f"If browser doesn't open, visit:\n{url}\n")
    open_system_browser(url)
    print("Waiting for authentication callback...")


async def _status(manager: SessionManager) -> int:
    status = await manager.get_auth_status()
    stats = await manager.storage_stats()
    if status.is_signed_in:
        print(f"Account:  {status.display_name} ({status.email})")
    else:
        print("Account:  not signed in")
    print(f"Backend:  {stats.backend}")
    print(f"Sessions: {stats.session_count} ({stats.message_count} messages)")
    print(f"Size:     {stats.size_bytes} bytes")
    print(f"Storage:  {manager.settings.storage_dir}")
    return 0


async def _sign_in(manager: SessionManager) -> int:
    status = await manager.sign_in()
    print(f"\nSigned in as: {status.display_name} ({status.email})")
    print(f"Last sync:    {_format_ms(manager.last_sync_at)}")
    return 0


async def _sign_out(manager: SessionManager) -> int:
    await manager.sign_out()
    print("Signed out. Local sessions were kept.")
    return 0


async def _sync(manager: SessionManager) -> int:
    result = await manager.sync_now()
    print(f"Pull: {result.value}")
    print(f"Last sync: {_format_ms(manager.last_sync_at)}")
    return 0


async def _list(manager: SessionManager, remote: bool, limit: int | None) -> int:
    if remote:
        entries = await manager.remote_sessions()
        for entry in entries[:limit] if limit else entries:
            print(f"{entry.id}  {_format_ms(entry.updated_at)}  [{entry.mode}] {entry.title}")
        return 0

    for summary in await manager.list_sessions(limit):
        print(
            f"{summary.id}  {_format_ms(summary.updated_at)}  "
            f"[{summary.mode.value}] {summary.title} ({summary.message_count} messages)"
        )
    return 0


async def run(args: argparse.Namespace) -> int:
    settings = Settings.load(args.config)
    credentials = CredentialManager(
        SecretStore(settings.secrets_path), settings.oauth, open_browser=_announce_and_open
    )
    manager = await SessionManager.create(settings, credentials)
    try:
        if args.command == "status":
            return await _status(manager)
        if args.command == "sign-in":
            return await _sign_in(manager)
        if args.command == "sign-out":
            return await _sign_out(manager)
        if args.command == "sync":
            return await _sync(manager)
        if args.command == "list":
            return await _list(manager, args.remote, args.limit)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await manager.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session-mirror",
        description="Session Mirror - local session history with Google Drive sync",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to settings.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines on stderr")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show account and storage status")
    sub.add_parser("sign-in", help="Connect a Google account and pull its sessions")
    sub.add_parser("sign-out", help="Push once more, then forget the account")
    sub.add_parser("sync", help="Pull remote changes, then push")

    list_parser = sub.add_parser("list", help="List sessions, newest first")
    list_parser.add_argument("--remote", action="store_true", help="List the remote index instead")
    list_parser.add_argument("--limit", type=int, default=None, help="Maximum number of sessions")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    if args.json_logs:
        configure_structured_logging(level)
    else:
        logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        return asyncio.run(run(args))
    except AuthenticationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except SessionStorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
