"""
Command-line entry points for the Brain Bits batch jobs.

Each subcommand runs one job to completion and exits non-zero if the job
raised. Scheduling (cron, a workflow runner) is left to the deployment.

Usage:
    brainbits init-db
    brainbits generate-digests [--now ISO]
    brainbits send-digests [--now ISO] [--dry-run] [--user USER_ID]
    brainbits run-sequences [--now ISO] [--dry-run]
    brainbits sync-connections --kind notion --adapter package.module:factory
"""

from __future__ import annotations

import argparse
import importlib
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from brainbits.infrastructure.env import ensure_env_loaded
from brainbits.observability.logging import get_logger
from brainbits.utils.dates import parse_iso

logger = get_logger(__name__)


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = parse_iso(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}")
    return parsed


def load_adapter(path: str) -> Any:
    """
    Build a source adapter from "package.module:factory".

    Classes and factory functions are called with no arguments; an object
    that already has a pull method is used as is.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Adapter must look like 'package.module:factory', got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, type) or (callable(target) and not hasattr(target, "pull")):
        return target()
    return target


def _cmd_init_db(args: argparse.Namespace) -> dict[str, Any]:
    from brainbits.infrastructure.database import get_db_path, init_database

    init_database()
    return {"db_path": str(get_db_path())}


def _cmd_generate_digests(args: argparse.Namespace) -> dict[str, Any]:
    from brainbits.digest.runner import generate_digests_for_all_users

    return generate_digests_for_all_users(now=args.now).to_dict()


def _cmd_send_digests(args: argparse.Namespace) -> dict[str, Any]:
    from brainbits.digest.runner import send_due_digests

    return send_due_digests(
        now=args.now, dry_run=True if args.dry_run else None, target_user_id=args.user
    ).to_dict()


def _cmd_run_sequences(args: argparse.Namespace) -> dict[str, Any]:
    from brainbits.sequences.runner import run_sequence_runner

    return run_sequence_runner(now=args.now, dry_run=args.dry_run).to_dict()


def _cmd_sync_connections(args: argparse.Namespace) -> dict[str, Any]:
    from brainbits.ingestion.sync_job import sync_all_active_connections

    adapter = load_adapter(args.adapter)
    return sync_all_active_connections(args.kind, adapter, now=args.now)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="brainbits", description="Brain Bits batch jobs")
    parser.add_argument("--env-file", help="Path to a .env file (default: project .env)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_db = subparsers.add_parser("init-db", help="Create the database schema")
    init_db.set_defaults(func=_cmd_init_db)

    generate = subparsers.add_parser("generate-digests", help="Generate today's digests")
    generate.add_argument("--now", type=_parse_now, help="Run as of this ISO timestamp")
    generate.set_defaults(func=_cmd_generate_digests)

    send = subparsers.add_parser("send-digests", help="Send due digests")
    send.add_argument("--now", type=_parse_now, help="Run as of this ISO timestamp")
    send.add_argument("--dry-run", action="store_true", help="Do not call the email provider")
    send.add_argument("--user", help="Only process this user id")
    send.set_defaults(func=_cmd_send_digests)

    sequences = subparsers.add_parser("run-sequences", help="Send due drip sequence emails")
    sequences.add_argument("--now", type=_parse_now, help="Run as of this ISO timestamp")
    sequences.add_argument("--dry-run", action="store_true", help="Do not call the email provider")
    sequences.set_defaults(func=_cmd_run_sequences)

    sync = subparsers.add_parser("sync-connections", help="Re-sync active source connections")
    sync.add_argument("--kind", required=True, choices=["notion", "obsidian"])
    sync.add_argument("--adapter", required=True, help="Adapter factory as package.module:factory")
    sync.add_argument("--now", type=_parse_now, help="Run as of this ISO timestamp")
    sync.set_defaults(func=_cmd_sync_connections)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    ensure_env_loaded(Path(args.env_file) if args.env_file else None)

    try:
        result = args.func(args)
    except Exception:
        logger.exception("[%s] failed", args.command)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
