#!/usr/bin/env python3
"""TeamGuard maintenance CLI.

Runs the periodic maintenance jobs once, for cron or manual use.

Usage:
    teamguard-maintenance purge-revocations
    teamguard-maintenance purge-grants
    teamguard-maintenance --format json refresh-credentials

Exit Codes:
    0 - Success
    1 - Job ran but some entries failed
    2 - Configuration or database error
    3 - Invalid arguments
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from teamguard.config import get_settings
from teamguard.core.logging import setup_logging
from teamguard.core.maintenance import purge_grants, purge_revocations, refresh_credentials
from teamguard.database import close_db, init_db


def _emit(args: argparse.Namespace, payload: dict) -> None:
    if args.format == "json":
        print(json.dumps(payload))
    else:
        print(" ".join(f"{k}={v}" for k, v in payload.items()))


async def cmd_purge_revocations(args: argparse.Namespace) -> int:
    removed = await purge_revocations()
    _emit(args, {"job": "purge-revocations", "removed": removed})
    return 0


async def cmd_purge_grants(args: argparse.Namespace) -> int:
    removed = await purge_grants()
    _emit(args, {"job": "purge-grants", "removed": removed})
    return 0


async def cmd_refresh_credentials(args: argparse.Namespace) -> int:
    report = await refresh_credentials()
    _emit(args, {"job": "refresh-credentials", **asdict(report)})
    return 1 if report.failed else 0


COMMANDS = {
    "purge-revocations": cmd_purge_revocations,
    "purge-grants": cmd_purge_grants,
    "refresh-credentials": cmd_refresh_credentials,
}


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="teamguard-maintenance",
        description="Run TeamGuard maintenance jobs once",
    )
    parser.add_argument("--format", choices=["text", "json"], default="text")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("purge-revocations", help="Delete revocation entries past their natural expiry")
    subparsers.add_parser("purge-grants", help="Delete expired permission grants")
    subparsers.add_parser("refresh-credentials", help="Refresh integration tokens nearing expiry")
    return parser


async def _run(args: argparse.Namespace) -> int:
    await init_db()
    try:
        return await COMMANDS[args.command](args)
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 3

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(json_output=settings.log_json, level=args.log_level or settings.log_level)

    try:
        return asyncio.run(_run(args))
    except SQLAlchemyError as e:
        print(f"Database error: {type(e).__name__}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
