#!/usr/bin/env python3
"""Generate a batch of invite codes.

Usage:
    ADMIN_SECRET=... python scripts/generate_invite_codes.py --count 50 --purpose alpha

    # Multi-use code valid until a given date, written to a file:
    python scripts/generate_invite_codes.py --count 1 --purpose "beta testers" \\
        --multi-use --max-uses 100 --expires-at 2026-12-31T00:00:00+00:00 --output codes.txt

Environment Variables:
    ADMIN_SECRET: Secret that authorizes invite generation
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


def _parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {raw}") from exc


async def generate_codes(
    admin_secret: str,
    count: int,
    purpose: str,
    *,
    multi_use: bool = False,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
):
    # Import here to avoid loading config before env vars are set
    from realmauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.invites.generate(
            admin_secret,
            count,
            purpose,
            multi_use=multi_use,
            max_uses=max_uses,
            expires_at=expires_at,
        )
    finally:
        runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate invite codes for Realm Hunter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--count", type=int, required=True, help="Number of codes to generate")
    parser.add_argument("--purpose", required=True, help="Purpose tag, e.g. alpha")
    parser.add_argument("--multi-use", action="store_true", help="Allow several redemptions per code")
    parser.add_argument("--max-uses", type=int, default=None, help="Redemption limit for multi-use codes")
    parser.add_argument("--expires-at", type=_parse_expiry, default=None, help="ISO-8601 expiry")
    parser.add_argument(
        "--admin-secret",
        default=os.environ.get("ADMIN_SECRET"),
        help="Admin secret (or set ADMIN_SECRET env var)",
    )
    parser.add_argument("--output", type=Path, default=None, help="Write codes to this file")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # stdout carries only the generated codes
    from realmauth.logging import configure_logging

    configure_logging(stream=sys.stderr)

    if not args.admin_secret:
        print("Error: --admin-secret or ADMIN_SECRET environment variable required", file=sys.stderr)
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)", file=sys.stderr)

    result = asyncio.run(
        generate_codes(
            args.admin_secret,
            args.count,
            args.purpose,
            multi_use=args.multi_use,
            max_uses=args.max_uses,
            expires_at=args.expires_at,
        )
    )
    if not result.ok:
        print(f"Error ({result.kind.value}): {result.message}", file=sys.stderr)
        return 1

    codes = result.data["codes"]
    if args.output:
        args.output.write_text("\n".join(codes) + "\n")
        print(f"Wrote {len(codes)} codes to {args.output}", file=sys.stderr)
    if args.json:
        print(json.dumps(result.data, indent=2))
    elif not args.output:
        print("\n".join(codes))
    return 0


if __name__ == "__main__":
    sys.exit(main())
