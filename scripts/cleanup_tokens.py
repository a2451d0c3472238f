#!/usr/bin/env python3
"""Run one refresh-token cleanup sweep against the configured store.

Deletes rows whose refresh lifetime has passed and revoked rows older than
REVOKED_RETENTION_DAYS. Suitable for cron; always exits 0 and reports the
outcome as JSON on stdout.

Usage:
    JWT_SECRET=... DATABASE_URL=postgresql://... python scripts/cleanup_tokens.py
    python scripts/cleanup_tokens.py --dry-run   # report would_delete, delete nothing

Environment Variables:
    JWT_SECRET: required by the settings loader
    DATABASE_URL: PostgreSQL connection string
    REVOKED_RETENTION_DAYS: retention for revoked rows (default 30)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_cleanup(dry_run: bool = False) -> dict:
    # Import here to avoid loading config before argument parsing
    from sessionkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    sweeper = runtime.tokens.sweeper
    summary = {
        "revoked_before": sweeper.cutoff().isoformat(),
        "retention_days": runtime.settings.revoked_retention_days,
    }
    try:
        if dry_run:
            would_delete = await sweeper.preview()
            return {**summary, "status": "dry_run", "deleted": 0, "would_delete": would_delete}
        deleted = await sweeper.sweep()
        return {**summary, "status": "ok", "deleted": deleted}
    finally:
        runtime.close()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired and long-revoked refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count the rows a sweep would delete without deleting anything",
    )
    args = parser.parse_args()

    from sessionkeeper.logging import get_logger

    logger = get_logger("sessionkeeper.scripts.cleanup_tokens")
    try:
        result = asyncio.run(run_cleanup(args.dry_run))
    except Exception as exc:
        logger.error("token_cleanup_failed", error=str(exc), error_type=type(exc).__name__)
        result = {"status": "failed", "deleted": 0, "error": type(exc).__name__}
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
