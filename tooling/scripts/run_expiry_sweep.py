#!/usr/bin/env python3
"""Run the points expiry sweep once.

Example:
    python tooling/scripts/run_expiry_sweep.py
    python tooling/scripts/run_expiry_sweep.py --user-id 3f0c... --force

The sweep honours the ``POINTS_ENABLE_EXPIRY`` setting unless ``--force`` is given.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire points past their expiry window")
    parser.add_argument("--user-id", help="Only sweep this user's ledger entries.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even when points expiry is disabled in settings.",
    )
    return parser.parse_args()


async def _run(user_id: str | None, force: bool) -> dict:
    repo_root = Path(__file__).resolve().parents[2]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))

    from loyalty_ledger.db.session import async_session  # type: ignore import-position
    from loyalty_ledger.jobs.expiry import run_expiry_sweep  # type: ignore import-position

    return await run_expiry_sweep(session_factory=async_session, user_id=user_id, force=force)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.user_id, args.force))
    logger.success("Points expiry sweep completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
