"""Release abandoned redemption codes once.

Intended usage: schedule via cron when the in-process sweep worker is
disabled, or run by hand after an outage.

Example:
    python tooling/scripts/run_pending_sweep.py --grace-seconds 60
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Release expired pending coupon usages once")
    parser.add_argument(
        "--grace-seconds",
        type=int,
        default=None,
        help="Extra seconds past the validity window before a pending code is released.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of usages released in this sweep.",
    )
    return parser.parse_args()


async def _run(grace_seconds: int | None, batch_size: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from noxly_api.core.settings import settings  # type: ignore import-position
    from noxly_api.db.session import async_session  # type: ignore import-position
    from noxly_api.workers import PendingUsageSweepWorker  # type: ignore import-position

    worker = PendingUsageSweepWorker(
        async_session,  # type: ignore[arg-type]
        interval_seconds=settings.pending_sweep_interval_seconds,
        grace_seconds=settings.pending_sweep_grace_seconds if grace_seconds is None else grace_seconds,
        batch_size=batch_size or settings.pending_sweep_batch_size,
    )
    return await worker.run_once()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.grace_seconds, args.batch_size))
    logger.success(
        "Pending usage sweep completed",
        released=summary.get("released", 0),
        refunded_points=summary.get("refunded_points", 0),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
