"""Resume stale pending reward claims once.

Intended usage: schedule via cron when the in-process recovery worker is
disabled, or run by hand after an incident.

Example:
    python tooling/scripts/run_claim_recovery.py --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute one stale pending claim recovery sweep")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label logged with the sweep summary to describe the invocation source.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Override the number of claims processed in this sweep.",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Override the recovery cap before a claim is marked provisioning_failed.",
    )
    return parser.parse_args()


async def _run(trigger: str, limit: int | None, max_attempts: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from giftcard_api.core.settings import settings  # type: ignore import-position
    from giftcard_api.db.session import async_session  # type: ignore import-position
    from giftcard_api.services.delivery.handoff import DeliveryHandoff  # type: ignore import-position
    from giftcard_api.workers import ClaimRecoveryWorker  # type: ignore import-position

    handoff = DeliveryHandoff(async_session)
    worker = ClaimRecoveryWorker(
        async_session,  # type: ignore[arg-type]
        handoff=handoff,
        limit=limit or settings.claim_recovery_limit,
        max_attempts=max_attempts or settings.claim_recovery_max_attempts,
        trigger_label=settings.claim_recovery_trigger_label,
    )
    summary = await worker.run_once(triggered_by=trigger)
    await handoff.drain()
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.limit, args.max_attempts))
    logger.success(
        "Claim recovery run completed",
        scanned=summary.get("scanned", 0),
        resumed=summary.get("resumed", 0),
        exhausted=summary.get("exhausted", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
