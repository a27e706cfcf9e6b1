"""Verify balances of delivered gift cards against the supplier.

Example:
    python tooling/scripts/run_balance_reconciliation.py --brand amazon --limit 100
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one batch of gift card balance checks")
    parser.add_argument("--brand", default=None, help="Restrict the batch to one brand id.")
    parser.add_argument("--client", default=None, help="Restrict the batch to one owning client id.")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Override the number of delivered units checked in this batch.",
    )
    return parser.parse_args()


async def _run(brand_id: str | None, owner_client_id: str | None, limit: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from giftcard_api.db.session import async_session  # type: ignore import-position
    from giftcard_api.services.provisioning import build_supplier_client  # type: ignore import-position
    from giftcard_api.services.reconciliation import BalanceReconciler  # type: ignore import-position

    supplier = build_supplier_client()
    if supplier is None:
        logger.warning("Supplier credentials missing; every check will be recorded as an error")

    async with async_session() as session:
        reconciler = BalanceReconciler(session, supplier=supplier)
        return await reconciler.check_pool_balances(
            brand_id=brand_id,
            owner_client_id=owner_client_id,
            limit=limit,
        )


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.brand, args.client, args.limit))
    logger.success("Balance reconciliation run completed", **summary)
    return 0 if summary.get("failed", 0) == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
