#!/usr/bin/env python3
"""Compare reward account point balances with the append-only transaction log.

Intended usage: schedule nightly via cron or a workflow runner.

Example:
    python tooling/scripts/reconcile_reward_accounts.py
    python tooling/scripts/reconcile_reward_accounts.py --user-id 6f1c...
    python tooling/scripts/reconcile_reward_accounts.py --repair

Exits with status 1 when any account still drifts from its log after the run.
``--repair`` credits points the log shows as owed (failed bracket bonus credits).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import UUID

from loguru import logger

from storefront_rewards.db.session import async_session
from storefront_rewards.services.rewards import reconcile_account, reconcile_all_accounts


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile reward point balances against the audit log")
    parser.add_argument(
        "--user-id",
        type=UUID,
        default=None,
        help="Only reconcile this user's account.",
    )
    parser.add_argument(
        "--repair",
        action="store_true",
        help="Credit owed points recorded in the log but missing from the balance.",
    )
    return parser.parse_args(argv)


async def _run(user_id: UUID | None, *, repair: bool) -> tuple[int, int]:
    async with async_session() as session:
        if user_id is not None:
            reports = [await reconcile_account(session, user_id, repair=repair)]
        else:
            reports = await reconcile_all_accounts(session, repair=repair)

    repaired = sum(report.repaired_points for report in reports)
    if repaired:
        logger.info("Restored owed reward points", points=repaired)

    drifted = [report for report in reports if not report.balanced]
    for report in drifted:
        logger.error(
            "Reward account out of balance",
            user_id=str(report.user_id),
            earned_drift=report.earned_drift,
            redeemed_drift=report.redeemed_drift,
        )
    return len(reports), len(drifted)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    checked, drifted = asyncio.run(_run(args.user_id, repair=args.repair))
    if drifted:
        logger.warning("Reward reconciliation found drift", accounts_checked=checked, accounts_drifted=drifted)
        return 1
    logger.success("Reward reconciliation completed", accounts_checked=checked)
    return 0


if __name__ == "__main__":
    sys.exit(main())
