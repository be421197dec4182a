#!/usr/bin/env python3
"""Settlement Reconciliation Report.

Lists everything that needs an operator: audit events (duplicate settlement
references, forced send-lock releases, heuristic deposit recoveries), swap
jobs that executed but never settled, and bridge operations still in flight.

Usage:
    python scripts/reconcile.py [--kind send_lock_released] [--limit 50] [--json]

Options:
    --kind   Only show audit events of one kind
    --limit  Maximum rows per section (default: 100)
    --json   Print the report as JSON instead of log lines
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vaultswap.ledger.database import close_db, get_db
from vaultswap.ledger.models import BridgeDirection, SwapJobStatus
from vaultswap.ledger.repository import LedgerRepository

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def build_report(kind: Optional[str], limit: int) -> dict:
    """Collect audit events, unsettled jobs and in-flight operations."""
    async with get_db() as session:
        repo = LedgerRepository(session)

        events = await repo.get_audit_events(kind=kind, limit=limit)
        jobs = [
            job
            for job in await repo.get_runnable_jobs(limit)
            if job.status == SwapJobStatus.PROCESSING
        ]
        operations = []
        for direction in BridgeDirection:
            operations.extend(await repo.get_active_operations(direction, limit))

    return {
        "audit_events": [
            {
                "id": e.id,
                "kind": e.kind,
                "subject": f"{e.subject_type}:{e.subject_id}",
                "detail": e.detail,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ],
        "unsettled_jobs": [
            {
                "id": j.id,
                "wallet_id": j.wallet_id,
                "direction": j.direction,
                "asset": j.asset,
                "settlement_reference": j.settlement_reference,
                "claimed_by": j.claimed_by,
            }
            for j in jobs
        ],
        "active_operations": [
            {
                "id": op.id,
                "wallet_id": op.wallet_id,
                "direction": op.direction,
                "status": op.status,
                "amount": str(op.amount),
                "recovered": op.recovered,
                "leg1_send_ref": op.leg1_send_ref,
                "leg2_send_ref": op.leg2_send_ref,
            }
            for op in operations
        ],
    }


async def main():
    parser = argparse.ArgumentParser(description="Settlement Reconciliation Report")
    parser.add_argument("--kind", type=str, help="Only show audit events of this kind")
    parser.add_argument("--limit", type=int, default=100, help="Maximum rows per section")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    args = parser.parse_args()

    try:
        report = await build_report(args.kind, args.limit)
    finally:
        await close_db()

    if args.json:
        print(json.dumps(report, indent=2, default=str))
        return report

    logger.info("=" * 60)
    logger.info("SETTLEMENT RECONCILIATION")
    logger.info("=" * 60)

    logger.info(f"Audit events: {len(report['audit_events'])}")
    for e in report["audit_events"]:
        logger.info(f"  [{e['kind']}] {e['subject']} at {e['created_at']}: {e['detail']}")

    logger.info(f"Executed but unsettled swap jobs: {len(report['unsettled_jobs'])}")
    for j in report["unsettled_jobs"]:
        logger.info(
            f"  job {j['id']} wallet {j['wallet_id']} {j['direction']} {j['asset']} "
            f"ref={j['settlement_reference']} worker={j['claimed_by']}"
        )

    logger.info(f"Bridge operations in flight: {len(report['active_operations'])}")
    for op in report["active_operations"]:
        flag = " (recovered)" if op["recovered"] else ""
        logger.info(
            f"  op {op['id']} wallet {op['wallet_id']} {op['direction']} {op['status']} "
            f"{op['amount']} SOL{flag}"
        )

    return report


if __name__ == "__main__":
    asyncio.run(main())
