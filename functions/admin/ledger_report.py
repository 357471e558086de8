"""
Ledger Report - summarize the webhook event ledger for operators.

Counts ledger rows by status and lists the rows that need a human look:
- processed_pending: the "processed" write failed after a successful
  dispatch and the fallback status was stored instead. These rows are
  permanent and are never rewritten; the list points at the storage
  incident behind them.
- processing older than the lock TTL: a delivery crashed mid-dispatch and
  Paddle has not redelivered yet. The next delivery takes the lock over.

Triggered daily by EventBridge, or run locally:
    PYTHONPATH=functions python3 functions/admin/ledger_report.py --dry-run
"""

import argparse
import json
import logging
import time
from typing import Optional

from shared.aws_clients import get_dynamodb
from shared.constants import (
    STATUS_PROCESSED,
    STATUS_PROCESSED_PENDING,
    STATUS_PROCESSING,
)
from shared.event_ledger import (
    WEBHOOK_EVENTS_TABLE,
    effective_status,
    is_stale_lock,
    list_events_by_status,
)
from shared.metrics import emit_batch_metrics
from shared.types import LambdaContext

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

MAX_LISTED = 100


def count_by_status() -> dict[str, int]:
    """Scan the ledger once, counting rows per effective status."""
    table = get_dynamodb().Table(WEBHOOK_EVENTS_TABLE)
    counts = {STATUS_PROCESSING: 0, STATUS_PROCESSED: 0, STATUS_PROCESSED_PENDING: 0}
    scan_kwargs = {
        "ProjectionExpression": "#status",
        "ExpressionAttributeNames": {"#status": "status"},
    }

    while True:
        response = table.scan(**scan_kwargs)
        for item in response.get("Items", []):
            status = effective_status(item)
            counts[status] = counts.get(status, 0) + 1
        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    return counts


def build_report(now_ms: Optional[int] = None) -> dict:
    now = int(time.time() * 1000) if now_ms is None else now_ms

    counts = count_by_status()
    pending = list_events_by_status(STATUS_PROCESSED_PENDING)
    stale = [r for r in list_events_by_status(STATUS_PROCESSING) if is_stale_lock(r, now)]

    return {
        "counts": counts,
        "processed_pending": [
            {"event_id": r["pk"], "event_type": r.get("event_type"), "updated_at": r.get("updated_at")}
            for r in pending[:MAX_LISTED]
        ],
        "stale_locks": [
            {
                "event_id": r["pk"],
                "event_type": r.get("event_type"),
                "lock_age_seconds": (now - int(r.get("lock_timestamp", 0))) // 1000,
            }
            for r in stale[:MAX_LISTED]
        ],
        "processed_pending_total": len(pending),
        "stale_lock_total": len(stale),
    }


def emit_report_metrics(report: dict) -> None:
    counts = report["counts"]
    emit_batch_metrics(
        [
            {"metric_name": "LedgerProcessing", "value": counts.get(STATUS_PROCESSING, 0)},
            {"metric_name": "LedgerProcessed", "value": counts.get(STATUS_PROCESSED, 0)},
            {"metric_name": "LedgerProcessedPending", "value": counts.get(STATUS_PROCESSED_PENDING, 0)},
            {"metric_name": "LedgerStaleLocks", "value": report["stale_lock_total"]},
        ]
    )


def handler(event: dict, context: LambdaContext) -> dict:
    """Build the ledger report and publish its counts."""
    report = build_report()

    if report["processed_pending_total"]:
        logger.warning(f"{report['processed_pending_total']} events recorded as processed_pending")
    if report["stale_lock_total"]:
        logger.warning(f"{report['stale_lock_total']} stale processing locks awaiting redelivery")
    logger.info(f"Ledger status counts: {report['counts']}")

    emit_report_metrics(report)
    return {"statusCode": 200, **report}


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    parser = argparse.ArgumentParser(description="Summarize the webhook event ledger")
    parser.add_argument("--dry-run", action="store_true", help="Print the report without emitting metrics")
    args = parser.parse_args()

    report = build_report()
    if not args.dry_run:
        emit_report_metrics(report)
    print(json.dumps(report, indent=2, default=str))


if __name__ == "__main__":
    main()
