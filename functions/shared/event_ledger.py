"""
Event ledger for Paddle webhook idempotency.

One DynamoDB row per Paddle event_id records where that event is in its
lifecycle:

    (absent) --admit--> processing --mark processed--> processed          [permanent]
                            |      --fallback------->  processed_pending  [permanent]
                            |--release--> (absent)
                            |--stale (older than LOCK_TTL_MS) + admit--> processing

Every transition is a single conditional write, so DynamoDB itself decides
which of several concurrent deliveries wins. No in-process locking is
involved and the same code is correct across Lambda containers.

Rows have no TTL attribute: a permanent row that expired would let a
redelivered event be applied a second time.
"""

import logging
import os
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, TypeVar

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import (
    LOCK_TTL_MS,
    PERMANENT_STATUSES,
    STATUS_PROCESSED,
    STATUS_PROCESSED_PENDING,
    STATUS_PROCESSING,
    THROTTLING_ERRORS,
)
from shared.errors import LedgerUnavailableError
from shared.types import LedgerRecord

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = os.environ.get("WEBHOOK_EVENTS_TABLE", "paddlesync-webhook-events")

MAX_THROTTLE_RETRIES = 3

T = TypeVar("T")


class Admission(Enum):
    ACQUIRED = "acquired"
    ALREADY_DONE = "already_done"


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of admit_event.

    lock_timestamp is the value this call wrote, so a later release can be
    limited to the lock this caller owns.
    """

    decision: Admission
    lock_timestamp: Optional[int] = None
    took_over_stale_lock: bool = False

    @property
    def acquired(self) -> bool:
        return self.decision is Admission.ACQUIRED


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _table():
    return get_dynamodb().Table(WEBHOOK_EVENTS_TABLE)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _is_condition_failure(error: ClientError) -> bool:
    return _error_code(error) == "ConditionalCheckFailedException"


def _with_throttle_retry(operation: str, event_id: str, call: Callable[[], T]) -> T:
    """Run a ledger call, retrying only requests DynamoDB rejected unapplied.

    Errors where the write may have landed (timeouts, InternalServerError)
    are not retried here: retrying a conditional put that already succeeded
    would report our own lock back as a duplicate.
    """
    for attempt in range(MAX_THROTTLE_RETRIES):
        try:
            return call()
        except ClientError as e:
            if _error_code(e) not in THROTTLING_ERRORS or attempt == MAX_THROTTLE_RETRIES - 1:
                raise
            # Exponential backoff with jitter to prevent thundering herd
            base_delay = min(0.1 * (2 ** attempt), 2.0)
            delay = base_delay + random.uniform(0, base_delay * 0.5)
            logger.warning(
                f"Event ledger {operation} throttled for {event_id}, "
                f"retry {attempt + 1}/{MAX_THROTTLE_RETRIES} in {delay:.2f}s"
            )
            time.sleep(delay)
    raise RuntimeError("Unexpected retry state")


# ===========================================
# Admission
# ===========================================


def admit_event(
    event_id: str,
    event_type: str,
    occurred_at: str,
    now_ms: Optional[int] = None,
) -> AdmissionResult:
    """Atomically check an event and reserve it for processing.

    A single conditional PutItem succeeds only when no row exists or the
    existing row is a processing lock older than LOCK_TTL_MS or without a
    lock_timestamp; a stale lock is thereby deleted and recreated in one
    write. Anything else (a
    permanent row, a fresh lock, or a legacy row without status) fails the
    condition and the event is reported as already handled.

    Returns:
        AdmissionResult with Admission.ACQUIRED (caller must process and then
        finalize or release) or Admission.ALREADY_DONE (caller must skip)

    Raises:
        LedgerUnavailableError: ledger could not be written; caller must
            not process the event
    """
    now = _now_ms() if now_ms is None else now_ms
    item = {
        "pk": event_id,
        "event_type": event_type,
        "occurred_at": occurred_at,
        "status": STATUS_PROCESSING,
        "lock_timestamp": now,
        "updated_at": _now_iso(),
    }

    try:
        response = _with_throttle_retry(
            "admit",
            event_id,
            lambda: _table().put_item(
                Item=item,
                ConditionExpression=(
                    "attribute_not_exists(pk) OR "
                    "(#status = :processing AND "
                    "(attribute_not_exists(lock_timestamp) OR lock_timestamp < :stale_before))"
                ),
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":processing": STATUS_PROCESSING,
                    ":stale_before": now - LOCK_TTL_MS,
                },
                ReturnValues="ALL_OLD",
            ),
        )
    except ClientError as e:
        if _is_condition_failure(e):
            logger.info(f"Event {event_id} already processed or in progress, skipping")
            return AdmissionResult(Admission.ALREADY_DONE)
        raise LedgerUnavailableError("admit", event_id, e) from e
    except BotoCoreError as e:
        raise LedgerUnavailableError("admit", event_id, e) from e

    previous = response.get("Attributes") if isinstance(response, dict) else None
    if previous:
        age_ms = now - int(previous.get("lock_timestamp", 0))
        logger.warning(
            f"Took over stale processing lock for event {event_id}",
            extra={"lock_age_ms": age_ms, "event_type": event_type},
        )
        return AdmissionResult(Admission.ACQUIRED, now, took_over_stale_lock=True)

    return AdmissionResult(Admission.ACQUIRED, now)


# ===========================================
# Finalization
# ===========================================


def mark_event_processed(event_id: str, status: str = STATUS_PROCESSED) -> bool:
    """Promote a processing lock to a permanent status.

    The write is conditioned on the row still being a lock (or missing), so
    a permanent row is never rewritten.

    Returns:
        True if this call wrote the permanent status, False if the row was
        already permanent

    Raises:
        ValueError: status is not a permanent status
        LedgerUnavailableError: the write failed
    """
    if status not in PERMANENT_STATUSES:
        raise ValueError(f"Not a permanent ledger status: {status}")

    try:
        _with_throttle_retry(
            "finalize",
            event_id,
            lambda: _table().update_item(
                Key={"pk": event_id},
                UpdateExpression="SET #status = :status, lock_timestamp = :now, updated_at = :updated_at",
                ConditionExpression="attribute_not_exists(pk) OR #status = :processing",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":status": status,
                    ":processing": STATUS_PROCESSING,
                    ":now": _now_ms(),
                    ":updated_at": _now_iso(),
                },
            ),
        )
    except ClientError as e:
        if _is_condition_failure(e):
            logger.info(f"Event {event_id} already permanently recorded")
            return False
        raise LedgerUnavailableError("finalize", event_id, e) from e
    except BotoCoreError as e:
        raise LedgerUnavailableError("finalize", event_id, e) from e

    return True


def finalize_success(event_id: str) -> Optional[str]:
    """Record a successfully dispatched event permanently.

    Tries "processed" first and falls back to "processed_pending", which is
    equally permanent and only marks the row for operator follow-up.

    Returns:
        The status now stored, or None if neither write succeeded (the lock
        stays "processing" and the sender must be told to retry)
    """
    try:
        mark_event_processed(event_id, STATUS_PROCESSED)
        return STATUS_PROCESSED
    except LedgerUnavailableError as e:
        logger.error(f"Failed to mark event {event_id} as processed: {e.cause}")

    try:
        mark_event_processed(event_id, STATUS_PROCESSED_PENDING)
    except LedgerUnavailableError as e:
        logger.error(f"Failed to mark event {event_id} as processed_pending: {e.cause}")
        return None

    logger.warning(f"Event {event_id} marked as processed_pending (finalize fallback)")
    return STATUS_PROCESSED_PENDING


def release_event(event_id: str, lock_timestamp: Optional[int] = None) -> bool:
    """Delete a processing lock so a redelivery can re-admit the event.

    Only processing rows are deleted; when lock_timestamp is given, only the
    lock written by that admission. Best-effort: a failed delete is logged
    and the lock expires after LOCK_TTL_MS.

    Returns:
        True if a lock was deleted
    """
    condition = "#status = :processing"
    values = {":processing": STATUS_PROCESSING}
    if lock_timestamp is not None:
        condition += " AND lock_timestamp = :lock_timestamp"
        values[":lock_timestamp"] = lock_timestamp

    try:
        _with_throttle_retry(
            "release",
            event_id,
            lambda: _table().delete_item(
                Key={"pk": event_id},
                ConditionExpression=condition,
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues=values,
            ),
        )
    except ClientError as e:
        if _is_condition_failure(e):
            logger.info(f"No processing lock of ours to release for event {event_id}")
        else:
            logger.error(f"Failed to release event lock {event_id}, will expire after TTL: {e}")
        return False
    except BotoCoreError as e:
        logger.error(f"Failed to release event lock {event_id}, will expire after TTL: {e}")
        return False

    logger.info(f"Released event lock for {event_id} to allow retry")
    return True


# ===========================================
# Reads
# ===========================================


def get_event_record(event_id: str) -> Optional[LedgerRecord]:
    """Strongly consistent read of one ledger row."""
    try:
        response = _table().get_item(Key={"pk": event_id}, ConsistentRead=True)
    except (ClientError, BotoCoreError) as e:
        raise LedgerUnavailableError("read", event_id, e) from e
    return response.get("Item")


def effective_status(record: LedgerRecord) -> str:
    """Rows written before statuses existed count as processed."""
    return record.get("status") or STATUS_PROCESSED


def is_stale_lock(record: LedgerRecord, now_ms: Optional[int] = None) -> bool:
    """True when admission would take this row over; a lock without a timestamp always is."""
    if effective_status(record) != STATUS_PROCESSING:
        return False
    now = _now_ms() if now_ms is None else now_ms
    return now - int(record.get("lock_timestamp", 0)) > LOCK_TTL_MS


def list_events_by_status(status: str, limit: Optional[int] = None) -> list[LedgerRecord]:
    """Scan the ledger for rows in a given status (operator tooling only)."""
    table = _table()
    scan_kwargs = {
        "FilterExpression": Attr("status").eq(status),
    }

    records: list[LedgerRecord] = []
    while True:
        response = table.scan(**scan_kwargs)
        records.extend(response.get("Items", []))
        if limit and len(records) >= limit:
            return records[:limit]
        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    return records
