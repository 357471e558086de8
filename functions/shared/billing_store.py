"""
DynamoDB projections of Paddle billing entities.

Each table is keyed by Paddle's own id (pk). Writes are single atomic
operations with idempotent semantics so that an event applied twice, or
applied out of order, converges on the same row:

- insert-if-absent: PutItem with attribute_not_exists(pk)
- patch-if-present: UpdateItem with attribute_exists(pk)
- upsert: UpdateItem without condition

Secondary indexes (user-id-index, org-id-index) serve lookups by the
linkage identifiers callers put in Paddle custom_data.
"""

import logging
import os
from typing import Any, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import BACKFILL_BATCH_SIZE
from shared.types import (
    AdjustmentRecord,
    CustomerRecord,
    SubscriptionRecord,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

CUSTOMERS_TABLE = os.environ.get("CUSTOMERS_TABLE", "paddlesync-customers")
SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "paddlesync-subscriptions")
TRANSACTIONS_TABLE = os.environ.get("TRANSACTIONS_TABLE", "paddlesync-transactions")
ADJUSTMENTS_TABLE = os.environ.get("ADJUSTMENTS_TABLE", "paddlesync-adjustments")


# ===========================================
# Write primitives
# ===========================================


def _clean(values: dict) -> dict:
    """Drop None and empty strings (DynamoDB rejects empty index keys)."""
    return {k: v for k, v in values.items() if v is not None and v != ""}


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code", "") == "ConditionalCheckFailedException"


def _build_update(set_fields: dict, remove_fields: tuple = ()) -> dict:
    """Build UpdateItem expression kwargs with placeholder names for every field."""
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts = []
    remove_parts = []

    for i, (field_name, value) in enumerate(set_fields.items()):
        names[f"#s{i}"] = field_name
        values[f":s{i}"] = value
        set_parts.append(f"#s{i} = :s{i}")

    for i, field_name in enumerate(remove_fields):
        names[f"#r{i}"] = field_name
        remove_parts.append(f"#r{i}")

    expression = []
    if set_parts:
        expression.append("SET " + ", ".join(set_parts))
    if remove_parts:
        expression.append("REMOVE " + ", ".join(remove_parts))

    kwargs = {
        "UpdateExpression": " ".join(expression),
        "ExpressionAttributeNames": names,
    }
    if values:
        kwargs["ExpressionAttributeValues"] = values
    return kwargs


def _insert_if_absent(table_name: str, item: dict) -> bool:
    """Put a new row; first writer wins. Returns True if inserted."""
    table = get_dynamodb().Table(table_name)
    try:
        table.put_item(Item=_clean(item), ConditionExpression="attribute_not_exists(pk)")
        return True
    except ClientError as e:
        if _is_condition_failure(e):
            return False
        raise


def _patch_if_present(table_name: str, pk: str, set_fields: dict, remove_fields: tuple = ()) -> bool:
    """Update an existing row; no-op if absent. Returns True if patched."""
    set_fields = _clean(set_fields)
    if not set_fields and not remove_fields:
        return False

    table = get_dynamodb().Table(table_name)
    try:
        table.update_item(
            Key={"pk": pk},
            ConditionExpression="attribute_exists(pk)",
            **_build_update(set_fields, remove_fields),
        )
        return True
    except ClientError as e:
        if _is_condition_failure(e):
            return False
        raise


def _upsert(table_name: str, pk: str, set_fields: dict) -> None:
    """Patch the row if present, create it if absent, in one write."""
    set_fields = _clean(set_fields)
    if not set_fields:
        _insert_if_absent(table_name, {"pk": pk})
        return
    get_dynamodb().Table(table_name).update_item(Key={"pk": pk}, **_build_update(set_fields))


def _mirrored(fields: dict) -> tuple[dict, tuple]:
    """Split state fields into SET (present) and REMOVE (absent) parts.

    Used for fields whose absence in a payload means the state was cleared,
    e.g. a resumed subscription no longer has paused_at.
    """
    to_set = {k: v for k, v in fields.items() if v is not None and v != ""}
    to_remove = tuple(k for k, v in fields.items() if v is None or v == "")
    return to_set, to_remove


def extract_linkage(custom_data: Optional[dict]) -> tuple[Optional[str], Optional[str]]:
    """Read (user_id, org_id) from Paddle custom_data."""
    if not isinstance(custom_data, dict):
        return None, None
    user_id = custom_data.get("userId") or custom_data.get("user_id")
    org_id = custom_data.get("orgId") or custom_data.get("org_id")
    return (
        str(user_id) if user_id else None,
        str(org_id) if org_id else None,
    )


# ===========================================
# Customers
# ===========================================


def create_customer(
    customer_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    status: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> bool:
    """Insert a customer unless one exists (first create wins)."""
    inserted = _insert_if_absent(CUSTOMERS_TABLE, {
        "pk": customer_id,
        "email": email,
        "name": name,
        "status": status,
        "custom_data": custom_data or {},
    })
    if not inserted:
        logger.info(f"Customer {customer_id} already stored, ignoring create")
    return inserted


def update_customer(
    customer_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    status: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> None:
    """Patch a customer, creating it if the create event has not arrived yet."""
    _upsert(CUSTOMERS_TABLE, customer_id, {
        "email": email,
        "name": name,
        "status": status,
        "custom_data": custom_data,
    })


# ===========================================
# Subscriptions
# ===========================================


def create_subscription(
    subscription_id: str,
    customer_id: str,
    status: str,
    price_id: Optional[str] = None,
    quantity: Optional[int] = None,
    scheduled_change: Optional[dict] = None,
    current_billing_period_start: Optional[str] = None,
    current_billing_period_end: Optional[str] = None,
    next_billed_at: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> bool:
    """Insert a subscription unless present, then backfill its transactions.

    Transactions can arrive before their subscription; those rows are given
    the subscription's linkage identifiers. The backfill runs on every
    create delivery, which is safe because it only fills missing fields.

    Returns:
        True if the subscription row was inserted by this call
    """
    custom_data = custom_data or {}
    user_id, org_id = extract_linkage(custom_data)

    inserted = _insert_if_absent(SUBSCRIPTIONS_TABLE, {
        "pk": subscription_id,
        "customer_id": customer_id,
        "status": status,
        "price_id": price_id,
        "quantity": quantity,
        "scheduled_change": scheduled_change,
        "current_billing_period_start": current_billing_period_start,
        "current_billing_period_end": current_billing_period_end,
        "next_billed_at": next_billed_at,
        "custom_data": custom_data,
        "user_id": user_id,
        "org_id": org_id,
    })
    if not inserted:
        logger.info(f"Subscription {subscription_id} already stored, ignoring create")

    if user_id or org_id:
        backfill_transaction_linkage(subscription_id, user_id, org_id)

    return inserted


def backfill_transaction_linkage(
    subscription_id: str,
    user_id: Optional[str],
    org_id: Optional[str],
    batch_size: int = BACKFILL_BATCH_SIZE,
) -> int:
    """Fill missing user_id/org_id on a subscription's transactions.

    Walks the subscription-index one page of batch_size rows at a time and
    patches only rows missing a field, using if_not_exists so a concurrent
    writer's value is never overwritten. Restartable from the beginning.

    Returns:
        Number of transaction rows patched
    """
    if not user_id and not org_id:
        return 0

    table = get_dynamodb().Table(TRANSACTIONS_TABLE)
    query_kwargs = {
        "IndexName": "subscription-index",
        "KeyConditionExpression": Key("subscription_id").eq(subscription_id),
        "Limit": batch_size,
    }

    patched = 0
    while True:
        response = table.query(**query_kwargs)
        page = response.get("Items", [])

        for txn in page:
            set_parts = []
            values = {}
            if user_id and not txn.get("user_id"):
                set_parts.append("user_id = if_not_exists(user_id, :user_id)")
                values[":user_id"] = user_id
            if org_id and not txn.get("org_id"):
                set_parts.append("org_id = if_not_exists(org_id, :org_id)")
                values[":org_id"] = org_id
            if not set_parts:
                continue

            table.update_item(
                Key={"pk": txn["pk"]},
                UpdateExpression="SET " + ", ".join(set_parts),
                ExpressionAttributeValues=values,
            )
            patched += 1

        if "LastEvaluatedKey" not in response:
            break
        query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    if patched:
        logger.info(f"Backfilled linkage on {patched} transactions for subscription {subscription_id}")
    return patched


def update_subscription(
    subscription_id: str,
    status: str,
    price_id: Optional[str] = None,
    quantity: Optional[int] = None,
    scheduled_change: Optional[dict] = None,
    current_billing_period_start: Optional[str] = None,
    current_billing_period_end: Optional[str] = None,
    next_billed_at: Optional[str] = None,
    paused_at: Optional[str] = None,
    canceled_at: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> bool:
    """Apply a full subscription snapshot to an existing row.

    No-op when the row does not exist yet: "updated" may be delivered before
    "created", and the create carries the complete state anyway.
    """
    to_set, to_remove = _mirrored({
        "quantity": quantity,
        "scheduled_change": scheduled_change,
        "current_billing_period_start": current_billing_period_start,
        "current_billing_period_end": current_billing_period_end,
        "next_billed_at": next_billed_at,
        "paused_at": paused_at,
        "canceled_at": canceled_at,
    })
    to_set["status"] = status
    if price_id:
        to_set["price_id"] = price_id
    if custom_data is not None:
        to_set["custom_data"] = custom_data
        user_id, org_id = extract_linkage(custom_data)
        if user_id:
            to_set["user_id"] = user_id
        if org_id:
            to_set["org_id"] = org_id

    patched = _patch_if_present(SUBSCRIPTIONS_TABLE, subscription_id, to_set, to_remove)
    if not patched:
        logger.info(f"Subscription {subscription_id} not stored yet, skipping update")
    return patched


def activate_subscription(
    subscription_id: str,
    next_billed_at: Optional[str] = None,
    current_billing_period_start: Optional[str] = None,
    current_billing_period_end: Optional[str] = None,
) -> bool:
    to_set, to_remove = _mirrored({
        "next_billed_at": next_billed_at,
        "current_billing_period_start": current_billing_period_start,
        "current_billing_period_end": current_billing_period_end,
    })
    to_set["status"] = "active"
    return _patch_if_present(SUBSCRIPTIONS_TABLE, subscription_id, to_set, to_remove)


def cancel_subscription(subscription_id: str, canceled_at: Optional[str] = None) -> bool:
    """Mark canceled; any scheduled change no longer applies."""
    to_set, to_remove = _mirrored({"canceled_at": canceled_at})
    to_set["status"] = "canceled"
    return _patch_if_present(
        SUBSCRIPTIONS_TABLE, subscription_id, to_set, to_remove + ("scheduled_change",)
    )


def pause_subscription(subscription_id: str, paused_at: Optional[str] = None) -> bool:
    to_set, to_remove = _mirrored({"paused_at": paused_at})
    to_set["status"] = "paused"
    return _patch_if_present(SUBSCRIPTIONS_TABLE, subscription_id, to_set, to_remove)


def resume_subscription(subscription_id: str, next_billed_at: Optional[str] = None) -> bool:
    to_set, to_remove = _mirrored({"next_billed_at": next_billed_at})
    to_set["status"] = "active"
    return _patch_if_present(
        SUBSCRIPTIONS_TABLE, subscription_id, to_set, to_remove + ("paused_at",)
    )


def set_subscription_quantity(subscription_id: str, quantity: int) -> bool:
    return _patch_if_present(SUBSCRIPTIONS_TABLE, subscription_id, {"quantity": quantity})


# ===========================================
# Transactions
# ===========================================


def _resolve_transaction_linkage(
    custom_data: Optional[dict], subscription_id: Optional[str]
) -> tuple[Optional[str], Optional[str]]:
    """Linkage from custom_data, else inherited from the subscription row."""
    user_id, org_id = extract_linkage(custom_data)
    if user_id or org_id or not subscription_id:
        return user_id, org_id

    subscription = get_subscription(subscription_id)
    if subscription:
        return subscription.get("user_id"), subscription.get("org_id")
    return None, None


def create_transaction(
    transaction_id: str,
    status: str,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    currency_code: Optional[str] = None,
    total_amount: Optional[str] = None,
    collection_mode: Optional[str] = None,
    billed_at: Optional[str] = None,
    created_at: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> bool:
    """Insert a transaction unless present."""
    if get_transaction(transaction_id):
        return False

    user_id, org_id = _resolve_transaction_linkage(custom_data, subscription_id)
    return _insert_if_absent(TRANSACTIONS_TABLE, {
        "pk": transaction_id,
        "customer_id": customer_id,
        "subscription_id": subscription_id,
        "status": status,
        "currency_code": currency_code,
        "total_amount": total_amount,
        "collection_mode": collection_mode,
        "billed_at": billed_at,
        "created_at": created_at,
        "custom_data": custom_data or {},
        "user_id": user_id,
        "org_id": org_id,
    })


def update_transaction(
    transaction_id: str,
    status: str,
    total_amount: Optional[str] = None,
    billed_at: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> bool:
    """Patch status and totals of an existing transaction."""
    patched = _patch_if_present(TRANSACTIONS_TABLE, transaction_id, {
        "status": status,
        "total_amount": total_amount,
        "billed_at": billed_at,
        "custom_data": custom_data,
    })
    if not patched:
        logger.info(f"Transaction {transaction_id} not stored yet, skipping update")
    return patched


def complete_transaction(
    transaction_id: str,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    total_amount: Optional[str] = None,
    billed_at: Optional[str] = None,
    custom_data: Optional[dict] = None,
) -> None:
    """Mark a transaction completed, creating it if no earlier event stored it."""
    patch = {
        "status": "completed",
        "total_amount": total_amount,
        "billed_at": billed_at,
        "customer_id": customer_id,
        "subscription_id": subscription_id,
    }
    if _patch_if_present(TRANSACTIONS_TABLE, transaction_id, patch):
        return

    user_id, org_id = _resolve_transaction_linkage(custom_data, subscription_id)
    inserted = _insert_if_absent(TRANSACTIONS_TABLE, {
        "pk": transaction_id,
        "customer_id": customer_id,
        "subscription_id": subscription_id,
        "status": "completed",
        "total_amount": total_amount,
        "billed_at": billed_at,
        "custom_data": custom_data or {},
        "user_id": user_id,
        "org_id": org_id,
    })
    if not inserted:
        # Created concurrently between the patch and the insert
        _patch_if_present(TRANSACTIONS_TABLE, transaction_id, patch)


# ===========================================
# Adjustments
# ===========================================


def create_adjustment(
    adjustment_id: str,
    transaction_id: str,
    action: str,
    status: str,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    reason: Optional[str] = None,
    total_amount: Optional[str] = None,
    currency_code: Optional[str] = None,
    created_at: Optional[str] = None,
) -> bool:
    return _insert_if_absent(ADJUSTMENTS_TABLE, {
        "pk": adjustment_id,
        "transaction_id": transaction_id,
        "customer_id": customer_id,
        "subscription_id": subscription_id,
        "action": action,
        "reason": reason,
        "status": status,
        "total_amount": total_amount,
        "currency_code": currency_code,
        "created_at": created_at,
    })


def update_adjustment(adjustment_id: str, status: str, total_amount: Optional[str] = None) -> bool:
    return _patch_if_present(ADJUSTMENTS_TABLE, adjustment_id, {
        "status": status,
        "total_amount": total_amount,
    })


# ===========================================
# Queries
# ===========================================


def _get(table_name: str, pk: str) -> Optional[dict]:
    response = get_dynamodb().Table(table_name).get_item(Key={"pk": pk}, ConsistentRead=True)
    return response.get("Item")


def _query_index(table_name: str, index_name: str, attribute: str, value: str) -> list[dict]:
    """Query a GSI, following pagination."""
    table = get_dynamodb().Table(table_name)
    query_kwargs = {
        "IndexName": index_name,
        "KeyConditionExpression": Key(attribute).eq(value),
    }

    items = []
    while True:
        response = table.query(**query_kwargs)
        items.extend(response.get("Items", []))
        if "LastEvaluatedKey" not in response:
            break
        query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
    return items


def get_customer(customer_id: str) -> Optional[CustomerRecord]:
    return _get(CUSTOMERS_TABLE, customer_id)


def get_customer_by_email(email: str) -> Optional[CustomerRecord]:
    items = _query_index(CUSTOMERS_TABLE, "email-index", "email", email)
    return items[0] if items else None


def get_subscription(subscription_id: str) -> Optional[SubscriptionRecord]:
    return _get(SUBSCRIPTIONS_TABLE, subscription_id)


def list_subscriptions_by_customer(customer_id: str) -> list[SubscriptionRecord]:
    return _query_index(SUBSCRIPTIONS_TABLE, "customer-index", "customer_id", customer_id)


def list_subscriptions_by_user_id(user_id: str) -> list[SubscriptionRecord]:
    return _query_index(SUBSCRIPTIONS_TABLE, "user-id-index", "user_id", user_id)


def get_subscription_by_org_id(org_id: str) -> Optional[SubscriptionRecord]:
    """An organization's subscription, preferring one that is not canceled."""
    items = _query_index(SUBSCRIPTIONS_TABLE, "org-id-index", "org_id", org_id)
    if not items:
        return None
    live = [s for s in items if s.get("status") != "canceled"]
    return (live or items)[0]


def get_transaction(transaction_id: str) -> Optional[TransactionRecord]:
    return _get(TRANSACTIONS_TABLE, transaction_id)


def list_transactions_by_customer(customer_id: str) -> list[TransactionRecord]:
    return _query_index(TRANSACTIONS_TABLE, "customer-index", "customer_id", customer_id)


def list_transactions_by_user_id(user_id: str) -> list[TransactionRecord]:
    return _query_index(TRANSACTIONS_TABLE, "user-id-index", "user_id", user_id)


def list_transactions_by_org_id(org_id: str) -> list[TransactionRecord]:
    return _query_index(TRANSACTIONS_TABLE, "org-id-index", "org_id", org_id)


def list_transactions_by_subscription(subscription_id: str) -> list[TransactionRecord]:
    return _query_index(TRANSACTIONS_TABLE, "subscription-index", "subscription_id", subscription_id)


def list_adjustments_by_transaction(transaction_id: str) -> list[AdjustmentRecord]:
    return _query_index(ADJUSTMENTS_TABLE, "transaction-index", "transaction_id", transaction_id)
