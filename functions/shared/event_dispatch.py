"""
Default effects for Paddle webhook events.

Maps each event type to a projection of its payload onto the billing store.
The table is built once at import time; unknown types fall through to a
logged no-op so new Paddle event types never fail a delivery.
"""

import logging
from typing import Any, Callable, Optional

from shared import billing_store
from shared.types import EventHandler, PaddleWebhookEvent

logger = logging.getLogger(__name__)


def _first_item(data: dict) -> dict:
    items = data.get("items") or []
    return items[0] if items else {}


def _price_id(data: dict) -> Optional[str]:
    item = _first_item(data)
    return (item.get("price") or {}).get("id") or item.get("price_id")


def _quantity(data: dict) -> Optional[int]:
    quantity = _first_item(data).get("quantity")
    return int(quantity) if quantity is not None else None


def _billing_period(data: dict) -> tuple[Optional[str], Optional[str]]:
    period = data.get("current_billing_period") or {}
    return period.get("starts_at"), period.get("ends_at")


def _total(data: dict) -> Optional[str]:
    totals = (data.get("details") or {}).get("totals") or data.get("totals") or {}
    total = totals.get("total")
    return str(total) if total is not None else None


# ===========================================
# Customers
# ===========================================


def _customer_fields(data: dict) -> dict[str, Any]:
    return {
        "email": data.get("email"),
        "name": data.get("name"),
        "status": data.get("status"),
        "custom_data": data.get("custom_data"),
    }


def _on_customer_created(data: dict) -> None:
    billing_store.create_customer(data["id"], **_customer_fields(data))


def _on_customer_updated(data: dict) -> None:
    billing_store.update_customer(data["id"], **_customer_fields(data))


# ===========================================
# Subscriptions
# ===========================================


def _on_subscription_created(data: dict) -> None:
    period_start, period_end = _billing_period(data)
    billing_store.create_subscription(
        data["id"],
        customer_id=data["customer_id"],
        status=data["status"],
        price_id=_price_id(data),
        quantity=_quantity(data),
        scheduled_change=data.get("scheduled_change"),
        current_billing_period_start=period_start,
        current_billing_period_end=period_end,
        next_billed_at=data.get("next_billed_at"),
        custom_data=data.get("custom_data"),
    )


def _on_subscription_updated(data: dict) -> None:
    period_start, period_end = _billing_period(data)
    billing_store.update_subscription(
        data["id"],
        status=data["status"],
        price_id=_price_id(data),
        quantity=_quantity(data),
        scheduled_change=data.get("scheduled_change"),
        current_billing_period_start=period_start,
        current_billing_period_end=period_end,
        next_billed_at=data.get("next_billed_at"),
        paused_at=data.get("paused_at"),
        canceled_at=data.get("canceled_at"),
        custom_data=data.get("custom_data"),
    )


def _on_subscription_activated(data: dict) -> None:
    period_start, period_end = _billing_period(data)
    billing_store.activate_subscription(
        data["id"],
        next_billed_at=data.get("next_billed_at"),
        current_billing_period_start=period_start,
        current_billing_period_end=period_end,
    )


def _on_subscription_canceled(data: dict) -> None:
    billing_store.cancel_subscription(data["id"], canceled_at=data.get("canceled_at"))


def _on_subscription_paused(data: dict) -> None:
    billing_store.pause_subscription(data["id"], paused_at=data.get("paused_at"))


def _on_subscription_resumed(data: dict) -> None:
    billing_store.resume_subscription(data["id"], next_billed_at=data.get("next_billed_at"))


# ===========================================
# Transactions
# ===========================================


def _on_transaction_created(data: dict) -> None:
    billing_store.create_transaction(
        data["id"],
        status=data["status"],
        customer_id=data.get("customer_id"),
        subscription_id=data.get("subscription_id"),
        currency_code=data.get("currency_code"),
        total_amount=_total(data),
        collection_mode=data.get("collection_mode"),
        billed_at=data.get("billed_at"),
        created_at=data.get("created_at"),
        custom_data=data.get("custom_data"),
    )


def _on_transaction_updated(data: dict) -> None:
    billing_store.update_transaction(
        data["id"],
        status=data["status"],
        total_amount=_total(data),
        billed_at=data.get("billed_at"),
        custom_data=data.get("custom_data"),
    )


def _on_transaction_completed(data: dict) -> None:
    billing_store.complete_transaction(
        data["id"],
        customer_id=data.get("customer_id"),
        subscription_id=data.get("subscription_id"),
        total_amount=_total(data),
        billed_at=data.get("billed_at"),
        custom_data=data.get("custom_data"),
    )


# ===========================================
# Adjustments
# ===========================================


def _on_adjustment_created(data: dict) -> None:
    billing_store.create_adjustment(
        data["id"],
        transaction_id=data["transaction_id"],
        action=data["action"],
        status=data["status"],
        customer_id=data.get("customer_id"),
        subscription_id=data.get("subscription_id"),
        reason=data.get("reason"),
        total_amount=_total(data),
        currency_code=data.get("currency_code"),
        created_at=data.get("created_at"),
    )


def _on_adjustment_updated(data: dict) -> None:
    billing_store.update_adjustment(data["id"], status=data["status"], total_amount=_total(data))


EVENT_EFFECTS: dict[str, Callable[[dict], None]] = {
    "customer.created": _on_customer_created,
    "customer.imported": _on_customer_created,
    "customer.updated": _on_customer_updated,
    "subscription.created": _on_subscription_created,
    "subscription.imported": _on_subscription_created,
    "subscription.updated": _on_subscription_updated,
    "subscription.trialing": _on_subscription_updated,
    "subscription.past_due": _on_subscription_updated,
    "subscription.activated": _on_subscription_activated,
    "subscription.canceled": _on_subscription_canceled,
    "subscription.paused": _on_subscription_paused,
    "subscription.resumed": _on_subscription_resumed,
    "transaction.created": _on_transaction_created,
    "transaction.imported": _on_transaction_created,
    "transaction.ready": _on_transaction_created,
    "transaction.billed": _on_transaction_created,
    "transaction.updated": _on_transaction_updated,
    "transaction.paid": _on_transaction_updated,
    "transaction.past_due": _on_transaction_updated,
    "transaction.payment_failed": _on_transaction_updated,
    "transaction.canceled": _on_transaction_updated,
    "transaction.completed": _on_transaction_completed,
    "adjustment.created": _on_adjustment_created,
    "adjustment.updated": _on_adjustment_updated,
}


def dispatch_event(
    event: PaddleWebhookEvent,
    event_handlers: Optional[dict[str, EventHandler]] = None,
    on_event: Optional[EventHandler] = None,
) -> None:
    """Apply the default effect for an admitted event, then run caller hooks.

    Order: default effect, the handler registered for this exact event type,
    then the catch-all on_event hook. Exceptions from any step propagate so
    the caller can release the ledger lock and have Paddle redeliver.
    """
    event_type = event["event_type"]
    data = event.get("data") or {}

    effect = EVENT_EFFECTS.get(event_type)
    if effect is None:
        logger.info(f"No default effect for event type {event_type}")
    else:
        effect(data)

    handler = (event_handlers or {}).get(event_type)
    if handler is not None:
        handler(event)

    if on_event is not None:
        on_event(event)
