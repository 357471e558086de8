"""
Shared Type Definitions for Lambda Handlers.

Provides TypedDict definitions for API Gateway events, Paddle webhook
payloads, and the DynamoDB records written by the webhook pipeline.
"""

from typing import Any, Callable, Optional, Protocol, TypedDict


class APIGatewayEvent(TypedDict, total=False):
    """The proxy event fields the webhook reads (REST v1 and HTTP v2)."""

    httpMethod: str  # v1
    path: str  # v1
    rawPath: str  # v2
    headers: dict[str, str]
    body: Optional[str]
    isBase64Encoded: bool
    requestContext: dict[str, Any]


class LambdaContext(Protocol):
    function_name: str
    aws_request_id: str

    def get_remaining_time_in_millis(self) -> int: ...


class LambdaResponse(TypedDict, total=False):
    statusCode: int
    headers: dict[str, str]
    body: str


class PaddleWebhookEvent(TypedDict, total=False):
    """A Paddle notification payload."""

    event_id: str
    event_type: str
    occurred_at: str
    notification_id: str
    data: dict[str, Any]


# Caller-supplied hook invoked after the default effect is applied
EventHandler = Callable[[PaddleWebhookEvent], None]


class LedgerRecord(TypedDict, total=False):
    """Event ledger row, keyed by Paddle event_id."""

    pk: str
    event_type: str
    occurred_at: str
    status: str  # processing, processed, processed_pending
    lock_timestamp: int
    updated_at: str


class CustomerRecord(TypedDict, total=False):
    pk: str  # Paddle customer id
    email: str
    name: str
    status: str
    custom_data: dict[str, Any]


class SubscriptionRecord(TypedDict, total=False):
    pk: str  # Paddle subscription id
    customer_id: str
    status: str
    price_id: str
    quantity: int
    scheduled_change: dict[str, Any]
    current_billing_period_start: str
    current_billing_period_end: str
    next_billed_at: str
    paused_at: str
    canceled_at: str
    custom_data: dict[str, Any]
    user_id: str
    org_id: str


class TransactionRecord(TypedDict, total=False):
    pk: str  # Paddle transaction id
    customer_id: str
    subscription_id: str
    status: str
    currency_code: str
    total_amount: str
    collection_mode: str
    billed_at: str
    created_at: str
    custom_data: dict[str, Any]
    user_id: str
    org_id: str


class AdjustmentRecord(TypedDict, total=False):
    pk: str  # Paddle adjustment id
    transaction_id: str
    customer_id: str
    subscription_id: str
    action: str
    reason: str
    status: str
    total_amount: str
    currency_code: str
    created_at: str
