"""
Shared constants for paddlesync.
"""

# Event ledger statuses
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_PROCESSED_PENDING = "processed_pending"

PERMANENT_STATUSES = (STATUS_PROCESSED, STATUS_PROCESSED_PENDING)

# A "processing" lock older than this may be taken over by another delivery
LOCK_TTL_MS = 10 * 60 * 1000

# Replay window for Paddle-Signature timestamps
SIGNATURE_MAX_AGE_SECONDS = 300

SIGNATURE_HEADER = "paddle-signature"
DEFAULT_WEBHOOK_PATH = "/webhook"

# Transaction backfill page size when a subscription row is first inserted
BACKFILL_BATCH_SIZE = 100

# Paddle API
PADDLE_API_URL = "https://api.paddle.com"
PADDLE_SANDBOX_API_URL = "https://sandbox-api.paddle.com"
PADDLE_API_TIMEOUT = 30.0

# Paddle webhook vocabulary
CUSTOMER_EVENTS = (
    "customer.created",
    "customer.updated",
    "customer.imported",
)

SUBSCRIPTION_EVENTS = (
    "subscription.created",
    "subscription.updated",
    "subscription.activated",
    "subscription.canceled",
    "subscription.paused",
    "subscription.resumed",
    "subscription.past_due",
    "subscription.trialing",
    "subscription.imported",
)

TRANSACTION_EVENTS = (
    "transaction.created",
    "transaction.updated",
    "transaction.completed",
    "transaction.billed",
    "transaction.canceled",
    "transaction.paid",
    "transaction.past_due",
    "transaction.payment_failed",
    "transaction.ready",
    "transaction.imported",
)

ADJUSTMENT_EVENTS = (
    "adjustment.created",
    "adjustment.updated",
)

# Known types with no default storage effect
CATALOG_EVENTS = (
    "product.created",
    "product.updated",
    "product.imported",
    "price.created",
    "price.updated",
    "price.imported",
    "discount.created",
    "discount.updated",
    "discount.imported",
    "address.created",
    "address.updated",
    "address.imported",
    "business.created",
    "business.updated",
    "business.imported",
    "payout.created",
    "payout.paid",
    "report.created",
    "report.updated",
)

PADDLE_EVENT_TYPES = frozenset(
    CUSTOMER_EVENTS + SUBSCRIPTION_EVENTS + TRANSACTION_EVENTS + ADJUSTMENT_EVENTS + CATALOG_EVENTS
)

# DynamoDB errors where the request was rejected before being applied
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
)
