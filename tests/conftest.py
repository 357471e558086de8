"""
Shared pytest fixtures for paddlesync tests.
"""

import json
import os
import sys
import time

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

TEST_WEBHOOK_SECRET = "pdl_ntfset_test_secret"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients
    reset_clients()


@pytest.fixture(autouse=True)
def reset_paddle_secrets():
    """Reset the secrets cache so one test's secrets never leak into another."""
    from shared.config import reset_secrets_cache

    reset_secrets_cache()
    yield
    reset_secrets_cache()


def _table_with_indexes(dynamodb, name, index_attributes):
    """Create a pk-keyed table with one ALL-projection GSI per (index, attribute)."""
    definitions = [{"AttributeName": "pk", "AttributeType": "S"}]
    indexes = []
    for index_name, attribute in index_attributes:
        definitions.append({"AttributeName": attribute, "AttributeType": "S"})
        indexes.append({
            "IndexName": index_name,
            "KeySchema": [{"AttributeName": attribute, "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        })

    kwargs = {
        "TableName": name,
        "KeySchema": [{"AttributeName": "pk", "KeyType": "HASH"}],
        "AttributeDefinitions": definitions,
        "BillingMode": "PAY_PER_REQUEST",
    }
    if indexes:
        kwargs["GlobalSecondaryIndexes"] = indexes
    dynamodb.create_table(**kwargs)


def create_dynamodb_tables(dynamodb):
    """Create the ledger and billing tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    _table_with_indexes(dynamodb, "paddlesync-webhook-events", [])
    _table_with_indexes(dynamodb, "paddlesync-customers", [("email-index", "email")])
    _table_with_indexes(dynamodb, "paddlesync-subscriptions", [
        ("customer-index", "customer_id"),
        ("user-id-index", "user_id"),
        ("org-id-index", "org_id"),
    ])
    _table_with_indexes(dynamodb, "paddlesync-transactions", [
        ("customer-index", "customer_id"),
        ("subscription-index", "subscription_id"),
        ("user-id-index", "user_id"),
        ("org-id-index", "org_id"),
    ])
    _table_with_indexes(dynamodb, "paddlesync-adjustments", [("transaction-index", "transaction_id")])


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def ledger_table(mock_dynamodb):
    return mock_dynamodb.Table("paddlesync-webhook-events")


@pytest.fixture
def webhook_secret():
    return TEST_WEBHOOK_SECRET


def make_paddle_event(event_id, event_type, data, occurred_at="2024-06-01T12:00:00.000Z"):
    """Build a Paddle notification body."""
    return {
        "event_id": event_id,
        "event_type": event_type,
        "occurred_at": occurred_at,
        "notification_id": f"ntf_{event_id}",
        "data": data,
    }


def make_webhook_request(body, secret=TEST_WEBHOOK_SECRET, ts=None, path="/webhook", signature=None):
    """Build a signed API Gateway (REST) event for a Paddle notification."""
    from shared.signature import build_paddle_signature

    raw_body = body if isinstance(body, str) else json.dumps(body)
    if signature is None:
        signature = build_paddle_signature(raw_body, secret, ts if ts is not None else int(time.time()))

    return {
        "httpMethod": "POST",
        "path": path,
        "headers": {
            "Content-Type": "application/json",
            "Paddle-Signature": signature,
        },
        "body": raw_body,
        "isBase64Encoded": False,
        "requestContext": {"requestId": "req-test"},
    }


@pytest.fixture
def subscription_data():
    """Paddle subscription entity as delivered in subscription.* events."""
    return {
        "id": "sub_01h8test",
        "status": "active",
        "customer_id": "ctm_01h8test",
        "items": [{"price": {"id": "pri_01h8seat"}, "quantity": 3}],
        "current_billing_period": {
            "starts_at": "2024-06-01T00:00:00Z",
            "ends_at": "2024-07-01T00:00:00Z",
        },
        "next_billed_at": "2024-07-01T00:00:00Z",
        "scheduled_change": None,
        "custom_data": {"userId": "user_123", "orgId": "org_456"},
    }


@pytest.fixture
def transaction_data():
    """Paddle transaction entity as delivered in transaction.* events."""
    return {
        "id": "txn_01h8test",
        "status": "billed",
        "customer_id": "ctm_01h8test",
        "subscription_id": "sub_01h8test",
        "currency_code": "USD",
        "collection_mode": "automatic",
        "billed_at": "2024-06-01T00:00:05Z",
        "created_at": "2024-06-01T00:00:00Z",
        "details": {"totals": {"total": "3000"}},
        "custom_data": None,
    }
