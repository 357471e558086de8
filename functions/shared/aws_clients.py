"""
Lazily created boto3 clients shared by every Lambda in a container.

Paddle times out slow webhook responses and redelivers, so clients use
short timeouts. DynamoDB gets no SDK retries at all: a conditional put that
landed but timed out would, if resent, find our own lock and be reported as
a duplicate. The ledger retries throttling itself, where that is safe.
"""

import boto3
from botocore.config import Config

_DYNAMODB_CONFIG = Config(
    connect_timeout=2,
    read_timeout=5,
    retries={"total_max_attempts": 1, "mode": "standard"},
)

_DEFAULT_CONFIG = Config(
    connect_timeout=2,
    read_timeout=5,
    retries={"max_attempts": 2, "mode": "standard"},
)

# service name -> client or resource
_clients = {}


def _cached(key, factory):
    client = _clients.get(key)
    if client is None:
        client = _clients[key] = factory()
    return client


def get_dynamodb():
    """DynamoDB resource (Table objects are cheap to build per call)."""
    return _cached("dynamodb", lambda: boto3.resource("dynamodb", config=_DYNAMODB_CONFIG))


def get_secretsmanager():
    return _cached("secretsmanager", lambda: boto3.client("secretsmanager", config=_DEFAULT_CONFIG))


def get_cloudwatch():
    return _cached("cloudwatch", lambda: boto3.client("cloudwatch", config=_DEFAULT_CONFIG))


def reset_clients():
    """Drop cached clients so the next call builds fresh ones (tests, moto)."""
    _clients.clear()
