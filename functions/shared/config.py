"""
Paddle configuration: secrets, environment selection and webhook options.

Secrets come from plain environment variables when set (local runs, tests)
or from AWS Secrets Manager ARNs in deployed Lambdas.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import (
    DEFAULT_WEBHOOK_PATH,
    PADDLE_API_URL,
    PADDLE_EVENT_TYPES,
    PADDLE_SANDBOX_API_URL,
)
from shared.types import EventHandler

logger = logging.getLogger(__name__)

# Cached Paddle secrets with TTL
_paddle_secrets_cache: tuple[Optional[str], Optional[str]] = (None, None)
_paddle_secrets_cache_time = 0.0
PADDLE_SECRETS_CACHE_TTL = 300  # 5 minutes


def _read_secret(arn: str, json_field: str) -> Optional[str]:
    """Read a secret that may be stored as JSON or as plain text."""
    try:
        response = get_secretsmanager().get_secret_value(SecretId=arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or None
    return secret_value or None


def get_paddle_secrets() -> tuple[Optional[str], Optional[str]]:
    """Return (api_key, webhook_secret), cached per container with TTL."""
    global _paddle_secrets_cache, _paddle_secrets_cache_time

    if _paddle_secrets_cache[1] and (time.time() - _paddle_secrets_cache_time) < PADDLE_SECRETS_CACHE_TTL:
        return _paddle_secrets_cache

    api_key = os.environ.get("PADDLE_API_KEY") or None
    webhook_secret = os.environ.get("PADDLE_WEBHOOK_SECRET") or None

    api_key_arn = os.environ.get("PADDLE_API_KEY_SECRET_ARN")
    if not api_key and api_key_arn:
        api_key = _read_secret(api_key_arn, "key")

    webhook_secret_arn = os.environ.get("PADDLE_WEBHOOK_SECRET_ARN")
    if not webhook_secret and webhook_secret_arn:
        webhook_secret = _read_secret(webhook_secret_arn, "secret")

    _paddle_secrets_cache = (api_key, webhook_secret)
    _paddle_secrets_cache_time = time.time()
    return api_key, webhook_secret


def reset_secrets_cache() -> None:
    """Clear cached secrets. Used in tests and after secret rotation."""
    global _paddle_secrets_cache, _paddle_secrets_cache_time
    _paddle_secrets_cache = (None, None)
    _paddle_secrets_cache_time = 0.0


def is_sandbox() -> bool:
    return os.environ.get("PADDLE_SANDBOX", "false").lower() == "true"


def api_base_url(sandbox: bool) -> str:
    return PADDLE_SANDBOX_API_URL if sandbox else PADDLE_API_URL


@dataclass
class WebhookConfig:
    """Options for a webhook endpoint.

    events maps a Paddle event type to a hook run after the default storage
    effect; on_event runs after it for every admitted event. Both run only
    on the delivery that wins admission.
    """

    # Route path without any HTTP API stage prefix (/prod/webhook matches "/webhook")
    webhook_path: str = DEFAULT_WEBHOOK_PATH
    events: dict[str, EventHandler] = field(default_factory=dict)
    on_event: Optional[EventHandler] = None
    webhook_secret: Optional[str] = None
    api_key: Optional[str] = None
    sandbox: bool = False

    def __post_init__(self):
        if not self.webhook_path.startswith("/"):
            raise ValueError(f"webhook_path must start with '/': {self.webhook_path!r}")

        unknown = sorted(set(self.events) - PADDLE_EVENT_TYPES)
        if unknown:
            raise ValueError(f"Unknown Paddle event types in handler map: {', '.join(unknown)}")

        for event_type, hook in self.events.items():
            if not callable(hook):
                raise ValueError(f"Handler for {event_type} is not callable")
        if self.on_event is not None and not callable(self.on_event):
            raise ValueError("on_event handler is not callable")

    @classmethod
    def from_env(cls, **overrides) -> "WebhookConfig":
        """Build a config from environment variables, then apply overrides."""
        values = {
            "webhook_path": os.environ.get("WEBHOOK_PATH") or DEFAULT_WEBHOOK_PATH,
            "sandbox": is_sandbox(),
        }
        values.update(overrides)
        return cls(**values)

    def resolve_webhook_secret(self) -> Optional[str]:
        if self.webhook_secret:
            return self.webhook_secret
        return get_paddle_secrets()[1]

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        return get_paddle_secrets()[0]

    @property
    def api_base_url(self) -> str:
        return api_base_url(self.sandbox)
