"""
Paddle Webhook Endpoint - POST /webhook

Receives Paddle Billing notifications, authenticates them with the
Paddle-Signature HMAC and applies each event's effect at most once.

Paddle delivers at least once and retries on any non-2xx response, so:
- 200 tells Paddle the event is durably recorded (or was already)
- 400 is returned for requests that would fail the same way on retry
- 500 asks Paddle to redeliver; no permanent ledger row was written
"""

import base64
import binascii
import json
import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from shared.config import WebhookConfig
from shared.constants import SIGNATURE_HEADER, STATUS_PROCESSED_PENDING
from shared.errors import (
    APIError,
    InvalidPayloadError,
    InvalidSignatureError,
    LedgerUnavailableError,
    MissingSignatureError,
)
from shared.event_dispatch import dispatch_event
from shared.event_ledger import admit_event, finalize_success, release_event
from shared.logging_utils import (
    configure_structured_logging,
    log_api_request,
    set_event_id,
    set_request_id,
)
from shared.metrics import emit_latency_metric, emit_webhook_metric
from shared.response_utils import error_response, webhook_ack
from shared.signature import verify_paddle_signature
from shared.types import APIGatewayEvent, LambdaContext, LambdaResponse, PaddleWebhookEvent

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("event_id", "event_type", "occurred_at", "data")


def _request_method(event: APIGatewayEvent) -> str:
    method = event.get("httpMethod")
    if not method:
        method = ((event.get("requestContext") or {}).get("http") or {}).get("method", "")
    return method.upper()


def _request_path(event: APIGatewayEvent) -> Optional[str]:
    """Route path without the stage prefix.

    HTTP API rawPath starts with /{stage} for any stage other than
    $default; REST API path never includes it.
    """
    raw_path = event.get("rawPath")
    if not raw_path:
        return event.get("path")

    stage = (event.get("requestContext") or {}).get("stage")
    if stage and stage != "$default":
        prefix = f"/{stage}"
        if raw_path == prefix or raw_path.startswith(prefix + "/"):
            return raw_path[len(prefix):] or "/"
    return raw_path


def _get_header(event: APIGatewayEvent, name: str) -> Optional[str]:
    """Case-insensitive header lookup (API Gateway v1 preserves client casing)."""
    headers = event.get("headers") or {}
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _raw_body(event: APIGatewayEvent) -> str:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise InvalidPayloadError("Request body is not valid base64")
    return body


def _parse_notification(raw_body: str) -> PaddleWebhookEvent:
    try:
        notification = json.loads(raw_body, parse_float=Decimal)
    except json.JSONDecodeError:
        raise InvalidPayloadError("Request body is not valid JSON")

    if not isinstance(notification, dict):
        raise InvalidPayloadError()

    missing = [f for f in REQUIRED_FIELDS if notification.get(f) in (None, "")]
    if missing:
        raise InvalidPayloadError(f"Missing required fields: {', '.join(missing)}")
    if not isinstance(notification["event_id"], str) or not isinstance(notification["event_type"], str):
        raise InvalidPayloadError("event_id and event_type must be strings")
    if not isinstance(notification["data"], dict):
        raise InvalidPayloadError("data must be an object")

    return notification


def _authenticate(event: APIGatewayEvent, webhook_secret: str) -> PaddleWebhookEvent:
    """Verify the signature over the exact raw body, then parse it.

    Raises:
        APIError: 400-class rejection; nothing has touched the ledger
    """
    signature_header = _get_header(event, SIGNATURE_HEADER)
    if not signature_header:
        raise MissingSignatureError()

    raw_body = _raw_body(event)
    if not verify_paddle_signature(raw_body, webhook_secret, signature_header):
        raise InvalidSignatureError()

    return _parse_notification(raw_body)


def _process(notification: PaddleWebhookEvent, config: WebhookConfig) -> LambdaResponse:
    """Admit, dispatch and finalize one authenticated notification."""
    event_id = notification["event_id"]
    event_type = notification["event_type"]

    try:
        admission = admit_event(event_id, event_type, str(notification["occurred_at"]))
    except LedgerUnavailableError as e:
        logger.error(f"Idempotency check failed for {event_id}: {e.cause}")
        emit_webhook_metric("ledger_unavailable", event_type)
        return error_response(500, "idempotency_check_failed", "Temporary error, please retry")

    if not admission.acquired:
        logger.info(f"Skipping duplicate event {event_id} ({event_type})")
        emit_webhook_metric("duplicate", event_type)
        return webhook_ack(duplicate=True)

    logger.info(f"Processing Paddle event: {event_type} (id={event_id})")
    dispatch_start = time.time()
    try:
        dispatch_event(notification, config.events, config.on_event)
    except Exception as e:
        # Any failure, including a caller hook, must let Paddle redeliver
        logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
        release_event(event_id, admission.lock_timestamp)
        emit_webhook_metric("dispatch_failed", event_type)
        return error_response(500, "processing_failed", "Processing failed")
    emit_latency_metric("dispatch", (time.time() - dispatch_start) * 1000)

    status = finalize_success(event_id)
    if status is None:
        emit_webhook_metric("finalize_failed", event_type)
        return error_response(500, "finalize_failed", "Could not record event, please retry")

    emit_webhook_metric(
        "processed_pending" if status == STATUS_PROCESSED_PENDING else "processed",
        event_type,
    )
    return webhook_ack()


def create_webhook_handler(
    config: Optional[WebhookConfig] = None,
) -> Callable[[APIGatewayEvent, LambdaContext], LambdaResponse]:
    """
    Build a Lambda handler for Paddle webhooks.

    Args:
        config: Endpoint options; defaults to WebhookConfig.from_env()

    Returns:
        handler(event, context) for API Gateway (REST or HTTP API)
    """
    config = config or WebhookConfig.from_env()

    def handler(event: APIGatewayEvent, context: LambdaContext) -> LambdaResponse:
        start_time = time.time()
        configure_structured_logging()
        set_request_id(event)

        method = _request_method(event)
        path = _request_path(event) or config.webhook_path
        event_type = None

        if path != config.webhook_path:
            response = error_response(404, "not_found", "Not found")
        elif method != "POST":
            response = error_response(405, "method_not_allowed", "Method not allowed", headers={"Allow": "POST"})
        else:
            webhook_secret = config.resolve_webhook_secret()
            if not webhook_secret:
                logger.error("Paddle webhook secret not configured")
                response = error_response(500, "webhook_not_configured", "Webhook not configured")
            else:
                try:
                    notification = _authenticate(event, webhook_secret)
                except APIError as e:
                    logger.warning(f"Rejected webhook request: {e.code}")
                    emit_webhook_metric("rejected")
                    response = e.to_response()
                else:
                    event_type = notification["event_type"]
                    set_event_id(notification["event_id"])
                    response = _process(notification, config)

        latency_ms = (time.time() - start_time) * 1000
        log_api_request(logger, method, path, response["statusCode"], latency_ms, event_type)
        return response

    return handler


handler = create_webhook_handler()
