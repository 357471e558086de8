"""
JSON logging for the webhook Lambdas.

Each line carries the API Gateway request id and, after the notification
body has been parsed, the Paddle event id. Retries of one event therefore
show up together in Logs Insights:

    fields @timestamp, message | filter event_id = "evt_01h..."
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _correlation_fields() -> dict:
    fields = {"request_id": request_id_var.get()}
    if event_id_var.get():
        fields["event_id"] = event_id_var.get()
    return fields


class StructuredFormatter(logging.Formatter):
    """Render a record as one JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
            **_correlation_fields(),
        }
        entry.update((k, v) for k, v in vars(record).items() if k not in _RECORD_ATTRS)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """Route the root logger through a single JSON handler.

    Lambda installs its own handler on cold start; it is replaced so lines
    are not written twice.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    stream = logging.StreamHandler()
    stream.setFormatter(StructuredFormatter())
    root.addHandler(stream)
    return root


def set_request_id(event: dict) -> str:
    """Bind the request id for this invocation and clear any stale event id."""
    headers = event.get("headers") or {}
    request_id = (
        (event.get("requestContext") or {}).get("requestId")
        or headers.get("x-request-id")
        or headers.get("X-Request-Id")
        or str(uuid.uuid4())
    )

    request_id_var.set(request_id)
    event_id_var.set("")
    return request_id


def set_event_id(event_id: Optional[str]) -> None:
    event_id_var.set(event_id or "")


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: int,
    latency_ms: float,
    event_type: Optional[str] = None,
) -> None:
    """One summary line per webhook delivery."""
    logger.info(
        f"{method} {path} -> {status_code}",
        extra={
            "http_method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": latency_ms,
            "event_type": event_type or "unknown",
        },
    )


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log a call to Paddle's API; failures are warnings."""
    outcome = "success" if success else "failed"
    logger.log(
        logging.INFO if success else logging.WARNING,
        f"External call to {service}: {operation} -> {outcome}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        },
    )
