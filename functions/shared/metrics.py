"""
CloudWatch metrics for webhook outcomes and ledger health.

Metrics are best effort: a CloudWatch failure is logged and never turns a
successful delivery into a failed one.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from shared.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "PaddleSync")

# PutMetricData accepts at most 20 datums per call
MAX_DATUMS_PER_CALL = 20

# CloudWatch dimension values are capped; event types are well under this
MAX_DIMENSION_LENGTH = 64

# Outcome dimension values for the WebhookEvents metric
OUTCOMES = frozenset((
    "processed",
    "processed_pending",
    "duplicate",
    "rejected",
    "dispatch_failed",
    "finalize_failed",
    "ledger_unavailable",
))


def _datum(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    datum: Dict[str, Any] = {
        "MetricName": metric_name,
        "Value": value,
        "Unit": unit,
        "Timestamp": timestamp or datetime.now(timezone.utc),
    }
    if dimensions:
        datum["Dimensions"] = [{"Name": name, "Value": v} for name, v in dimensions.items()]
    return datum


def _put(datums: Iterable[Dict[str, Any]]) -> int:
    datums = list(datums)
    cloudwatch = get_cloudwatch()
    for start in range(0, len(datums), MAX_DATUMS_PER_CALL):
        cloudwatch.put_metric_data(Namespace=NAMESPACE, MetricData=datums[start:start + MAX_DATUMS_PER_CALL])
    return len(datums)


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a single metric.

    Example:
        emit_metric("WebhookEvents", dimensions={"Outcome": "processed"})
    """
    try:
        _put([_datum(metric_name, value, unit, dimensions)])
    except Exception as e:
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_batch_metrics(metrics: list[Dict[str, Any]]) -> None:
    """
    Emit several metrics sharing one timestamp.

    Args:
        metrics: Dicts with metric_name, and optionally value, unit, dimensions
    """
    timestamp = datetime.now(timezone.utc)
    try:
        count = _put(
            _datum(
                m["metric_name"],
                m.get("value", 1.0),
                m.get("unit", "Count"),
                m.get("dimensions"),
                timestamp,
            )
            for m in metrics
        )
    except Exception as e:
        logger.warning(f"Failed to emit batch metrics: {e}")
        return
    logger.debug(f"Emitted {count} metrics in batch")


def emit_webhook_metric(outcome: str, event_type: Optional[str] = None) -> None:
    """Count one webhook delivery by outcome (see OUTCOMES) and event type."""
    if outcome not in OUTCOMES:
        logger.warning(f"Unknown webhook outcome {outcome!r}")
    dimensions = {"Outcome": outcome}
    if event_type:
        dimensions["EventType"] = event_type[:MAX_DIMENSION_LENGTH]
    emit_metric("WebhookEvents", dimensions=dimensions)


def emit_latency_metric(operation: str, latency_ms: float) -> None:
    emit_metric("Latency", value=latency_ms, unit="Milliseconds", dimensions={"Operation": operation})
