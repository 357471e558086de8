"""
API Gateway proxy responses.

Paddle only looks at the status code: 2xx stops redelivery, anything else
schedules a retry. Bodies exist for humans reading delivery logs in the
Paddle dashboard. No CORS headers; the caller is a server.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional

from shared.types import LambdaResponse

_BASE_HEADERS = {
    "Content-Type": "application/json",
    "Cache-Control": "no-store",
}


def decimal_default(obj: Any) -> Any:
    """json.dumps hook for the Decimals boto3 returns for DynamoDB numbers."""
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def json_response(status_code: int, body: Any, headers: Optional[Dict[str, str]] = None) -> LambdaResponse:
    return {
        "statusCode": status_code,
        "headers": {**_BASE_HEADERS, **(headers or {})},
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
) -> LambdaResponse:
    """
    Error body shaped as {"error": {"code", "message", ["details"]}}.

    Args:
        code: Machine-readable snake_case code, e.g. invalid_signature
        message: Short human-readable reason
    """
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return json_response(status_code, {"error": error}, headers)


def success_response(data: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> LambdaResponse:
    return json_response(status_code, data, headers)


def webhook_ack(duplicate: bool = False) -> LambdaResponse:
    """200 acknowledgement telling Paddle not to redeliver."""
    body = {"received": True, "duplicate": True} if duplicate else {"received": True}
    return success_response(body)
