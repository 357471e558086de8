"""
Errors raised by the webhook pipeline.

APIError subclasses map straight to an HTTP response. The storage and
Paddle API errors are plain exceptions; the handler decides the status.
"""

from typing import Optional

from shared.response_utils import error_response
from shared.types import LambdaResponse


class APIError(Exception):
    """An error the webhook answers with its own status code and error code."""

    status_code = 400
    code = "bad_request"
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> LambdaResponse:
        return error_response(self.status_code, self.code, self.message, details=self.details)


class MissingSignatureError(APIError):
    code = "missing_signature"
    default_message = "No signature provided"


class InvalidSignatureError(APIError):
    code = "invalid_signature"
    default_message = "Webhook signature verification failed"


class InvalidPayloadError(APIError):
    """The body verified but is not a usable Paddle notification."""

    code = "invalid_payload"
    default_message = "Invalid webhook payload"


class LedgerUnavailableError(Exception):
    """The event ledger could not be read or written.

    Raised for any storage failure other than a failed write condition, so
    callers fail closed instead of processing an event without a lock.
    """

    def __init__(self, operation: str, event_id: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.event_id = event_id
        self.cause = cause
        super().__init__(f"Event ledger {operation} failed for {event_id}: {cause}")


class PaddleAPIError(Exception):
    """A Paddle API call failed in transport or returned a non-2xx status."""

    def __init__(self, operation: str, status_code: Optional[int] = None, body: str = ""):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        super().__init__(f"Paddle API error ({operation}): status={status_code}")
