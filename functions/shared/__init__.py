# Shared utilities package
from .errors import APIError
from .event_ledger import admit_event, finalize_success, release_event
from .response_utils import error_response, success_response, webhook_ack
from .signature import verify_paddle_signature

__all__ = [
    "admit_event",
    "finalize_success",
    "release_event",
    "verify_paddle_signature",
    "error_response",
    "success_response",
    "webhook_ack",
    "APIError",
]
