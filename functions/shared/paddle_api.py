"""
Paddle Billing API client.

Thin synchronous wrapper over httpx for the calls an application makes
alongside the webhook: customers, checkout transactions and subscription
changes. Responses that describe a customer or subscription are written
through to the billing store right away, using the same projection the
webhook applies, so reads do not wait for the matching notification.
"""

import json
import logging
import time
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

import httpx

from shared import billing_store
from shared.config import api_base_url
from shared.constants import PADDLE_API_TIMEOUT
from shared.errors import PaddleAPIError
from shared.event_dispatch import EVENT_EFFECTS
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)


class PaddleClient:
    """
    Client for the Paddle Billing REST API.

    Args:
        api_key: Paddle API key (Bearer token)
        sandbox: Use the sandbox environment
        http_client: Optional preconfigured httpx.Client (tests pass one
            built on httpx.MockTransport)
    """

    def __init__(self, api_key: str, sandbox: bool = False, http_client: Optional[httpx.Client] = None):
        if not api_key:
            raise ValueError("Paddle API key is required")
        self.sandbox = sandbox
        self.base_url = api_base_url(sandbox)
        self._client = http_client or httpx.Client(timeout=PADDLE_API_TIMEOUT)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _request(self, operation: str, method: str, path: str, body: Optional[dict] = None) -> Any:
        """Send one request and return the response's "data" member.

        Raises:
            PaddleAPIError: transport failure or non-2xx response
        """
        start_time = time.time()
        try:
            response = self._client.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers,
                content=json.dumps(body) if body is not None else None,
            )
        except httpx.RequestError as e:
            latency_ms = (time.time() - start_time) * 1000
            log_external_call(logger, "paddle", operation, False, latency_ms, error=str(e))
            raise PaddleAPIError(operation, None, str(e)) from e

        latency_ms = (time.time() - start_time) * 1000
        if not response.is_success:
            log_external_call(logger, "paddle", operation, False, latency_ms, error=f"HTTP {response.status_code}")
            logger.error(f"Paddle API error ({operation}): {response.text[:500]}")
            raise PaddleAPIError(operation, response.status_code, response.text)

        log_external_call(logger, "paddle", operation, True, latency_ms)
        if not response.content:
            return None
        return json.loads(response.text, parse_float=Decimal).get("data")

    # ===========================================
    # Customers
    # ===========================================

    def create_customer(self, email: str, name: Optional[str] = None, custom_data: Optional[dict] = None) -> str:
        """Create a Paddle customer and store it locally. Returns the customer id."""
        body: dict[str, Any] = {"email": email}
        if name:
            body["name"] = name
        if custom_data:
            body["custom_data"] = custom_data

        customer = self._request("create_customer", "POST", "/customers", body)
        EVENT_EFFECTS["customer.updated"](customer)
        return customer["id"]

    def get_or_create_customer(self, email: str, user_id: str, name: Optional[str] = None) -> tuple[str, bool]:
        """
        Find the customer for an application user, creating one if needed.

        A local row with this email wins. Otherwise Paddle is searched by
        email; a match owned by a different userId is never linked.

        Returns:
            (customer_id, is_new)
        """
        local = billing_store.get_customer_by_email(email)
        if local:
            return local["pk"], False

        matches = self._request("list_customers", "GET", f"/customers?email={quote(email, safe='')}") or []
        if matches:
            customer = matches[0]
            owner, _ = billing_store.extract_linkage(customer.get("custom_data"))
            if not owner or owner == user_id:
                linked = dict(customer)
                linked["custom_data"] = {**(customer.get("custom_data") or {}), "userId": user_id}
                EVENT_EFFECTS["customer.updated"](linked)
                return customer["id"], False
            logger.warning(f"Paddle customer {customer['id']} belongs to another user, creating a new one")

        return self.create_customer(email, name=name, custom_data={"userId": user_id}), True

    def create_portal_session(self, customer_id: str, subscription_ids: Optional[list[str]] = None) -> dict:
        """Create a customer portal session. Returns Paddle's session object (with urls)."""
        body: dict[str, Any] = {}
        if subscription_ids:
            body["subscription_ids"] = subscription_ids
        return self._request(
            "create_portal_session", "POST", f"/customers/{quote(customer_id, safe='')}/portal-sessions", body
        )

    # ===========================================
    # Transactions
    # ===========================================

    def create_transaction(
        self,
        items: list[dict],
        customer_id: Optional[str] = None,
        custom_data: Optional[dict] = None,
        discount_id: Optional[str] = None,
        currency_code: Optional[str] = None,
    ) -> tuple[str, Optional[str]]:
        """
        Create a checkout transaction.

        Args:
            items: [{"price_id": ..., "quantity": ...}]

        Returns:
            (transaction_id, checkout_url)
        """
        body: dict[str, Any] = {
            "items": [{"price_id": i["price_id"], "quantity": i.get("quantity", 1)} for i in items],
            "collection_mode": "automatic",
        }
        if customer_id:
            body["customer_id"] = customer_id
        if custom_data:
            body["custom_data"] = custom_data
        if discount_id:
            body["discount_id"] = discount_id
        if currency_code:
            body["currency_code"] = currency_code

        transaction = self._request("create_transaction", "POST", "/transactions", body)
        return transaction["id"], (transaction.get("checkout") or {}).get("url")

    # ===========================================
    # Subscriptions
    # ===========================================

    def _subscription_path(self, subscription_id: str, action: str = "") -> str:
        path = f"/subscriptions/{quote(subscription_id, safe='')}"
        return f"{path}/{action}" if action else path

    def cancel_subscription(self, subscription_id: str, effective_from: str = "next_billing_period") -> dict:
        subscription = self._request(
            "cancel_subscription", "POST",
            self._subscription_path(subscription_id, "cancel"),
            {"effective_from": effective_from},
        )
        EVENT_EFFECTS["subscription.updated"](subscription)
        return subscription

    def pause_subscription(
        self,
        subscription_id: str,
        effective_from: str = "next_billing_period",
        resume_at: Optional[str] = None,
    ) -> dict:
        body = {"effective_from": effective_from}
        if resume_at:
            body["resume_at"] = resume_at
        subscription = self._request(
            "pause_subscription", "POST", self._subscription_path(subscription_id, "pause"), body
        )
        EVENT_EFFECTS["subscription.updated"](subscription)
        return subscription

    def resume_subscription(self, subscription_id: str, effective_from: str = "immediately") -> dict:
        subscription = self._request(
            "resume_subscription", "POST",
            self._subscription_path(subscription_id, "resume"),
            {"effective_from": effective_from},
        )
        EVENT_EFFECTS["subscription.resumed"](subscription)
        return subscription

    def update_subscription_quantity(
        self,
        subscription_id: str,
        price_id: str,
        quantity: int,
        proration_billing_mode: str = "prorated_immediately",
    ) -> dict:
        """Change the seat count of a single-item subscription."""
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        subscription = self._request(
            "update_subscription_quantity", "PATCH",
            self._subscription_path(subscription_id),
            {
                "items": [{"price_id": price_id, "quantity": quantity}],
                "proration_billing_mode": proration_billing_mode,
            },
        )
        billing_store.set_subscription_quantity(subscription_id, quantity)
        return subscription

    def create_subscription_charge(
        self,
        subscription_id: str,
        items: list[dict],
        effective_from: str = "next_billing_period",
    ) -> None:
        """Bill one-time items against an existing subscription."""
        self._request(
            "create_subscription_charge", "POST",
            self._subscription_path(subscription_id, "charge"),
            {
                "items": [{"price_id": i["price_id"], "quantity": i.get("quantity", 1)} for i in items],
                "effective_from": effective_from,
            },
        )
