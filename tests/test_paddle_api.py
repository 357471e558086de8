"""
Tests for the Paddle Billing API client.

Uses httpx.MockTransport for the Paddle side and moto for write-through.
"""

import json

import httpx
import pytest
from moto import mock_aws

from shared.errors import PaddleAPIError
from shared.paddle_api import PaddleClient


def _client(handler, sandbox=False):
    transport = httpx.MockTransport(handler)
    return PaddleClient("pdl_test_key", sandbox=sandbox, http_client=httpx.Client(transport=transport))


def _subscription(**overrides):
    data = {
        "id": "sub_1",
        "status": "active",
        "customer_id": "ctm_1",
        "items": [{"price": {"id": "pri_1"}, "quantity": 2}],
        "current_billing_period": {"starts_at": "2024-06-01T00:00:00Z", "ends_at": "2024-07-01T00:00:00Z"},
        "next_billed_at": "2024-07-01T00:00:00Z",
        "scheduled_change": None,
        "custom_data": {"userId": "user_1"},
    }
    data.update(overrides)
    return data


class TestRequests:
    def test_sends_bearer_auth_to_production(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"data": {"id": "txn_1", "checkout": {"url": "https://pay.example/1"}}})

        transaction_id, checkout_url = _client(handler).create_transaction(
            [{"price_id": "pri_1", "quantity": 2}], customer_id="ctm_1", custom_data={"userId": "user_1"},
        )

        assert (transaction_id, checkout_url) == ("txn_1", "https://pay.example/1")
        [request] = seen
        assert str(request.url) == "https://api.paddle.com/transactions"
        assert request.headers["Authorization"] == "Bearer pdl_test_key"
        body = json.loads(request.content)
        assert body["items"] == [{"price_id": "pri_1", "quantity": 2}]
        assert body["collection_mode"] == "automatic"
        assert body["customer_id"] == "ctm_1"

    def test_sandbox_base_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"id": "pts_1", "urls": {"general": {"overview": "u"}}}})

        session = _client(handler, sandbox=True).create_portal_session("ctm_1", ["sub_1"])

        assert session["id"] == "pts_1"
        assert str(seen[0].url) == "https://sandbox-api.paddle.com/customers/ctm_1/portal-sessions"
        assert json.loads(seen[0].content) == {"subscription_ids": ["sub_1"]}

    def test_non_2xx_raises_paddle_api_error(self):
        def handler(request):
            return httpx.Response(404, json={"error": {"code": "not_found"}})

        with pytest.raises(PaddleAPIError) as exc_info:
            _client(handler).create_subscription_charge("sub_1", [{"price_id": "pri_1"}])

        assert exc_info.value.status_code == 404
        assert exc_info.value.operation == "create_subscription_charge"

    def test_transport_error_raises_paddle_api_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(PaddleAPIError) as exc_info:
            _client(handler).create_transaction([{"price_id": "pri_1"}])

        assert exc_info.value.status_code is None

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            PaddleClient("")


class TestCustomerWriteThrough:
    @mock_aws
    def test_create_customer_stores_row(self, mock_dynamodb):
        from shared.billing_store import get_customer

        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(201, json={"data": {
                "id": "ctm_1", "email": body["email"], "name": body.get("name"),
                "status": "active", "custom_data": body.get("custom_data"),
            }})

        customer_id = _client(handler).create_customer("a@example.com", name="Ada", custom_data={"userId": "u1"})

        assert customer_id == "ctm_1"
        stored = get_customer("ctm_1")
        assert stored["email"] == "a@example.com"
        assert stored["custom_data"] == {"userId": "u1"}

    @mock_aws
    def test_get_or_create_prefers_local_row(self, mock_dynamodb):
        from shared.billing_store import create_customer

        create_customer("ctm_local", email="a@example.com")

        def handler(request):
            raise AssertionError("Paddle should not be called")

        assert _client(handler).get_or_create_customer("a@example.com", "u1") == ("ctm_local", False)

    @mock_aws
    def test_get_or_create_links_unowned_paddle_customer(self, mock_dynamodb):
        from shared.billing_store import get_customer

        def handler(request):
            assert request.method == "GET"
            assert request.url.params["email"] == "a@example.com"
            return httpx.Response(200, json={"data": [
                {"id": "ctm_remote", "email": "a@example.com", "status": "active", "custom_data": None},
            ]})

        assert _client(handler).get_or_create_customer("a@example.com", "u1") == ("ctm_remote", False)
        assert get_customer("ctm_remote")["custom_data"] == {"userId": "u1"}

    @mock_aws
    def test_get_or_create_never_links_customer_owned_by_another_user(self, mock_dynamodb):
        calls = []

        def handler(request):
            calls.append(request.method)
            if request.method == "GET":
                return httpx.Response(200, json={"data": [
                    {"id": "ctm_other", "email": "a@example.com", "custom_data": {"userId": "someone_else"}},
                ]})
            return httpx.Response(201, json={"data": {"id": "ctm_new", "email": "a@example.com", "status": "active"}})

        assert _client(handler).get_or_create_customer("a@example.com", "u1") == ("ctm_new", True)
        assert calls == ["GET", "POST"]


class TestSubscriptionWriteThrough:
    @mock_aws
    def test_cancel_updates_local_subscription(self, mock_dynamodb):
        from shared.billing_store import create_subscription, get_subscription

        create_subscription("sub_1", customer_id="ctm_1", status="active", custom_data={"userId": "user_1"})
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": _subscription(
                scheduled_change={"action": "cancel", "effective_at": "2024-07-01T00:00:00Z"},
            )})

        _client(handler).cancel_subscription("sub_1")

        assert str(seen[0].url) == "https://api.paddle.com/subscriptions/sub_1/cancel"
        assert json.loads(seen[0].content) == {"effective_from": "next_billing_period"}
        assert get_subscription("sub_1")["scheduled_change"]["action"] == "cancel"

    @mock_aws
    def test_pause_and_resume(self, mock_dynamodb):
        from shared.billing_store import create_subscription, get_subscription

        create_subscription("sub_1", customer_id="ctm_1", status="active")

        def pause_handler(request):
            assert json.loads(request.content) == {"effective_from": "immediately", "resume_at": "2024-09-01T00:00:00Z"}
            return httpx.Response(200, json={"data": _subscription(status="paused", paused_at="2024-06-10T00:00:00Z")})

        _client(pause_handler).pause_subscription("sub_1", effective_from="immediately", resume_at="2024-09-01T00:00:00Z")
        assert get_subscription("sub_1")["status"] == "paused"

        def resume_handler(request):
            return httpx.Response(200, json={"data": _subscription(next_billed_at="2024-07-10T00:00:00Z")})

        _client(resume_handler).resume_subscription("sub_1")
        sub = get_subscription("sub_1")
        assert sub["status"] == "active"
        assert "paused_at" not in sub
        assert sub["next_billed_at"] == "2024-07-10T00:00:00Z"

    @mock_aws
    def test_update_quantity(self, mock_dynamodb):
        from shared.billing_store import create_subscription, get_subscription

        create_subscription("sub_1", customer_id="ctm_1", status="active", quantity=2)
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": _subscription()})

        _client(handler).update_subscription_quantity("sub_1", "pri_1", 5)

        assert seen[0].method == "PATCH"
        assert json.loads(seen[0].content) == {
            "items": [{"price_id": "pri_1", "quantity": 5}],
            "proration_billing_mode": "prorated_immediately",
        }
        assert get_subscription("sub_1")["quantity"] == 5

    def test_update_quantity_rejects_zero(self):
        with pytest.raises(ValueError):
            _client(lambda request: httpx.Response(200)).update_subscription_quantity("sub_1", "pri_1", 0)

    def test_subscription_charge(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"data": _subscription()})

        _client(handler).create_subscription_charge("sub_1", [{"price_id": "pri_addon", "quantity": 1}])

        assert str(seen[0].url) == "https://api.paddle.com/subscriptions/sub_1/charge"
        assert json.loads(seen[0].content) == {
            "items": [{"price_id": "pri_addon", "quantity": 1}],
            "effective_from": "next_billing_period",
        }
