"""HTTP endpoint tests"""
import time
from unittest.mock import patch

import pytest

from subsync.api import webhooks
from subsync.schemas.subscriptions import ProviderSubscription, SubscriptionStatus
from subsync.services.signature import sign

from conftest import (
    WEBHOOK_SECRET, checkout_session, invoice, make_event, signed_headers, subscription_object
)

WEBHOOK_URL = "/api/subscriptions/webhook"


@pytest.fixture
def known_user(memory_store, provider):
    memory_store.add_user("user_1", email="delivered@resend.dev")
    provider.add_subscription(ProviderSubscription(id="sub_test123", status="active"))
    return "user_1"


@pytest.mark.critical
class TestWebhookEndpoint:
    """Test the response contract seen by the provider"""

    def test_checkout_returns_200(self, client, known_user, memory_store):
        body = make_event("checkout.session.completed", checkout_session(), event_id="evt_api_1")

        response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {"status": "applied", "event_id": "evt_api_1"}
        assert memory_store.get_subscription("user_1").status == SubscriptionStatus.ACTIVE

    def test_duplicate_returns_200_already_processed(self, client, known_user, memory_store):
        body = make_event("checkout.session.completed", checkout_session(), event_id="evt_api_dup")
        client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json()["status"] == "already_processed"
        assert len(memory_store.payments) == 1

    def test_missing_signature_header_returns_400(self, client, known_user):
        body = make_event("checkout.session.completed", checkout_session())

        response = client.post(WEBHOOK_URL, content=body)

        assert response.status_code == 400
        data = response.json()
        assert data["reason"] == "malformed_header"
        assert data["retryable"] is False

    def test_bad_signature_returns_400_without_detail(self, client, known_user, memory_store):
        body = make_event("checkout.session.completed", checkout_session())

        response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_signature"
        assert "detail" not in response.json()
        assert memory_store.subscriptions == {}

    def test_reencoded_body_fails_verification(self, client, known_user):
        """Signature covers the exact bytes sent, not the decoded JSON"""
        body = make_event("checkout.session.completed", checkout_session())
        headers = signed_headers(body)

        response = client.post(WEBHOOK_URL, content=body.replace(b", ", b","), headers=headers)

        assert response.status_code == 400

    def test_stale_delivery_returns_400(self, client, known_user):
        body = make_event("checkout.session.completed", checkout_session())

        response = client.post(
            WEBHOOK_URL, content=body, headers=signed_headers(body, timestamp=int(time.time()) - 1200)
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "stale_timestamp"

    def test_unknown_user_returns_409(self, client, memory_store):
        body = make_event("checkout.session.completed", checkout_session(user_id="nobody"), event_id="evt_nobody")

        response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 409
        data = response.json()
        assert data["reason"] == "unresolvable_user"
        assert data["retryable"] is True
        assert not memory_store.is_processed("evt_nobody")

    def test_unrecognized_event_returns_200(self, client):
        body = make_event("customer.created", {"id": "cus_new"}, event_id="evt_customer")

        response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_provider_outage_returns_503(self, client, known_user, provider):
        provider.failures_remaining = 1
        body = make_event("checkout.session.completed", checkout_session(), event_id="evt_outage")

        response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_lifecycle_over_http(self, client, known_user, memory_store, notifier):
        events = [
            make_event("checkout.session.completed", checkout_session(), event_id="evt_1", created=1767225600),
            make_event("invoice.payment_failed", invoice(), event_id="evt_2", created=1767225660),
            make_event("customer.subscription.deleted", subscription_object(status="canceled"),
                       event_id="evt_3", created=1767225720),
        ]
        for body in events:
            assert client.post(WEBHOOK_URL, content=body, headers=signed_headers(body)).status_code == 200

        state = memory_store.get_subscription("user_1")
        assert state.status == SubscriptionStatus.CANCELED
        assert state.version == 3
        assert [kind for _, kind, _ in notifier.sent] == [
            "subscription_activated", "payment_failed", "subscription_canceled"
        ]

    def test_processing_timeout_returns_503(self, client, known_user, provider):
        def slow_lookup(subscription_ref):
            time.sleep(0.5)
            return ProviderSubscription(id=subscription_ref, status="active")

        body = make_event("checkout.session.completed", checkout_session(), event_id="evt_slow")
        with patch.object(webhooks.settings, "WEBHOOK_PROCESSING_TIMEOUT", 0.05), \
                patch.object(provider, "fetch_subscription", side_effect=slow_lookup):
            response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 503
        data = response.json()
        assert data["reason"] == "processing_timeout"
        assert data["retryable"] is True


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics_exposes_webhook_counters(self, client):
        body = make_event("customer.created", {"id": "cus_new"}, event_id="evt_metrics")
        client.post(WEBHOOK_URL, content=body, headers={"Stripe-Signature": sign(body, WEBHOOK_SECRET)})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "subsync_webhook_events_total" in response.text
