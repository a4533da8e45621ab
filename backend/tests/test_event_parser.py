"""Event parsing and classification tests"""
import json
from datetime import datetime, timezone

import pytest

from subsync.core.errors import MalformedPayload, UnrecognizedEventKind
from subsync.schemas.events import EventKind
from subsync.services.event_parser import classify, parse

from conftest import BASE_TS, checkout_session, invoice, make_event, subscription_object


class TestClassify:

    @pytest.mark.parametrize("event_type,kind", [
        ("checkout.session.completed", EventKind.CHECKOUT_COMPLETED),
        ("invoice.payment_failed", EventKind.INVOICE_PAYMENT_FAILED),
        ("invoice.payment_succeeded", EventKind.INVOICE_PAID),
        ("invoice.paid", EventKind.INVOICE_PAID),
        ("customer.subscription.created", EventKind.SUBSCRIPTION_UPDATED),
        ("customer.subscription.updated", EventKind.SUBSCRIPTION_UPDATED),
        ("customer.subscription.deleted", EventKind.SUBSCRIPTION_DELETED),
        ("customer.subscription.trial_will_end", EventKind.TRIAL_WILL_END),
    ])
    def test_known_types(self, event_type, kind):
        assert classify(event_type) == kind

    @pytest.mark.parametrize("event_type", ["customer.created", "charge.refunded", "", None])
    def test_unknown_types(self, event_type):
        assert classify(event_type) is None


@pytest.mark.critical
class TestParse:
    """Test decoding verified bodies into events"""

    def test_checkout_completed(self):
        event = parse(make_event("checkout.session.completed", checkout_session(), event_id="evt_1"))
        assert event.id == "evt_1"
        assert event.kind == EventKind.CHECKOUT_COMPLETED
        assert event.event_type == "checkout.session.completed"
        assert event.occurred_at == datetime.fromtimestamp(BASE_TS, tz=timezone.utc)
        p = event.payload
        assert p.user_id == "user_1"
        assert p.customer_ref == "cus_test123"
        assert p.subscription_ref == "sub_test123"
        assert p.plan_id == "premium"
        assert p.billing_cycle == "monthly"
        assert p.amount == 999
        assert p.mode == "subscription"
        assert p.payment_status == "paid"

    def test_checkout_user_id_from_client_reference(self):
        session = checkout_session(user_id=None)
        session["client_reference_id"] = "user_ref"
        event = parse(make_event("checkout.session.completed", session))
        assert event.payload.user_id == "user_ref"

    def test_checkout_snake_case_metadata(self):
        session = checkout_session(user_id=None)
        session["metadata"] = {"user_id": "user_9", "plan_id": "basic", "billing_cycle": "yearly"}
        p = parse(make_event("checkout.session.completed", session)).payload
        assert (p.user_id, p.plan_id, p.billing_cycle) == ("user_9", "basic", "yearly")

    def test_checkout_without_user_id_is_malformed(self):
        with pytest.raises(MalformedPayload) as exc_info:
            parse(make_event("checkout.session.completed", checkout_session(user_id=None), event_id="evt_x"))
        assert "user_id" in exc_info.value.message
        assert exc_info.value.event_id == "evt_x"

    def test_subscription_checkout_without_subscription_is_malformed(self):
        with pytest.raises(MalformedPayload):
            parse(make_event("checkout.session.completed", checkout_session(subscription=None)))

    def test_payment_mode_checkout_without_subscription_parses(self):
        event = parse(make_event("checkout.session.completed", checkout_session(subscription=None, mode="payment")))
        assert event.payload.subscription_ref is None

    def test_expanded_customer_object(self):
        session = checkout_session()
        session["customer"] = {"id": "cus_expanded", "object": "customer"}
        assert parse(make_event("checkout.session.completed", session)).payload.customer_ref == "cus_expanded"

    def test_invoice_payment_failed(self):
        p = parse(make_event("invoice.payment_failed", invoice())).payload
        assert p.customer_ref == "cus_test123"
        assert p.subscription_ref == "sub_test123"
        assert p.amount == 999
        assert p.attempt_count == 1
        assert p.next_payment_attempt == datetime.fromtimestamp(BASE_TS + 3 * 86400, tz=timezone.utc)

    def test_invoice_final_attempt_has_no_next_attempt(self):
        p = parse(make_event("invoice.payment_failed", invoice(next_payment_attempt=None))).payload
        assert p.next_payment_attempt is None

    def test_invoice_subscription_under_parent(self):
        obj = invoice(subscription=None)
        obj["parent"] = {"subscription_details": {"subscription": "sub_parent", "metadata": {"userId": "user_2"}}}
        p = parse(make_event("invoice.paid", obj)).payload
        assert p.subscription_ref == "sub_parent"
        assert p.user_id == "user_2"

    def test_invoice_paid_uses_amount_paid(self):
        p = parse(make_event("invoice.payment_succeeded", invoice(paid=True, amount=1999))).payload
        assert p.amount == 1999

    def test_subscription_updated(self):
        event = parse(make_event("customer.subscription.updated", subscription_object(cancel_at_period_end=True)))
        p = event.payload
        assert event.kind == EventKind.SUBSCRIPTION_UPDATED
        assert p.subscription_ref == "sub_test123"
        assert p.provider_status == "active"
        assert p.plan_id == "premium"
        assert p.billing_cycle == "monthly"
        assert p.cancel_at_period_end is True
        assert p.current_period_end == datetime.fromtimestamp(BASE_TS + 30 * 86400, tz=timezone.utc)

    def test_subscription_period_end_from_item(self):
        obj = subscription_object(current_period_end=None)
        obj["items"]["data"][0]["current_period_end"] = BASE_TS + 86400
        p = parse(make_event("customer.subscription.updated", obj)).payload
        assert p.current_period_end == datetime.fromtimestamp(BASE_TS + 86400, tz=timezone.utc)

    def test_summary_subscription_without_status_parses(self):
        p = parse(make_event("customer.subscription.updated", subscription_object(status=None))).payload
        assert p.provider_status is None
        assert p.subscription_ref == "sub_test123"

    def test_subscription_trial_end(self):
        obj = subscription_object(status="trialing", trial_end=BASE_TS + 7 * 86400)
        p = parse(make_event("customer.subscription.updated", obj)).payload
        assert p.trial_end == datetime.fromtimestamp(BASE_TS + 7 * 86400, tz=timezone.utc)

    def test_trial_will_end(self):
        obj = subscription_object(status="trialing", trial_end=BASE_TS + 3 * 86400)
        event = parse(make_event("customer.subscription.trial_will_end", obj))
        assert event.kind == EventKind.TRIAL_WILL_END
        assert event.payload.trial_end == datetime.fromtimestamp(BASE_TS + 3 * 86400, tz=timezone.utc)

    def test_trial_will_end_without_trial_end_is_malformed(self):
        with pytest.raises(MalformedPayload):
            parse(make_event("customer.subscription.trial_will_end", subscription_object(status="trialing")))

    def test_subscription_deleted(self):
        event = parse(make_event("customer.subscription.deleted", subscription_object(status="canceled")))
        assert event.kind == EventKind.SUBSCRIPTION_DELETED

    def test_unrecognized_type(self):
        with pytest.raises(UnrecognizedEventKind) as exc_info:
            parse(make_event("customer.created", {"id": "cus_1"}, event_id="evt_u"))
        assert exc_info.value.event_type == "customer.created"
        assert exc_info.value.event_id == "evt_u"

    @pytest.mark.parametrize("raw", [b"not json", b"\xff\xfe", b"[]", b"null"])
    def test_undecodable_body(self, raw):
        with pytest.raises(MalformedPayload):
            parse(raw)

    def test_missing_id_or_type(self):
        with pytest.raises(MalformedPayload):
            parse(json.dumps({"type": "invoice.paid", "data": {"object": {}}}).encode())
        with pytest.raises(MalformedPayload):
            parse(json.dumps({"id": "evt_1", "data": {"object": {}}}).encode())

    def test_missing_data_object(self):
        body = json.dumps({"id": "evt_1", "type": "invoice.paid", "created": BASE_TS}).encode()
        with pytest.raises(MalformedPayload):
            parse(body)

    def test_missing_created(self):
        body = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": invoice()}}).encode()
        with pytest.raises(MalformedPayload):
            parse(body)

    def test_invalid_field_type(self):
        obj = invoice()
        obj["amount_due"] = "lots"
        with pytest.raises(MalformedPayload):
            parse(make_event("invoice.payment_failed", obj))
