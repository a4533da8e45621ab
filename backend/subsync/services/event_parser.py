"""Decode signature-verified webhook bodies into typed events"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from subsync.core.errors import MalformedPayload, UnrecognizedEventKind
from subsync.schemas.events import EVENT_TYPE_KINDS, EventKind, EventPayload, VerifiedEvent

logger = logging.getLogger(__name__)

# Fields each kind cannot be reconciled without
REQUIRED_FIELDS = {
    EventKind.CHECKOUT_COMPLETED: ("object_id", "user_id", "mode", "payment_status"),
    EventKind.INVOICE_PAYMENT_FAILED: ("object_id", "customer_ref"),
    EventKind.INVOICE_PAID: ("object_id", "customer_ref"),
    EventKind.SUBSCRIPTION_UPDATED: ("subscription_ref", "customer_ref"),
    EventKind.TRIAL_WILL_END: ("subscription_ref", "customer_ref", "trial_end"),
    EventKind.SUBSCRIPTION_DELETED: ("subscription_ref", "customer_ref"),
}


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get(obj: Any, *path: str, default=None):
    """Walk nested dicts, returning default as soon as a level is missing"""
    for key in path:
        if not isinstance(obj, dict):
            return default
        obj = obj.get(key)
        if obj is None:
            return default
    return obj


def _ref(value: Any) -> Optional[str]:
    """Reference that may arrive as an id string or an expanded object"""
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayload(f"Invalid timestamp value: {value!r}")


def _metadata_user_id(metadata: Any) -> Optional[str]:
    if not isinstance(metadata, dict):
        return None
    user_id = metadata.get("user_id") or metadata.get("userId")
    return str(user_id) if user_id else None


def _first_item(obj: Dict) -> Dict:
    items = _get(obj, "items", "data", default=[])
    return items[0] if items and isinstance(items[0], dict) else {}


# ============================================================================
# PER-KIND EXTRACTION
# ============================================================================

def _checkout_fields(session: Dict) -> Dict[str, Any]:
    metadata = session.get("metadata") or {}
    return {
        "object_id": session.get("id"),
        "customer_ref": _ref(session.get("customer")),
        "subscription_ref": _ref(session.get("subscription")),
        "user_id": _metadata_user_id(metadata) or session.get("client_reference_id"),
        "plan_id": metadata.get("plan") or metadata.get("plan_id"),
        "billing_cycle": metadata.get("billingCycle") or metadata.get("billing_cycle"),
        "amount": session.get("amount_total"),
        "currency": session.get("currency"),
        "mode": session.get("mode"),
        "payment_status": session.get("payment_status"),
    }


def _invoice_fields(invoice: Dict) -> Dict[str, Any]:
    # Newer API versions move the subscription under parent.subscription_details
    subscription = invoice.get("subscription") or _get(invoice, "parent", "subscription_details", "subscription")
    metadata = _get(invoice, "subscription_details", "metadata") or _get(
        invoice, "parent", "subscription_details", "metadata"
    )
    line = (_get(invoice, "lines", "data", default=[]) or [{}])[0]
    price = line.get("price") or {} if isinstance(line, dict) else {}
    return {
        "object_id": invoice.get("id"),
        "customer_ref": _ref(invoice.get("customer")),
        "subscription_ref": _ref(subscription),
        "user_id": _metadata_user_id(metadata),
        "plan_id": price.get("lookup_key") or price.get("id"),
        "amount": invoice.get("amount_paid") if invoice.get("paid") else invoice.get("amount_due"),
        "currency": invoice.get("currency"),
        "attempt_count": invoice.get("attempt_count"),
        "next_payment_attempt": _timestamp(invoice.get("next_payment_attempt")),
    }


def _subscription_fields(subscription: Dict) -> Dict[str, Any]:
    item = _first_item(subscription)
    price = item.get("price") or {}
    # current_period_end lives on the item in newer API versions
    period_end = subscription.get("current_period_end") or item.get("current_period_end")
    interval = _get(price, "recurring", "interval")
    return {
        "object_id": subscription.get("id"),
        "customer_ref": _ref(subscription.get("customer")),
        "subscription_ref": subscription.get("id"),
        "user_id": _metadata_user_id(subscription.get("metadata")),
        "plan_id": price.get("lookup_key") or price.get("id"),
        "billing_cycle": f"{interval}ly" if interval in ("month", "year") else interval,
        "provider_status": subscription.get("status"),
        "current_period_end": _timestamp(period_end),
        "cancel_at_period_end": subscription.get("cancel_at_period_end"),
        "trial_end": _timestamp(subscription.get("trial_end")),
    }


EXTRACTORS = {
    EventKind.CHECKOUT_COMPLETED: _checkout_fields,
    EventKind.INVOICE_PAYMENT_FAILED: _invoice_fields,
    EventKind.INVOICE_PAID: _invoice_fields,
    EventKind.SUBSCRIPTION_UPDATED: _subscription_fields,
    EventKind.TRIAL_WILL_END: _subscription_fields,
    EventKind.SUBSCRIPTION_DELETED: _subscription_fields,
}


def classify(event_type: Optional[str]) -> Optional[EventKind]:
    """Kind for a provider event type, None when this service ignores it"""
    return EVENT_TYPE_KINDS.get(event_type)


def parse(raw_body: bytes) -> VerifiedEvent:
    """Decode a verified body into a VerifiedEvent.

    Must only be called after the signature has been verified.

    Raises:
        UnrecognizedEventKind: event type this service ignores (acknowledge, don't retry)
        MalformedPayload: undecodable body or missing required fields
    """
    try:
        envelope = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f"Body is not valid JSON: {e}")

    if not isinstance(envelope, dict):
        raise MalformedPayload("Event envelope must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not event_id or not event_type:
        raise MalformedPayload("Event is missing id or type", event_id=event_id)

    kind = classify(event_type)
    if kind is None:
        raise UnrecognizedEventKind(event_type, event_id=event_id)

    data_object = _get(envelope, "data", "object")
    if not isinstance(data_object, dict):
        raise MalformedPayload("Event has no data.object", event_id=event_id)
    if envelope.get("created") is None:
        raise MalformedPayload("Event has no created timestamp", event_id=event_id)

    try:
        fields = EXTRACTORS[kind](data_object)
        occurred_at = _timestamp(envelope["created"])
        payload = EventPayload(**fields)
    except MalformedPayload as e:
        e.event_id = event_id
        raise
    except (ValidationError, TypeError, AttributeError) as e:
        raise MalformedPayload(f"Invalid {event_type} payload: {e}", event_id=event_id)

    missing = [name for name in REQUIRED_FIELDS[kind] if getattr(payload, name) in (None, "")]
    if kind == EventKind.CHECKOUT_COMPLETED and payload.mode == "subscription":
        missing += [name for name in ("customer_ref", "subscription_ref") if not getattr(payload, name)]
    if missing:
        raise MalformedPayload(f"{event_type} is missing required fields: {', '.join(missing)}", event_id=event_id)

    return VerifiedEvent(
        id=event_id,
        kind=kind,
        event_type=event_type,
        occurred_at=occurred_at,
        payload=payload,
    )
