"""Pydantic schemas for inbound webhook requests and verified events"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_PAID = "invoice_paid"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    TRIAL_WILL_END = "trial_will_end"
    SUBSCRIPTION_DELETED = "subscription_deleted"


# Stripe event type -> kind. Anything not listed is acknowledged and ignored.
EVENT_TYPE_KINDS = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.paid": EventKind.INVOICE_PAID,
    "customer.subscription.created": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.trial_will_end": EventKind.TRIAL_WILL_END,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}


class InboundRequest(BaseModel):
    """A webhook delivery exactly as received. The body is never re-encoded."""
    model_config = ConfigDict(frozen=True)

    raw_body: bytes
    signature_header: Optional[str] = None
    received_at: datetime


class EventPayload(BaseModel):
    """Kind-specific fields pulled out of ``data.object``.

    Which fields are required depends on the kind; the parser enforces that.
    """
    model_config = ConfigDict(frozen=True)

    object_id: Optional[str] = None  # checkout session / invoice / subscription id
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    user_id: Optional[str] = None  # metadata-carried application user id
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    # checkout
    mode: Optional[str] = None
    payment_status: Optional[str] = None

    # subscription
    provider_status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    trial_end: Optional[datetime] = None

    # invoice
    attempt_count: Optional[int] = None
    next_payment_attempt: Optional[datetime] = None


class VerifiedEvent(BaseModel):
    """Event decoded from a signature-verified body"""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: EventKind
    event_type: str
    occurred_at: datetime
    payload: EventPayload


class ProcessedEventEntry(BaseModel):
    """Idempotency claim for one event id, written once with its terminal outcome"""
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_kind: str
    outcome: str
    detail: Optional[str] = None
    processed_at: datetime
