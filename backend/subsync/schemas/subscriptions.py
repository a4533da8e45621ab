"""Pydantic schemas for subscriptions"""
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Stripe subscription.status -> our status
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Map a Stripe subscription status onto the four states we track"""
    if provider_status is None:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status)


class SubscriptionState(BaseModel):
    """Snapshot of a user's subscription record.

    Reconciliation produces a new snapshot from the old one; it never mutates
    in place. ``version`` is the compare-and-set token of the stored row
    (0 when no row exists yet).
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    last_payment_amount: Optional[int] = None
    last_payment_currency: Optional[str] = None
    has_payment_issue: bool = False
    last_event_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    last_event_key: Optional[str] = None
    field_keys: Dict[str, str] = Field(default_factory=dict)  # field -> order key of the event that wrote it
    version: int = 0


class ProviderSubscription(BaseModel):
    """Subscription as reported by the payment provider lookup"""
    model_config = ConfigDict(frozen=True)

    id: str
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    plan_id: Optional[str] = None
    trial_end: Optional[datetime] = None


class PaymentEntry(BaseModel):
    """Payment outcome to be written alongside a reconciliation"""
    model_config = ConfigDict(frozen=True)

    event_id: str
    user_id: str
    status: str  # 'succeeded' | 'failed'
    amount: Optional[int] = None
    currency: Optional[str] = None
    plan_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    reference: Optional[str] = None
    attempt_count: Optional[int] = None
