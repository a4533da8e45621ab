"""Subscription reconciliation

Turns a verified event into a state transition on the affected user's
subscription record:

    checkout_completed      none/any  -> active     (paid, subscription mode)
    invoice_payment_failed  active    -> past_due
    invoice_paid            past_due  -> active
    subscription_updated    any       -> provider's reported state
    trial_will_end          any       -> trial end refreshed
    subscription_deleted    any       -> canceled

Events arrive in any order, so each record field is owned by the newest
event that wrote it. Events are totally ordered by ``order_key``
(occurred-at, then kind precedence, then event id) and every written field
remembers the key of its writer in ``field_keys``; a write only lands when
its key is greater. Canceled is terminal for a subscription: status writes
that cancel outrank any non-canceling write. The record is therefore the
same whatever order a subscription's events are delivered in.

The transition itself (``transition``) is a pure function of the current
record, the event and whatever was looked up beforehand. Provider lookups
happen in ``prepare`` before any write; the write is a single
compare-and-set committed together with the idempotency claim.
"""
import logging
import math
from datetime import timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from subsync.core.errors import SubscriptionNotReady, UnresolvableUser
from subsync.db.store import Datastore
from subsync.schemas.events import EventKind, VerifiedEvent
from subsync.schemas.subscriptions import (
    PaymentEntry, ProviderSubscription, SubscriptionState, SubscriptionStatus, map_provider_status
)
from subsync.services.idempotency import ClaimStatus, IdempotencyGuard
from subsync.services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    FOREIGN_SUBSCRIPTION = "foreign_subscription"
    PRECONDITION_UNMET = "precondition_unmet"
    ALREADY_PROCESSED = "already_processed"


# Later kinds win ties between events that occurred in the same second
KIND_PRECEDENCE = {
    EventKind.CHECKOUT_COMPLETED: 0,
    EventKind.INVOICE_PAYMENT_FAILED: 1,
    EventKind.INVOICE_PAID: 2,
    EventKind.SUBSCRIPTION_UPDATED: 3,
    EventKind.TRIAL_WILL_END: 4,
    EventKind.SUBSCRIPTION_DELETED: 5,
}

# Written together, ranked with canceled above everything else
STATUS_FIELDS = ("status", "has_payment_issue")


def order_key(event: VerifiedEvent) -> str:
    """Sortable key giving a total order over events"""
    occurred = event.occurred_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S.%f")
    return f"{occurred}:{KIND_PRECEDENCE[event.kind]}:{event.id}"


class ReconciliationContext(BaseModel):
    """Everything gathered before the write"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    provider_subscription: Optional[ProviderSubscription] = None


class ReconciliationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    user_id: str
    detail: Optional[str] = None
    state: Optional[SubscriptionState] = None  # record to write (stored version after commit)
    payment: Optional[PaymentEntry] = None
    notification_kind: Optional[str] = None
    notification_payload: Dict[str, Any] = Field(default_factory=dict)


class Effect(BaseModel):
    """Field writes and payment an event asks for, before ordering is applied"""
    model_config = ConfigDict(frozen=True)

    writes: Dict[str, Any] = Field(default_factory=dict)
    payment: Optional[PaymentEntry] = None
    unmet: Optional[str] = None  # set when the event cannot apply at all


def _noop(outcome: Outcome, user_id: str, detail: str) -> ReconciliationResult:
    return ReconciliationResult(outcome=outcome, user_id=user_id, detail=detail)


def _present(**values) -> Dict[str, Any]:
    return {name: value for name, value in values.items() if value is not None}


def _payment(event: VerifiedEvent, user_id: str, status: str) -> PaymentEntry:
    p = event.payload
    return PaymentEntry(
        event_id=event.id,
        user_id=user_id,
        status=status,
        amount=p.amount,
        currency=p.currency,
        plan_id=p.plan_id,
        customer_ref=p.customer_ref,
        subscription_ref=p.subscription_ref,
        reference=p.object_id,
        attempt_count=p.attempt_count,
    )


# ============================================================================
# EFFECTS
# ============================================================================

def _checkout_completed(event, context) -> Effect:
    p = event.payload
    if p.payment_status != "paid" or p.mode != "subscription":
        return Effect(unmet=f"checkout not applicable (mode={p.mode}, payment_status={p.payment_status})")

    lookup = context.provider_subscription
    writes = {"status": SubscriptionStatus.ACTIVE, "has_payment_issue": False}
    writes.update(_present(
        customer_ref=p.customer_ref,
        subscription_ref=p.subscription_ref,
        plan_id=p.plan_id or (lookup.plan_id if lookup else None),
        billing_cycle=p.billing_cycle,
        current_period_end=p.current_period_end or (lookup.current_period_end if lookup else None),
        cancel_at_period_end=lookup.cancel_at_period_end if lookup else None,
        trial_end=lookup.trial_end if lookup else None,
        last_payment_amount=p.amount,
        last_payment_currency=p.currency,
    ))
    return Effect(writes=writes, payment=_payment(event, context.user_id, "succeeded"))


def _invoice_payment_failed(event, context) -> Effect:
    # Period end is kept until the provider confirms cancellation
    return Effect(
        writes={
            "status": SubscriptionStatus.PAST_DUE,
            "has_payment_issue": event.payload.next_payment_attempt is None,
        },
        payment=_payment(event, context.user_id, "failed"),
    )


def _invoice_paid(event, context) -> Effect:
    p = event.payload
    writes = {"status": SubscriptionStatus.ACTIVE, "has_payment_issue": False}
    writes.update(_present(last_payment_amount=p.amount, last_payment_currency=p.currency))
    return Effect(writes=writes, payment=_payment(event, context.user_id, "succeeded"))


def _subscription_updated(event, context) -> Effect:
    p = event.payload
    lookup = context.provider_subscription
    provider_status = p.provider_status or (lookup.status if lookup else None)
    status = map_provider_status(provider_status)
    if status is None:
        return Effect(unmet=f"unknown provider status {provider_status!r}")

    cancel_flag = p.cancel_at_period_end
    if cancel_flag is None and lookup:
        cancel_flag = lookup.cancel_at_period_end

    writes = {"status": status, "has_payment_issue": provider_status == "unpaid"}
    writes.update(_present(
        current_period_end=p.current_period_end or (lookup.current_period_end if lookup else None),
        cancel_at_period_end=cancel_flag,
        plan_id=p.plan_id or (lookup.plan_id if lookup else None),
        billing_cycle=p.billing_cycle,
        trial_end=p.trial_end or (lookup.trial_end if lookup else None),
    ))
    return Effect(writes=writes)


def _trial_will_end(event, context) -> Effect:
    return Effect(writes={"trial_end": event.payload.trial_end})


def _subscription_deleted(event, context) -> Effect:
    # Plan id is kept as history
    return Effect(writes={
        "status": SubscriptionStatus.CANCELED,
        "has_payment_issue": False,
        "cancel_at_period_end": False,
        "trial_end": None,
    })


EFFECTS: Dict[EventKind, Callable[[VerifiedEvent, ReconciliationContext], Effect]] = {
    EventKind.CHECKOUT_COMPLETED: _checkout_completed,
    EventKind.INVOICE_PAYMENT_FAILED: _invoice_payment_failed,
    EventKind.INVOICE_PAID: _invoice_paid,
    EventKind.SUBSCRIPTION_UPDATED: _subscription_updated,
    EventKind.TRIAL_WILL_END: _trial_will_end,
    EventKind.SUBSCRIPTION_DELETED: _subscription_deleted,
}


# ============================================================================
# NOTIFICATIONS
# ============================================================================

Notification = Optional[Tuple[str, Dict[str, Any]]]


def _activated(event, before, after) -> Notification:
    return "subscription_activated", {"plan_id": after.plan_id, "billing_cycle": after.billing_cycle}


def _payment_failed(event, before, after) -> Notification:
    p = event.payload
    return "payment_failed", {
        "amount": p.amount,
        "currency": p.currency,
        "invoice_id": p.object_id,
        "final_attempt": p.next_payment_attempt is None,
    }


def _recovered(event, before, after) -> Notification:
    if before.status == SubscriptionStatus.PAST_DUE and after.status == SubscriptionStatus.ACTIVE:
        return "payment_recovered", {"amount": event.payload.amount, "currency": event.payload.currency}
    return None


def _canceled(event, before, after) -> Notification:
    if before.status != SubscriptionStatus.CANCELED and after.status == SubscriptionStatus.CANCELED:
        return "subscription_canceled", {"plan_id": after.plan_id}
    return None


def _trial_ending(event, before, after) -> Notification:
    trial_end = event.payload.trial_end
    days = max(0, math.ceil((trial_end - event.occurred_at).total_seconds() / 86400))
    return "trial_will_end", {"trial_end": trial_end.isoformat(), "days_until_end": days}


NOTIFICATIONS = {
    EventKind.CHECKOUT_COMPLETED: _activated,
    EventKind.INVOICE_PAYMENT_FAILED: _payment_failed,
    EventKind.INVOICE_PAID: _recovered,
    EventKind.SUBSCRIPTION_UPDATED: _canceled,
    EventKind.TRIAL_WILL_END: _trial_ending,
    EventKind.SUBSCRIPTION_DELETED: _canceled,
}


# ============================================================================
# TRANSITION
# ============================================================================

def _merge(base: SubscriptionState, writes: Dict[str, Any], key: str) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Field updates that win against the keys already on ``base``, and the resulting keys"""
    canceling = writes.get("status") == SubscriptionStatus.CANCELED
    status_key = f"{int(canceling)}|{key}"

    updates: Dict[str, Any] = {}
    field_keys = dict(base.field_keys)
    for name, value in writes.items():
        field_key = status_key if name in STATUS_FIELDS else key
        if field_key <= base.field_keys.get(name, ""):
            continue
        field_keys[name] = field_key
        if getattr(base, name) != value:
            updates[name] = value
    return updates, field_keys


def _base_record(
    current: Optional[SubscriptionState], event: VerifiedEvent, key: str
) -> Tuple[Optional[SubscriptionState], Optional[str]]:
    """Record the event applies to, or the reason it is foreign"""
    ref = event.payload.subscription_ref
    if current is None:
        return None, None
    if not current.subscription_ref or current.subscription_ref == ref:
        return current, None
    # A newer checkout for another subscription starts a new lifecycle
    if event.kind == EventKind.CHECKOUT_COMPLETED and key > (current.last_event_key or ""):
        return SubscriptionState(user_id=current.user_id, version=current.version), None
    return None, f"event is for {ref}, record tracks {current.subscription_ref}"


def transition(
    current: Optional[SubscriptionState],
    event: VerifiedEvent,
    context: ReconciliationContext,
) -> ReconciliationResult:
    """Pure state transition for one event.

    ``current`` is the stored record (None when the user has none). The
    returned result's ``state`` is the record to write, or None when nothing
    needs writing.

    Raises:
        SubscriptionNotReady: lifecycle event for a user with no record yet
    """
    p = event.payload
    key = order_key(event)

    if event.kind != EventKind.CHECKOUT_COMPLETED and not p.subscription_ref:
        return _noop(Outcome.PRECONDITION_UNMET, context.user_id, "event is not tied to a subscription")

    effect = EFFECTS[event.kind](event, context)
    if effect.unmet:
        return _noop(Outcome.PRECONDITION_UNMET, context.user_id, effect.unmet)

    if current is None and event.kind != EventKind.CHECKOUT_COMPLETED:
        raise SubscriptionNotReady(
            f"User {context.user_id} has no subscription record yet for {p.subscription_ref}", event_id=event.id
        )

    base, foreign = _base_record(current, event, key)
    if foreign:
        return _noop(Outcome.FOREIGN_SUBSCRIPTION, context.user_id, foreign)
    base = base or SubscriptionState(user_id=context.user_id)

    updates, field_keys = _merge(base, effect.writes, key)
    newest = key > (base.last_event_key or "")
    if newest:
        updates.update(last_event_id=event.id, last_event_at=event.occurred_at, last_event_key=key)

    changed = any(name not in ("last_event_id", "last_event_at", "last_event_key") for name in updates)
    if changed:
        outcome, detail = Outcome.APPLIED, None
    elif newest or field_keys != base.field_keys:
        outcome, detail = Outcome.UNCHANGED, f"subscription is {base.status.value}"
    else:
        outcome = Outcome.STALE
        detail = f"occurred at {event.occurred_at.isoformat()}, every field already reflects a newer event"

    state = None
    if base is not current or updates or field_keys != base.field_keys:
        state = base.model_copy(update={**updates, "field_keys": field_keys})

    notification = None
    if outcome != Outcome.STALE:
        notification = NOTIFICATIONS[event.kind](event, base, state or base)

    return ReconciliationResult(
        outcome=outcome,
        user_id=context.user_id,
        detail=detail,
        state=state,
        payment=effect.payment,
        notification_kind=notification[0] if notification else None,
        notification_payload=notification[1] if notification else {},
    )


# ============================================================================
# ENGINE
# ============================================================================

class ReconciliationEngine:
    """Applies verified events to subscription records"""

    def __init__(self, store: Datastore, provider: PaymentProvider):
        self.store = store
        self.provider = provider

    def resolve_user(self, event: VerifiedEvent) -> str:
        """Application user an event belongs to.

        Metadata user id wins; otherwise the provider customer reference must
        map to exactly one user.

        Raises:
            UnresolvableUser: unknown user id, or zero/several customer matches
        """
        p = event.payload
        if p.user_id:
            if not self.store.user_exists(p.user_id):
                raise UnresolvableUser(f"User {p.user_id} from event metadata does not exist", event_id=event.id)
            return p.user_id

        if not p.customer_ref:
            raise UnresolvableUser("Event carries neither a user id nor a customer reference", event_id=event.id)

        user_ids = self.store.find_user_ids_by_customer(p.customer_ref)
        if len(user_ids) != 1:
            raise UnresolvableUser(
                f"Customer {p.customer_ref} matches {len(user_ids)} users, expected exactly one",
                event_id=event.id,
            )
        return user_ids[0]

    def _needs_provider_lookup(self, event: VerifiedEvent) -> bool:
        p = event.payload
        if not p.subscription_ref:
            return False
        if event.kind == EventKind.CHECKOUT_COMPLETED:
            return p.current_period_end is None and p.payment_status == "paid" and p.mode == "subscription"
        # Summary-only subscription payloads
        return event.kind == EventKind.SUBSCRIPTION_UPDATED and p.provider_status is None

    def prepare(self, event: VerifiedEvent) -> ReconciliationContext:
        """Resolve the user and do any provider lookups. No writes."""
        user_id = self.resolve_user(event)
        provider_subscription = None
        if self._needs_provider_lookup(event):
            provider_subscription = self.provider.fetch_subscription(event.payload.subscription_ref)
        return ReconciliationContext(user_id=user_id, provider_subscription=provider_subscription)

    def reconcile(self, event: VerifiedEvent, guard: IdempotencyGuard) -> ReconciliationResult:
        """Apply ``event`` exactly once.

        The idempotency claim, the subscription write and the payment record
        commit together or not at all. An event that cannot apply yet raises
        before the claim, so the provider's retry gets another chance.
        """
        context = self.prepare(event)

        with self.store.transaction() as tx:
            current = tx.get_subscription(context.user_id)
            result = transition(current, event, context)

            if guard.claim(tx, event, result.outcome.value, result.detail) == ClaimStatus.ALREADY_PROCESSED:
                return ReconciliationResult(outcome=Outcome.ALREADY_PROCESSED, user_id=context.user_id)

            if result.state is not None:
                stored = tx.set_subscription(result.state, expected_version=current.version if current else 0)
                result = result.model_copy(update={"state": stored})
            if result.payment is not None:
                tx.record_payment(result.payment)

        logger.info(
            f"Reconciled {event.event_type} {event.id} for user {context.user_id}: {result.outcome.value}"
            + (f" ({result.detail})" if result.detail else "")
        )
        return result
