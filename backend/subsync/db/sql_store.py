"""SQLAlchemy-backed datastore"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from subsync.core.errors import ConcurrentUpdate, DatastoreUnavailable, WebhookError
from subsync.db.store import Datastore, DatastoreTransaction
from subsync.models.payment import Payment
from subsync.models.processed_event import ProcessedEvent
from subsync.models.subscription import Subscription
from subsync.models.user import User
from subsync.schemas.events import ProcessedEventEntry
from subsync.schemas.subscriptions import PaymentEntry, SubscriptionState, SubscriptionStatus

logger = logging.getLogger(__name__)

# SubscriptionState field -> Subscription column
_COLUMN_MAP = {
    "status": "status",
    "plan_id": "plan_id",
    "billing_cycle": "billing_cycle",
    "current_period_end": "current_period_end",
    "cancel_at_period_end": "cancel_at_period_end",
    "trial_end": "trial_end",
    "customer_ref": "stripe_customer_id",
    "subscription_ref": "stripe_subscription_id",
    "last_payment_amount": "last_payment_amount",
    "last_payment_currency": "last_payment_currency",
    "has_payment_issue": "has_payment_issue",
    "last_event_id": "last_event_id",
    "last_event_at": "last_event_at",
    "last_event_key": "last_event_key",
    "field_keys": "field_keys",
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_state(row: Subscription) -> SubscriptionState:
    return SubscriptionState(
        user_id=row.user_id,
        status=SubscriptionStatus(row.status),
        plan_id=row.plan_id,
        billing_cycle=row.billing_cycle,
        current_period_end=_as_utc(row.current_period_end),
        cancel_at_period_end=row.cancel_at_period_end,
        trial_end=_as_utc(row.trial_end),
        customer_ref=row.stripe_customer_id,
        subscription_ref=row.stripe_subscription_id,
        last_payment_amount=row.last_payment_amount,
        last_payment_currency=row.last_payment_currency,
        has_payment_issue=row.has_payment_issue,
        last_event_id=row.last_event_id,
        last_event_at=_as_utc(row.last_event_at),
        last_event_key=row.last_event_key,
        field_keys=dict(row.field_keys or {}),
        version=row.version,
    )


def _column_values(state: SubscriptionState) -> dict:
    values = {column: getattr(state, field) for field, column in _COLUMN_MAP.items()}
    values["status"] = state.status.value
    values["field_keys"] = dict(state.field_keys)
    return values


class SqlTransaction(DatastoreTransaction):

    def __init__(self, db: Session):
        self.db = db
        self.aborted = False

    def get_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        row = self.db.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        ).scalar_one_or_none()
        return _to_state(row) if row else None

    def set_subscription(self, state: SubscriptionState, expected_version: int) -> SubscriptionState:
        values = _column_values(state)
        new_version = expected_version + 1

        if expected_version == 0:
            self.db.add(Subscription(user_id=state.user_id, version=new_version, **values))
            try:
                self.db.flush()
            except IntegrityError as e:
                # Another delivery created the record first
                raise ConcurrentUpdate(f"Subscription for user {state.user_id} was created concurrently") from e
        else:
            result = self.db.execute(
                update(Subscription)
                .where(Subscription.user_id == state.user_id, Subscription.version == expected_version)
                .values(version=new_version, updated_at=datetime.now(timezone.utc), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentUpdate(
                    f"Subscription for user {state.user_id} changed since version {expected_version}"
                )

        if state.customer_ref:
            self.db.execute(
                update(User)
                .where(User.id == state.user_id)
                .values(stripe_customer_id=state.customer_ref)
                .execution_options(synchronize_session=False)
            )

        return state.model_copy(update={"version": new_version})

    def insert_if_absent(self, entry: ProcessedEventEntry) -> bool:
        if self.db.get(ProcessedEvent, entry.event_id) is not None:
            return False

        self.db.add(ProcessedEvent(
            event_id=entry.event_id,
            event_kind=entry.event_kind,
            outcome=entry.outcome,
            detail=entry.detail,
            processed_at=entry.processed_at,
        ))
        try:
            self.db.flush()
        except IntegrityError:
            # A concurrent delivery of the same event committed its claim first
            self.db.rollback()
            self.aborted = True
            return False
        return True

    def record_payment(self, entry: PaymentEntry) -> None:
        self.db.add(Payment(
            event_id=entry.event_id,
            user_id=entry.user_id,
            status=entry.status,
            amount=entry.amount,
            currency=entry.currency,
            plan_id=entry.plan_id,
            stripe_customer_id=entry.customer_ref,
            stripe_subscription_id=entry.subscription_ref,
            reference=entry.reference,
            attempt_count=entry.attempt_count,
        ))
        self.db.flush()


class SqlDatastore(Datastore):
    """Datastore over a SQLAlchemy session factory; one session per unit of work"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self):
        db = self.session_factory()
        tx = SqlTransaction(db)
        try:
            yield tx
            if not tx.aborted:
                db.commit()
        except WebhookError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            raise ConcurrentUpdate(f"Conflicting concurrent write: {e.orig}") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Datastore transaction failed: {e}", exc_info=True)
            raise DatastoreUnavailable(f"Datastore write failed: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def _read_session(self):
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            logger.error(f"Datastore read failed: {e}", exc_info=True)
            raise DatastoreUnavailable(f"Datastore read failed: {e}") from e
        finally:
            db.close()

    def get_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        with self._read_session() as db:
            return SqlTransaction(db).get_subscription(user_id)

    def is_processed(self, event_id: str) -> bool:
        with self._read_session() as db:
            return db.get(ProcessedEvent, event_id) is not None

    def user_exists(self, user_id: str) -> bool:
        with self._read_session() as db:
            return db.get(User, user_id) is not None

    def find_user_ids_by_customer(self, customer_ref: str) -> List[str]:
        with self._read_session() as db:
            rows = db.execute(
                select(User.id).where(User.stripe_customer_id == customer_ref)
            ).scalars().all()
            return list(rows)
