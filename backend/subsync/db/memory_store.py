"""In-memory datastore for tests and local development"""
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

from subsync.core.errors import ConcurrentUpdate
from subsync.db.store import Datastore, DatastoreTransaction
from subsync.schemas.events import ProcessedEventEntry
from subsync.schemas.subscriptions import PaymentEntry, SubscriptionState


class InMemoryTransaction(DatastoreTransaction):
    """Stages writes and applies them to the store on commit"""

    def __init__(self, store: "InMemoryDatastore"):
        self.store = store
        self.subscriptions: Dict[str, SubscriptionState] = {}
        self.processed: Dict[str, ProcessedEventEntry] = {}
        self.payments: Dict[str, PaymentEntry] = {}

    def get_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        if user_id in self.subscriptions:
            return self.subscriptions[user_id]
        return self.store.subscriptions.get(user_id)

    def set_subscription(self, state: SubscriptionState, expected_version: int) -> SubscriptionState:
        current = self.get_subscription(state.user_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise ConcurrentUpdate(
                f"Subscription for user {state.user_id} changed since version {expected_version}"
            )
        stored = state.model_copy(update={"version": expected_version + 1})
        self.subscriptions[state.user_id] = stored
        return stored

    def insert_if_absent(self, entry: ProcessedEventEntry) -> bool:
        if entry.event_id in self.processed or entry.event_id in self.store.processed:
            return False
        self.processed[entry.event_id] = entry
        return True

    def record_payment(self, entry: PaymentEntry) -> None:
        if entry.event_id in self.payments or entry.event_id in self.store.payments:
            raise ConcurrentUpdate(f"Payment for event {entry.event_id} already recorded")
        self.payments[entry.event_id] = entry

    def commit(self):
        self.store.subscriptions.update(self.subscriptions)
        self.store.processed.update(self.processed)
        self.store.payments.update(self.payments)
        for user_id, state in self.subscriptions.items():
            if state.customer_ref and user_id in self.store.users:
                self.store.users[user_id]["customer_ref"] = state.customer_ref


class InMemoryDatastore(Datastore):
    """Process-local datastore.

    A single lock serializes transactions, which makes each one trivially
    atomic and gives the same claim/compare-and-set outcomes as the SQL store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.users: Dict[str, dict] = {}
        self.subscriptions: Dict[str, SubscriptionState] = {}
        self.processed: Dict[str, ProcessedEventEntry] = {}
        self.payments: Dict[str, PaymentEntry] = {}

    def add_user(self, user_id: str, email: Optional[str] = None, customer_ref: Optional[str] = None):
        with self._lock:
            self.users[user_id] = {"email": email, "customer_ref": customer_ref}

    @contextmanager
    def transaction(self):
        with self._lock:
            tx = InMemoryTransaction(self)
            yield tx
            tx.commit()

    def get_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        with self._lock:
            return self.subscriptions.get(user_id)

    def is_processed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self.processed

    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self.users

    def find_user_ids_by_customer(self, customer_ref: str) -> List[str]:
        with self._lock:
            return [user_id for user_id, user in self.users.items() if user.get("customer_ref") == customer_ref]
