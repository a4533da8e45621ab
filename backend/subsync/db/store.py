"""Datastore capability used by the webhook pipeline

The pipeline never talks to SQLAlchemy or any other client directly; it is
handed a Datastore. Writes happen only inside ``transaction()``, which commits
everything staged in it atomically or nothing at all.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import List, Optional

from subsync.schemas.events import ProcessedEventEntry
from subsync.schemas.subscriptions import PaymentEntry, SubscriptionState


class DatastoreTransaction(ABC):
    """Unit of work: reads see the transaction's own writes"""

    @abstractmethod
    def get_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        ...

    @abstractmethod
    def set_subscription(self, state: SubscriptionState, expected_version: int) -> SubscriptionState:
        """Conditionally write a subscription record.

        ``expected_version`` is the version the caller read (0 for "no record
        yet"). Returns the stored state with its new version.

        Raises:
            ConcurrentUpdate: the record changed since it was read
        """

    @abstractmethod
    def insert_if_absent(self, entry: ProcessedEventEntry) -> bool:
        """Insert an idempotency claim. False when the event id already exists."""

    @abstractmethod
    def record_payment(self, entry: PaymentEntry) -> None:
        ...


class Datastore(ABC):

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager yielding a DatastoreTransaction.

        Commits on normal exit, discards all staged writes on exception.
        """

    @abstractmethod
    def get_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        ...

    @abstractmethod
    def is_processed(self, event_id: str) -> bool:
        ...

    @abstractmethod
    def user_exists(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def find_user_ids_by_customer(self, customer_ref: str) -> List[str]:
        """All application user ids linked to a provider customer reference"""
