"""Webhook idempotency - one terminal outcome per event id.

Contract:
- The claim is an insert of a ProcessedEvent row keyed by event id
- The insert happens inside the same transaction as the subscription write,
  so a failed write also releases the claim and the provider's retry is
  processed normally
- A duplicate insert means the event was already handled: that is a success
  outcome, not an error
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from subsync.db.store import Datastore, DatastoreTransaction
from subsync.schemas.events import ProcessedEventEntry, VerifiedEvent

logger = logging.getLogger(__name__)


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"


class IdempotencyGuard:

    def __init__(self, store: Datastore):
        self.store = store

    def is_processed(self, event_id: str) -> bool:
        """Cheap pre-check so redeliveries skip provider lookups.

        Only advisory: the authoritative answer is the claim insert.
        """
        return self.store.is_processed(event_id)

    def claim(
        self,
        tx: DatastoreTransaction,
        event: VerifiedEvent,
        outcome: str,
        detail: Optional[str] = None,
    ) -> ClaimStatus:
        """Claim ``event`` within ``tx``, recording the outcome it will commit with"""
        inserted = tx.insert_if_absent(ProcessedEventEntry(
            event_id=event.id,
            event_kind=event.kind.value,
            outcome=outcome,
            detail=detail,
            processed_at=datetime.now(timezone.utc),
        ))
        if not inserted:
            logger.info(f"Duplicate webhook event {event.id} ({event.event_type}) - already processed")
            return ClaimStatus.ALREADY_PROCESSED
        return ClaimStatus.CLAIMED
