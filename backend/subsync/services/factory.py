"""Build the pipeline's capabilities from configuration"""
import logging

from subsync.core.config import Settings
from subsync.db.memory_store import InMemoryDatastore
from subsync.db.sql_store import SqlDatastore
from subsync.db.store import Datastore
from subsync.services.payment_provider import InMemoryPaymentProvider, PaymentProvider, StripePaymentProvider

logger = logging.getLogger(__name__)


def build_datastore(settings: Settings) -> Datastore:
    if settings.DATASTORE_BACKEND == "memory":
        logger.warning("Using in-memory datastore - subscription state will not survive a restart")
        return InMemoryDatastore()
    from subsync.db.session import SessionLocal
    return SqlDatastore(SessionLocal)


def build_payment_provider(settings: Settings) -> PaymentProvider:
    if settings.PAYMENT_PROVIDER_BACKEND == "memory":
        logger.warning("Using in-memory payment provider - subscription lookups return canned data")
        return InMemoryPaymentProvider(settings.STRIPE_WEBHOOK_SECRET, settings.WEBHOOK_TOLERANCE_SECONDS)
    return StripePaymentProvider(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
        lookup_timeout=settings.PROVIDER_LOOKUP_TIMEOUT,
        lookup_backoff=settings.PROVIDER_LOOKUP_BACKOFF,
    )
