"""Payment provider capability: webhook verification and subscription lookups"""
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe

from subsync.core.errors import (
    MalformedPayload, ProviderUnavailable, WebhookNotConfigured
)
from subsync.core.metrics import provider_lookup_failures_counter
from subsync.schemas.subscriptions import ProviderSubscription
from subsync.services import signature
from subsync.services.signature import VerificationResult

logger = logging.getLogger(__name__)


class PaymentProvider(ABC):

    @abstractmethod
    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerificationResult:
        """Authenticate a webhook body. Raises a SecurityError on failure."""

    @abstractmethod
    def fetch_subscription(self, subscription_ref: str) -> ProviderSubscription:
        """Current state of a subscription at the provider.

        Raises:
            ProviderUnavailable: timeout or transport failure
            MalformedPayload: the provider does not know the subscription
        """


def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _to_provider_subscription(stripe_sub: Any) -> ProviderSubscription:
    items = _get_stripe_value(_get_stripe_value(stripe_sub, "items"), "data", [])
    first_item = items[0] if items else None
    price = _get_stripe_value(first_item, "price")

    # current_period_end moved onto subscription items in newer API versions
    period_end = _get_stripe_value(stripe_sub, "current_period_end") or _get_stripe_value(
        first_item, "current_period_end"
    )
    trial_end = _get_stripe_value(stripe_sub, "trial_end")
    return ProviderSubscription(
        id=_get_stripe_value(stripe_sub, "id"),
        status=_get_stripe_value(stripe_sub, "status"),
        current_period_end=datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None,
        cancel_at_period_end=bool(_get_stripe_value(stripe_sub, "cancel_at_period_end", False)),
        plan_id=_get_stripe_value(price, "lookup_key") or _get_stripe_value(price, "id"),
        trial_end=datetime.fromtimestamp(trial_end, tz=timezone.utc) if trial_end else None,
    )


class StripePaymentProvider(PaymentProvider):
    """Stripe SDK backed provider.

    Lookups run on a small worker pool so each call can be abandoned after
    ``lookup_timeout`` seconds; a failed lookup is retried once after
    ``lookup_backoff`` seconds and then surfaces as ProviderUnavailable.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        tolerance: int = signature.DEFAULT_TOLERANCE_SECONDS,
        lookup_timeout: float = 3.0,
        lookup_backoff: float = 0.25,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.lookup_timeout = lookup_timeout
        self.lookup_backoff = lookup_backoff
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="stripe-lookup")

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerificationResult:
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise WebhookNotConfigured("Webhook secret not configured")
        return signature.verify(raw_body, signature_header, self.webhook_secret, self.tolerance)

    def fetch_subscription(self, subscription_ref: str) -> ProviderSubscription:
        if not self.api_key:
            raise WebhookNotConfigured("Stripe secret key not configured")

        stripe_sub = self._with_retry(
            lambda: stripe.Subscription.retrieve(subscription_ref, api_key=self.api_key),
            f"subscription {subscription_ref}",
        )
        return _to_provider_subscription(stripe_sub)

    def _with_retry(self, call: Callable[[], Any], what: str) -> Any:
        try:
            return self._with_timeout(call, what)
        except ProviderUnavailable as e:
            logger.warning(f"Stripe lookup for {what} failed ({e.message}), retrying once in {self.lookup_backoff}s")
            time.sleep(self.lookup_backoff)
            return self._with_timeout(call, what)

    def _with_timeout(self, call: Callable[[], Any], what: str) -> Any:
        future = self.executor.submit(call)
        try:
            return future.result(timeout=self.lookup_timeout)
        except FutureTimeoutError:
            future.cancel()
            provider_lookup_failures_counter.labels(reason="timeout").inc()
            raise ProviderUnavailable(f"Stripe lookup for {what} timed out after {self.lookup_timeout}s")
        except stripe.InvalidRequestError as e:
            provider_lookup_failures_counter.labels(reason="not_found").inc()
            raise MalformedPayload(f"Stripe does not recognise {what}: {e.user_message or e}")
        except stripe.AuthenticationError as e:
            provider_lookup_failures_counter.labels(reason="auth").inc()
            logger.error(f"Stripe rejected our API key: {e}")
            raise WebhookNotConfigured("Stripe API key rejected")
        except stripe.StripeError as e:
            provider_lookup_failures_counter.labels(reason="api_error").inc()
            raise ProviderUnavailable(f"Stripe lookup for {what} failed: {e}")


class InMemoryPaymentProvider(PaymentProvider):
    """Provider double: real signature checks, canned subscription lookups"""

    def __init__(self, webhook_secret: str, tolerance: int = signature.DEFAULT_TOLERANCE_SECONDS):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.lookups: List[str] = []
        self.failures_remaining = 0

    def add_subscription(self, subscription: ProviderSubscription):
        self.subscriptions[subscription.id] = subscription

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerificationResult:
        return signature.verify(raw_body, signature_header, self.webhook_secret, self.tolerance)

    def fetch_subscription(self, subscription_ref: str) -> ProviderSubscription:
        self.lookups.append(subscription_ref)
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ProviderUnavailable(f"Simulated provider outage looking up {subscription_ref}")
        if subscription_ref not in self.subscriptions:
            raise MalformedPayload(f"Unknown subscription {subscription_ref}")
        return self.subscriptions[subscription_ref]
