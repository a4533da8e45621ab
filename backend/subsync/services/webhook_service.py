"""Webhook pipeline: verify -> parse -> idempotency -> reconcile -> respond"""
import logging
import time
from typing import Optional

from subsync.core.errors import (
    DataError, InfrastructureError, SecurityError, UnrecognizedEventKind, WebhookError
)
from subsync.core.logging import security_logger, webhook_logger
from subsync.core.metrics import (
    webhook_events_counter, webhook_processing_seconds, webhook_rejections_counter
)
from subsync.core.otel import get_tracer
from subsync.db.store import Datastore
from subsync.schemas.events import InboundRequest
from subsync.services import event_parser, responses
from subsync.services.idempotency import IdempotencyGuard
from subsync.services.notifications import Notifier
from subsync.services.payment_provider import PaymentProvider
from subsync.services.reconciliation import Outcome, ReconciliationEngine, ReconciliationResult
from subsync.services.responses import WebhookResponse

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class WebhookProcessor:
    """Handles one webhook delivery end to end.

    All collaborators are passed in; the processor holds no state of its own
    between requests.
    """

    def __init__(self, store: Datastore, provider: PaymentProvider, notifier: Notifier):
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.guard = IdempotencyGuard(store)
        self.engine = ReconciliationEngine(store, provider)

    def process(self, request: InboundRequest) -> WebhookResponse:
        started = time.monotonic()
        try:
            with tracer.start_as_current_span("webhook.process"):
                return self._process(request)
        finally:
            webhook_processing_seconds.observe(time.monotonic() - started)

    def _process(self, request: InboundRequest) -> WebhookResponse:
        event_id: Optional[str] = None
        kind = "unknown"
        try:
            # Nothing below may look at the body until this succeeds
            with tracer.start_as_current_span("webhook.verify"):
                self.provider.verify(request.raw_body, request.signature_header)

            event = event_parser.parse(request.raw_body)
            event_id = event.id
            kind = event.kind.value

            if self.guard.is_processed(event.id):
                logger.info(f"Webhook event {event.id} already processed")
                webhook_events_counter.labels(kind=kind, outcome=Outcome.ALREADY_PROCESSED.value).inc()
                return responses.already_processed(event.id)

            with tracer.start_as_current_span("webhook.reconcile") as span:
                span.set_attribute("webhook.event_id", event.id)
                span.set_attribute("webhook.event_kind", kind)
                result = self.engine.reconcile(event, self.guard)

        except UnrecognizedEventKind as e:
            logger.info(f"Ignoring {e.event_type} event {e.event_id}")
            webhook_events_counter.labels(kind="unrecognized", outcome="ignored").inc()
            return responses.from_error(e)
        except WebhookError as e:
            e.event_id = e.event_id or event_id
            self._log_rejection(e, kind)
            webhook_rejections_counter.labels(category=e.category, reason=e.reason).inc()
            return responses.from_error(e)

        webhook_events_counter.labels(kind=kind, outcome=result.outcome.value).inc()
        if result.outcome == Outcome.ALREADY_PROCESSED:
            return responses.already_processed(event.id)

        self._notify(result)
        return responses.processed(event.id, result.outcome.value, result.detail)

    def _log_rejection(self, error: WebhookError, kind: str):
        if isinstance(error, SecurityError):
            security_logger.warning(f"Rejected webhook ({error.reason}): {error.message}")
        elif isinstance(error, DataError):
            webhook_logger.error(
                f"Cannot reconcile {kind} event {error.event_id} ({error.reason}): {error.message} - "
                f"provider will retry"
            )
        elif isinstance(error, InfrastructureError):
            webhook_logger.error(
                f"Infrastructure failure on {kind} event {error.event_id} ({error.reason}): {error.message}"
            )
        else:
            webhook_logger.error(f"Webhook {error.event_id} failed: {error.message}")

    def _notify(self, result: ReconciliationResult):
        """Send the post-commit notification, if any. Never affects the response."""
        if not result.notification_kind:
            return
        try:
            self.notifier.notify(result.user_id, result.notification_kind, result.notification_payload)
        except Exception as e:
            logger.error(
                f"Failed to send {result.notification_kind} notification to user {result.user_id}: {e}",
                exc_info=True
            )
