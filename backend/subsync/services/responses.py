"""Response/retry contract: what the provider is told for each outcome.

    verification failure              400  terminal
    unrecognized event kind           200  terminal no-op
    malformed payload / unknown user  409  retryable
    already processed                 200  terminal
    reconciled (incl. recorded no-op) 200  terminal
    write conflict                    409  retryable
    datastore / provider failure      503  retryable
    missing configuration             500  retryable
    processing timeout                503  retryable

Stripe retries any non-2xx response on its own schedule, so "retryable" only
means "not 2xx and worth resending", while terminal rejections use 400.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from subsync.core.errors import WebhookError


class WebhookResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int
    status: str
    retryable: bool = False
    event_id: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        body = {"status": self.status, "event_id": self.event_id}
        if self.reason:
            body["reason"] = self.reason
        if self.detail:
            body["detail"] = self.detail
        if self.status_code >= 300:
            body["retryable"] = self.retryable
        return body


def processed(event_id: str, outcome: str, detail: Optional[str] = None) -> WebhookResponse:
    return WebhookResponse(status_code=200, status=outcome, event_id=event_id, detail=detail)


def already_processed(event_id: str) -> WebhookResponse:
    return WebhookResponse(status_code=200, status="already_processed", event_id=event_id)


def from_error(error: WebhookError) -> WebhookResponse:
    if error.category == "noop":
        return WebhookResponse(status_code=200, status="ignored", event_id=error.event_id, detail=error.message)
    # Security rejections don't echo details back to a possibly hostile caller
    detail = None if error.category == "security" else error.message
    return WebhookResponse(
        status_code=error.status_code,
        status="rejected",
        retryable=error.retryable,
        event_id=error.event_id,
        reason=error.reason,
        detail=detail,
    )


def timed_out(timeout: float) -> WebhookResponse:
    return WebhookResponse(
        status_code=503,
        status="rejected",
        retryable=True,
        reason="processing_timeout",
        detail=f"Processing exceeded {timeout}s",
    )
