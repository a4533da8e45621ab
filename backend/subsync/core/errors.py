"""Webhook error taxonomy

Every failure the pipeline can produce is one of these. The category decides
how the failure is logged and whether the provider should retry:

- SecurityError: the payload cannot be trusted; rejected, never retried
- DataError: payload can't be reconciled yet; rejected, retried by the provider
- InfrastructureError: datastore/provider trouble; rejected, retried
- UnrecognizedEventKind: not a failure, acknowledged as a no-op
"""
from typing import Optional


class WebhookError(Exception):
    """Base class for all webhook pipeline errors"""
    status_code = 500
    retryable = True
    category = "error"

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.event_id = event_id

    @property
    def reason(self) -> str:
        """Short machine-readable reason, used for metrics labels and response bodies"""
        name = type(self).__name__
        return "".join("_" + c.lower() if c.isupper() else c for c in name).lstrip("_")


# ============================================================================
# SECURITY ERRORS (terminal)
# ============================================================================

class SecurityError(WebhookError):
    status_code = 400
    retryable = False
    category = "security"


class MalformedHeader(SecurityError):
    """Signature header missing or unparseable"""


class InvalidSignature(SecurityError):
    """No candidate signature matched the recomputed HMAC"""


class StaleTimestamp(SecurityError):
    """Signed timestamp is older than the replay tolerance"""


# ============================================================================
# DATA ERRORS (retryable)
# ============================================================================

class DataError(WebhookError):
    status_code = 409
    retryable = True
    category = "data"


class MalformedPayload(DataError):
    """Verified body is not a decodable event or lacks required fields"""


class UnresolvableUser(DataError):
    """Event could not be mapped to exactly one application user"""


class SubscriptionNotReady(DataError):
    """Lifecycle event for a user whose subscription record does not exist yet"""


# ============================================================================
# INFRASTRUCTURE ERRORS (retryable)
# ============================================================================

class InfrastructureError(WebhookError):
    status_code = 503
    retryable = True
    category = "infrastructure"


class DatastoreUnavailable(InfrastructureError):
    pass


class ProviderUnavailable(InfrastructureError):
    pass


class ConcurrentUpdate(InfrastructureError):
    """Lost a compare-and-set race on the subscription record"""
    status_code = 409


class WebhookNotConfigured(InfrastructureError):
    status_code = 500


# ============================================================================
# SEMANTIC NO-OPS
# ============================================================================

class UnrecognizedEventKind(WebhookError):
    """Event type this service intentionally ignores"""
    status_code = 200
    retryable = False
    category = "noop"

    def __init__(self, event_type: str, event_id: Optional[str] = None):
        super().__init__(f"Unrecognized event type: {event_type}", event_id=event_id)
        self.event_type = event_type
