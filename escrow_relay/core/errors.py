"""Domain errors.

Every error carries a stable machine-readable ``code`` and a human
``message``; errors that surface over HTTP also carry a ``status_code``.
"""


class EscrowRelayError(Exception):
    """Base class for domain errors."""

    status_code: int = 500

    def __init__(self, code: str, message: str, status_code: int | None = None):
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class DeliveryError(EscrowRelayError):
    """Raised by a delivery handler when an outbox event could not be delivered."""


class OutboxEventNotFoundError(EscrowRelayError):
    """Outbox event does not exist for the given tenant."""

    status_code = 404

    def __init__(self, outbox_event_id):
        super().__init__(
            code="outbox_event_not_found",
            message=f"Outbox event {outbox_event_id} was not found.",
        )


class IdempotencyConflictError(EscrowRelayError):
    """Idempotency key reuse that cannot be treated as a safe replay."""

    status_code = 409


class WebhookError(EscrowRelayError):
    """Base class for errors answered by the webhook endpoint."""

    status_code = 400


class WebhookBadRequestError(WebhookError):
    status_code = 400


class WebhookConflictError(WebhookError):
    status_code = 409


class WebhookAuthError(WebhookError):
    """Webhook request could not be authenticated.

    Unconfigured credentials are an operational fault (503), everything
    else is answered as unauthorized (401).
    """

    status_code = 401

    def __init__(self, code: str, message: str):
        status_code = 503 if code == "webhook_auth_not_configured" else 401
        super().__init__(code=code, message=message, status_code=status_code)


class ReconciliationError(WebhookError):
    """Business-level failure while reconciling a provider callback."""

    status_code = 422
