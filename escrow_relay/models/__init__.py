"""Database models."""

from escrow_relay.models.action_log import ActionLog
from escrow_relay.models.outbox_dispatch_attempt import OutboxDispatchAttempt
from escrow_relay.models.outbox_event import OutboxEvent
from escrow_relay.models.provider_webhook_receipt import ProviderWebhookReceipt
from escrow_relay.models.reconciliation_exception import ReconciliationException
from escrow_relay.models.tenant import Tenant

__all__ = [
    "Tenant",
    "OutboxEvent",
    "OutboxDispatchAttempt",
    "ProviderWebhookReceipt",
    "ReconciliationException",
    "ActionLog",
]
