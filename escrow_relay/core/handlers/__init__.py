"""Outbox delivery handlers."""

from escrow_relay.core.handlers.http_delivery import HttpDeliveryHandler

__all__ = ["HttpDeliveryHandler"]
