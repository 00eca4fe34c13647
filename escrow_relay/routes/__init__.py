"""API routes."""

from escrow_relay.routes import health, webhooks

__all__ = ["health", "webhooks"]
