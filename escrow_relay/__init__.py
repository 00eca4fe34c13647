"""Escrow relay service: outbox dispatch and provider webhook reconciliation."""

__version__ = "0.1.0"
