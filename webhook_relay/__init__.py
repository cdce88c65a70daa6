"""Reliable delivery of blockchain-event webhooks."""

__version__ = "1.0.0"
