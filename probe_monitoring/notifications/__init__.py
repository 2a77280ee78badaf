"""Notification outbox processing."""

from .outbox import OutboxProcessor, log_delivery

__all__ = ["OutboxProcessor", "log_delivery"]
