"""Storage layer: SQLite configuration, result and outbox store."""

from .db import DuplicateDomainError, ProbeStore

__all__ = ["DuplicateDomainError", "ProbeStore"]
