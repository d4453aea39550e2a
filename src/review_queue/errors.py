"""Exceptions raised by the review queue store."""

from __future__ import annotations


class StoreError(RuntimeError):
    """Base class for review queue storage failures."""

    retryable: bool = False


class StoreSetupError(StoreError):
    """The database location or handle could not be prepared."""


class MigrationError(StoreError):
    """A schema migration step failed; the stored version was not changed."""

    def __init__(self, message: str, *, from_version: int | None = None) -> None:
        super().__init__(message)
        self.from_version = from_version


class StoreBusyError(StoreError):
    """SQLite could not acquire a lock within the configured busy timeout."""

    retryable = True
