"""Exceptions shared by the walk scheduling and billing modules."""

from __future__ import annotations


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


class InvalidDate(ValidationError):
    """Raised when a value cannot be read as a calendar date."""


class MissingBillingAmount(ValidationError):
    """Raised when a completed walk has no billing amount to apply."""


class ClientNotFound(ValidationError):
    """Raised when a walk points at a client that does not exist."""


class StoreUnavailable(RuntimeError):
    """Raised when walk or client records could not be fetched."""
