"""
IOCSentry Lookup Errors

Exception taxonomy for the lookup subsystem. Every item-scoped error
keeps the raw string the caller submitted.
"""

import copy
from datetime import datetime


class IOCSentryError(Exception):
    """Base class for all lookup errors."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.message = message
        self.raw = raw

    def with_raw(self, raw: str) -> "IOCSentryError":
        """Copy of this error attributed to another submitted value."""
        clone = copy.copy(self)
        clone.raw = raw
        return clone

    def describe(self) -> str:
        """User-facing message including the submitted value."""
        if self.raw:
            return f"{self.raw!r}: {self.message}"
        return self.message


class ClassificationError(IOCSentryError):
    """Input is empty or matches no indicator shape."""


class QuotaExhausted(IOCSentryError):
    """No credential could serve the lookup. Retry later."""

    def __init__(self, message: str, raw: str = "", retry_at: datetime | None = None):
        super().__init__(message, raw)
        self.retry_at = retry_at


class TransientProviderError(IOCSentryError):
    """Network failure, timeout or 5xx from the provider."""


class InvalidCredential(IOCSentryError):
    """The provider rejected the credential (401/403)."""

    def __init__(self, message: str, credential_id: str = ""):
        super().__init__(message)
        self.credential_id = credential_id


class ProviderRateLimited(IOCSentryError):
    """The provider answered 429 for the credential used."""

    def __init__(self, message: str, reset_at: datetime, credential_id: str = ""):
        super().__init__(message)
        self.reset_at = reset_at
        self.credential_id = credential_id


class NoCredentialAvailable(IOCSentryError):
    """Every credential is invalid, rate limited or out of quota."""

    def __init__(self, message: str = "No API credential available", retry_at: datetime | None = None):
        super().__init__(message)
        self.retry_at = retry_at


class DuplicateIdentity(IOCSentryError):
    """A record with the same (canonical, type) identity already exists."""

    def __init__(self, canonical: str, indicator_type: str):
        super().__init__(f"Record already exists for {indicator_type}:{canonical}")
        self.canonical = canonical
        self.indicator_type = indicator_type
