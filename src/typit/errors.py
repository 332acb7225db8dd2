"""Application-level exception types for Typit."""

from __future__ import annotations


class TypitError(Exception):
    """Base exception for Typit."""


class ConfigurationError(TypitError):
    """Raised for startup validation errors: bad homeserver address, missing credentials."""


class BackendError(TypitError):
    """Raised when a request to the messaging backend fails in a retryable way."""


class SessionStoreError(TypitError):
    """Raised when the session record cannot be read, parsed or written."""


class RenderError(TypitError):
    """Raised when a single render job fails for reasons other than the user's code."""


class RenderTimeout(RenderError):
    """Raised when the compiler does not produce its output before the deadline."""
