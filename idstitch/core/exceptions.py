"""idstitch.core.exceptions

Errors are part of the interface.

Two questions matter to a caller: was it my input, and is it worth retrying.
"""

from __future__ import annotations


class IdStitchError(Exception):
    """Base exception for idstitch."""


class ConfigError(IdStitchError):
    """Configuration is missing, invalid, or inconsistent."""


class ValidationError(IdStitchError):
    """Inbound payload is malformed or misses a required field.

    Raised before any mutation is attempted.
    """


class TransientStoreError(IdStitchError):
    """The store is unreachable, locked past its timeout, or a transaction failed.

    The request's transaction has been rolled back. Safe to retry from the caller.
    """


class InvariantViolation(IdStitchError):
    """Stored state contradicts an invariant. Should never happen in correct code."""
