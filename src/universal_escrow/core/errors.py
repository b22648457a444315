"""Escrow engine exceptions.

Every error carries a ``context`` dict (escrow id, attempted operation,
current status ...) so callers can decide whether to retry, surface the
message, or abort.
"""

from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    """Base class for all engine errors."""

    kind = "escrow_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class NotFound(EscrowError):
    """Unknown escrow, condition or template."""

    kind = "not_found"


class InvalidState(EscrowError):
    """Operation not legal from the current escrow or condition status."""

    kind = "invalid_state"


class ValidationError(EscrowError):
    """Bad input: non-positive amount, allocation mismatch, missing payer ..."""

    kind = "validation_error"


class AuthorizationError(EscrowError):
    """Role not in the required approval set, or a duplicate approval."""

    kind = "authorization_error"


class ConcurrencyError(EscrowError):
    """The store could not apply a mutation before running out of retries."""

    kind = "concurrency_error"
