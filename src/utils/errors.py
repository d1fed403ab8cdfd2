"""Exception types raised by the pricing pipeline and mapped to HTTP responses by safe_handler."""

from typing import Any, Dict, List, Optional


class CardAppError(Exception):
    """Base class for domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class CardSearchValidationError(CardAppError):
    """Search request is malformed or missing required filters."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message, {"missing": list(missing or [])})
        self.missing = list(missing or [])


class UpstreamSourceError(CardAppError):
    """Listing source or model endpoint unreachable, blocked or rate limited. Retryable."""


class CmvPersistenceError(CardAppError):
    """A CMV update could not be written; the row keeps its previous status."""
