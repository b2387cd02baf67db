"""
Exceptions raised by the reporting engine.

Every engine failure is an EngineError carrying a message and a structured details
payload, so the HTTP layer and the logs can render it without string parsing.
"""

from typing import Optional, Dict, Any


class EngineError(Exception):
    """Base exception for all reporting engine errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Input errors (raised before any write)
# ============================================================================

class ValidationError(EngineError):
    """Malformed or out-of-range input."""
    status_code = 422


class NoMetricsError(ValidationError):
    """A report was requested for an event without observations."""
    pass


class ImmutableRecordError(ValidationError):
    """Attempted to modify an append-only or finalized record."""
    pass


class NotFoundError(EngineError):
    """Referenced entity does not exist."""
    status_code = 404


# ============================================================================
# Concurrency, authorization and collaborator errors
# ============================================================================

class ConflictError(EngineError):
    """Uniqueness invariant violated by a concurrent writer."""
    status_code = 409


class ForbiddenError(EngineError):
    """Access policy denied the operation."""
    status_code = 403


class DependencyError(EngineError):
    """Audit log or artifact storage failed."""
    status_code = 503
