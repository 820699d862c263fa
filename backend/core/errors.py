"""
Engine error taxonomy.

Every error the engine surfaces to a caller derives from ConflictEngineError
and carries a stable ``code`` plus the HTTP status the API layer maps it to.
"""

from typing import Any


class ConflictEngineError(Exception):
    code = "engine_error"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.message, **self.context}


class ValidationError(ConflictEngineError):
    """Malformed input to an operation. Not retried."""

    code = "validation_error"
    status_code = 422


class NotFound(ConflictEngineError):
    """Unknown id, or an id owned by another organization."""

    code = "not_found"
    status_code = 404


class InvalidTransition(ConflictEngineError):
    """Lifecycle rule violation. The conflict is left unchanged."""

    code = "invalid_transition"
    status_code = 409


class ConcurrentModification(ConflictEngineError):
    """Lost a race on a single conflict; the caller should retry the operation."""

    code = "concurrent_modification"
    status_code = 409


class DependencyFailure(ConflictEngineError):
    """Record store or repository I/O failed."""

    code = "dependency_failure"
    status_code = 503
