"""Error taxonomy for the docflow engine.

Every error carries a stable ``code`` and a ``context`` dict so the MCP layer
can turn it into a structured response the driver can act on:

- ValidationError: malformed or missing identifiers (fix the call)
- OutOfOrderError: phase or task-state invariant violated (call in order)
- NotFoundError: unknown workflow or task
- ConflictError: idempotency guards (safe to ignore on the happy path)
- BlockedError: retry budget exhausted (needs external intervention)
- PhaseFailedError: executor failure, nothing was committed
"""

from typing import Any, Dict, Optional


class DocflowError(Exception):
    """Base class for all engine errors."""

    code = "system_error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.hint = hint

    def with_context(self, **context: Any) -> "DocflowError":
        """Add context keys that are not already set. Returns self."""
        for key, value in context.items():
            if value is not None and key not in self.context:
                self.context[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(DocflowError):
    code = "validation_error"


class OutOfOrderError(DocflowError):
    code = "out_of_order"


class NotFoundError(DocflowError):
    code = "not_found"


class UnknownTaskError(NotFoundError):
    code = "unknown_task"


class ConflictError(DocflowError):
    code = "conflict"


class AlreadyExistsError(ConflictError):
    code = "already_exists"


class AlreadyInitializedError(ConflictError):
    code = "already_initialized"


class AlreadyCompletedError(ConflictError):
    code = "already_completed"


class BlockedError(DocflowError):
    code = "blocked"


class PhaseFailedError(DocflowError):
    code = "phase_failed"
