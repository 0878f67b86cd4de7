"""Response envelopes and argument checks for the docflow MCP server."""

from enum import Enum
from typing import Any, Dict, Optional

from docflow.core.errors import DocflowError, ValidationError


class ErrorCode(Enum):
    """Structured error codes for MCP responses."""

    VALIDATION_ERROR = "validation_error"  # 400: Bad input
    OUT_OF_ORDER = "out_of_order"  # 422: Wrong phase / task state
    NOT_FOUND = "not_found"  # 404: Unknown workflow
    UNKNOWN_TASK = "unknown_task"  # 404: Unknown task id
    CONFLICT = "conflict"  # 409: Idempotency guard
    ALREADY_EXISTS = "already_exists"  # 409: Active workflow for the path
    ALREADY_INITIALIZED = "already_initialized"  # 409: Queue exists
    ALREADY_COMPLETED = "already_completed"  # 409: Task already has a result
    BLOCKED = "blocked"  # 423: Retry budget exhausted
    PHASE_FAILED = "phase_failed"  # 500: Executor failure, nothing committed
    SYSTEM_ERROR = "system_error"  # 500: Infrastructure issue


def error_response(
    code: ErrorCode,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    hint: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a structured error response.

    Args:
        code: Error code enum value
        message: Human-readable error message
        context: Identifiers the driver can act on (workflow_id, task_id, ...)
        hint: Optional hint for resolving the error

    Returns:
        ``{"success": False, "error": {"code", "message", "context"}, "hint"?}``
    """
    response: Dict[str, Any] = {
        "success": False,
        "error": {
            "code": code.value,
            "message": message,
            "context": context or {},
        },
    }
    if hint:
        response["hint"] = hint
    return response


def exception_response(error: DocflowError) -> Dict[str, Any]:
    """Translate an engine error into an error response."""
    try:
        code = ErrorCode(error.code)
    except ValueError:
        code = ErrorCode.SYSTEM_ERROR
    return error_response(code, error.message, error.context, error.hint)


def success_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """Build a structured success response.

    Args:
        data: Response data dictionary

    Returns:
        Response with success=True and data merged in
    """
    return {"success": True, **data}


def require_str(arguments: Dict[str, Any], name: str) -> str:
    """Fetch a required, non-empty string argument."""
    value = arguments.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"Missing required argument: {name}",
            context={"argument": name},
        )
    return value.strip()


def optional_str(arguments: Dict[str, Any], name: str) -> Optional[str]:
    value = arguments.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Argument {name} must be a string", context={"argument": name})
    return value.strip() or None


def optional_bool(arguments: Dict[str, Any], name: str, default: bool = False) -> bool:
    value = arguments.get(name, default)
    if not isinstance(value, bool):
        raise ValidationError(f"Argument {name} must be a boolean", context={"argument": name})
    return value


def optional_object(arguments: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = arguments.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"Argument {name} must be an object", context={"argument": name})
    return value


def optional_int(arguments: Dict[str, Any], name: str, default: int = 0) -> int:
    value = arguments.get(name, default)
    if value is None:
        return default
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Argument {name} must be an integer", context={"argument": name})
    return value
