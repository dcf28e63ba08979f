"""Error taxonomy shared by the admission, approval and reasoning engines."""

from __future__ import annotations

from typing import Any, Dict, Optional

from tool_warden.models.enums import ErrorCode
from tool_warden.models.execution import ExecutionFailure


class WardenError(RuntimeError):
    """Base error carrying a machine-checkable code."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_failure(self) -> ExecutionFailure:
        return ExecutionFailure(code=self.code, message=self.message, details=self.details)


class ToolNotFound(WardenError):
    code = ErrorCode.TOOL_NOT_FOUND

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' is not registered.", {"tool_name": tool_name})


class ExecutionNotFound(WardenError):
    code = ErrorCode.EXECUTION_NOT_FOUND

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution '{execution_id}' not found.", {"execution_id": execution_id})


class WorkflowNotFound(WardenError):
    code = ErrorCode.WORKFLOW_NOT_FOUND

    def __init__(self, request_id: str) -> None:
        super().__init__(f"No approval workflow for request '{request_id}'.", {"request_id": request_id})


class InvalidStateTransition(WardenError):
    """Raised for an illegal execution edge or a decision on a non-pending step."""

    code = ErrorCode.INVALID_STATE_TRANSITION


class PermissionDenied(WardenError):
    code = ErrorCode.PERMISSION_DENIED


class ApprovalExpired(WardenError):
    code = ErrorCode.APPROVAL_EXPIRED


class ExecutionCancelled(WardenError):
    code = ErrorCode.EXECUTION_CANCELLED


class ExecutionError(WardenError):
    """Executor-reported failure; keeps the original exception when there is one."""

    code = ErrorCode.EXECUTION_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, details)
        self.original = original


class ParseError(WardenError):
    code = ErrorCode.PARSE_ERROR


class MaxStepsExceeded(WardenError):
    code = ErrorCode.MAX_STEPS_EXCEEDED


class ConcurrencyLimitReached(WardenError):
    """Transient; the admission queue holds work back instead of failing it."""

    code = ErrorCode.CONCURRENCY_LIMIT_REACHED


class InvalidArgument(WardenError, ValueError):
    code = ErrorCode.INVALID_ARGUMENT


class CompletionFailed(WardenError):
    """The injected completion function raised; only the reasoning run fails."""

    code = ErrorCode.COMPLETION_FAILED
