"""Shared enums for Tool Warden models."""

from __future__ import annotations

from enum import Enum


class ToolCategory(str, Enum):
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    SYSTEM = "system"
    DATABASE = "database"
    DEVELOPMENT = "development"
    MCP = "mcp"
    CUSTOM = "custom"


class PermissionLevel(str, Enum):
    AUTO = "auto"
    USER_APPROVAL = "user_approval"
    ADMIN_APPROVAL = "admin_approval"
    DENIED = "denied"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.REJECTED, ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RuleDecision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


class ConditionField(str, Enum):
    RISK_TIER = "risk_tier"
    ROLE = "role"
    CATEGORY = "category"
    PERMISSION_LEVEL = "permission_level"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN_RANGE = "in_range"


class ReActStepType(str, Enum):
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"
    ANSWER = "answer"


class ErrorCode(str, Enum):
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    EXECUTION_NOT_FOUND = "EXECUTION_NOT_FOUND"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    PARSE_ERROR = "PARSE_ERROR"
    MAX_STEPS_EXCEEDED = "MAX_STEPS_EXCEEDED"
    CONCURRENCY_LIMIT_REACHED = "CONCURRENCY_LIMIT_REACHED"
    COMPLETION_FAILED = "COMPLETION_FAILED"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class EventKind(str, Enum):
    EXECUTION_REQUESTED = "execution-requested"
    EXECUTION_APPROVED = "execution-approved"
    EXECUTION_REJECTED = "execution-rejected"
    EXECUTION_STARTED = "execution-started"
    EXECUTION_COMPLETED = "execution-completed"
    EXECUTION_FAILED = "execution-failed"
    APPROVAL_REQUIRED = "approval-required"
    APPROVAL_GRANTED = "approval-granted"
    APPROVAL_REJECTED = "approval-rejected"
    APPROVAL_ESCALATED = "approval-escalated"
    APPROVAL_EXPIRED = "approval-expired"
    WORKFLOW_COMPLETED = "workflow-completed"
    WORKFLOW_FAILED = "workflow-failed"
    REASONING_STEP = "reasoning-step"
