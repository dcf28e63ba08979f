"""Approval request, rule and workflow models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tool_warden.models.enums import (
    ApprovalStatus,
    ConditionField,
    ConditionOperator,
    PermissionLevel,
    RiskTier,
    RuleDecision,
    StepStatus,
    ToolCategory,
    WorkflowStatus,
)


class ApprovalRequest(BaseModel):
    """The need for a human decision on one execution."""

    id: str
    execution_id: str
    tool_name: str
    category: ToolCategory
    permission_level: PermissionLevel
    input: Dict[str, Any] = Field(default_factory=dict)
    risk_tier: RiskTier
    requested_by: str
    requested_at: datetime
    deadline: datetime
    approvers: List[str] = Field(default_factory=list)
    status: ApprovalStatus = ApprovalStatus.PENDING


class RuleCondition(BaseModel):
    field: ConditionField
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any


class RuleAction(BaseModel):
    decision: RuleDecision = RuleDecision.REQUIRE_APPROVAL
    required_approvers: List[str] = Field(default_factory=list)
    # Seconds; None falls back to the engine default.
    timeout: Optional[float] = None
    escalation_path: Optional[List[str]] = None
    notification_channels: List[str] = Field(default_factory=list)
    require_all: bool = False


class ApprovalRule(BaseModel):
    id: str
    name: str
    description: str = ""
    conditions: List[RuleCondition] = Field(default_factory=list)
    action: RuleAction = Field(default_factory=RuleAction)
    priority: int = 100
    enabled: bool = True


class ApprovalComment(BaseModel):
    author_id: str
    content: str
    timestamp: datetime


class ApprovalStep(BaseModel):
    step_number: int
    name: str
    description: str = ""
    rule_id: Optional[str] = None
    decision: RuleDecision = RuleDecision.REQUIRE_APPROVAL
    required_approvers: List[str] = Field(default_factory=list)
    require_all: bool = False
    approved_by: List[str] = Field(default_factory=list)
    rejected_by: List[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    timeout: float
    escalation_path: Optional[List[str]] = None
    escalation_level: int = 0
    notification_channels: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    comments: List[ApprovalComment] = Field(default_factory=list)


class ApprovalWorkflow(BaseModel):
    id: str
    request_id: str
    execution_id: str
    steps: List[ApprovalStep] = Field(default_factory=list)
    current_step: int = 0
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    started_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def active_step(self) -> Optional[ApprovalStep]:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None


class ApprovalDecisionRequest(BaseModel):
    approver_id: str
    comment: Optional[str] = None
    step_number: Optional[int] = None


class ApprovalRejectRequest(BaseModel):
    rejected_by: str
    reason: str


class ApprovalEscalateRequest(BaseModel):
    escalated_by: str
    reason: str


class UserRolesRequest(BaseModel):
    roles: List[str] = Field(default_factory=list)
