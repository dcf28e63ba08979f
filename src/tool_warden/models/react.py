"""Reasoning-loop models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tool_warden.models.enums import ReActStepType
from tool_warden.models.execution import ExecutionFailure


class ToolCall(BaseModel):
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ReActStep(BaseModel):
    type: ReActStepType
    content: str
    tool_call: Optional[ToolCall] = None
    tool_result: Any = None
    execution_id: Optional[str] = None
    timestamp: datetime


class ReActResult(BaseModel):
    run_id: str
    steps: List[ReActStep] = Field(default_factory=list)
    final_answer: str = ""
    success: bool
    error: Optional[ExecutionFailure] = None
    completion_calls: int = 0
    elapsed_ms: float = 0.0


class ReActRunRequest(BaseModel):
    message: str
    user_id: str
    conversation_id: Optional[str] = None
    max_steps: Optional[int] = None
