"""Execution lifecycle models."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tool_warden.models.enums import ErrorCode, ExecutionStatus


class ExecutionFailure(BaseModel):
    """Structured failure attached to a terminal execution or a reasoning run."""

    code: ErrorCode
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class StatusChange(BaseModel):
    status: ExecutionStatus
    at: datetime


class Execution(BaseModel):
    """One attempt to run a tool; owned by the admission queue."""

    id: str
    tool_id: str
    tool_name: str
    requested_by: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    history: List[StatusChange] = Field(default_factory=list)
    created_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    approval_request_id: Optional[str] = None
    output: Any = None
    error: Optional[ExecutionFailure] = None
    elapsed_ms: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutorResult(BaseModel):
    """What an executor reports back for one run."""

    success: bool
    output: Any = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ExecutionContext:
    """Caller identity plus the cooperative cancellation signal handed to executors."""

    user_id: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class SubmitRequest(BaseModel):
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    user_id: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    message_id: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = "cancelled by user"


class ExecutionPage(BaseModel):
    """A newest-first slice of execution history."""

    items: List[Execution] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class ExecutionStats(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_tool: Dict[str, int] = Field(default_factory=dict)
    executing: int = 0
    capacity: int = 0
