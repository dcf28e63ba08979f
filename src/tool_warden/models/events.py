"""Engine event envelope."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from tool_warden.models.enums import EventKind


class EngineEvent(BaseModel):
    kind: EventKind
    timestamp: datetime
    execution_id: Optional[str] = None
    request_id: Optional[str] = None
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
