"""Tool descriptor models."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tool_warden.models.enums import PermissionLevel, ToolCategory


class ToolParameter(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


class ToolDescriptor(BaseModel):
    """Immutable description of a tool the agent may call."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    category: ToolCategory = ToolCategory.CUSTOM
    permission_level: PermissionLevel = PermissionLevel.USER_APPROVAL
    parameters: List[ToolParameter] = Field(default_factory=list)
    sandboxed: bool = True
    # Seconds; None lets the executor run unbounded.
    default_timeout: Optional[float] = 30.0
