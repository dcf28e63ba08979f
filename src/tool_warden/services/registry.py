"""In-process tool registry."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from tool_warden.errors import ToolNotFound
from tool_warden.models.enums import ToolCategory
from tool_warden.models.tool import ToolDescriptor

LOG = logging.getLogger(__name__)


class ToolRegistry:
    """Holds tool descriptors keyed by id; lookups by name go through ``resolve``."""

    def __init__(self, tools: Optional[Iterable[ToolDescriptor]] = None) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDescriptor) -> None:
        self._tools[tool.id] = tool
        LOG.info("Registered tool %s (%s, %s)", tool.name, tool.category.value, tool.permission_level.value)

    def register_many(self, tools: Iterable[ToolDescriptor]) -> None:
        for tool in tools:
            self.register(tool)

    def find(self, name: str) -> Optional[ToolDescriptor]:
        for tool in self._tools.values():
            if tool.name == name:
                return tool
        return None

    def resolve(self, name: str) -> ToolDescriptor:
        tool = self.find(name)
        if tool is None:
            raise ToolNotFound(name)
        return tool

    def get(self, tool_id: str) -> Optional[ToolDescriptor]:
        return self._tools.get(tool_id)

    def list_tools(self, category: Optional[ToolCategory] = None) -> List[ToolDescriptor]:
        tools = sorted(self._tools.values(), key=lambda t: t.name)
        if category is None:
            return tools
        return [tool for tool in tools if tool.category == category]

    def search(self, query: str) -> List[ToolDescriptor]:
        needle = query.lower()
        return [
            tool
            for tool in self.list_tools()
            if needle in tool.name.lower()
            or needle in tool.description.lower()
            or needle in tool.category.value
        ]

    def catalogue(self, tools: Optional[Iterable[ToolDescriptor]] = None) -> str:
        """Render tools as the plain-text catalogue shown to the model."""
        blocks = []
        for tool in tools if tools is not None else self.list_tools():
            params = "\n".join(
                f"  - {p.name} ({p.type}{', required' if p.required else ''}): {p.description}"
                for p in tool.parameters
            )
            blocks.append(f"- {tool.name}: {tool.description}\n  Parameters:\n{params or '  (none)'}")
        return "\n\n".join(blocks)
