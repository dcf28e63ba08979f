"""Risk classification for proposed tool calls.

The heuristic only ever escalates: a category that can be high risk, or any
high-risk token anywhere in the serialized input, yields ``high``. Benign
calls may be over-classified; dangerous ones must not be under-classified.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Tuple, Union

from tool_warden.models.enums import PermissionLevel, RiskTier, ToolCategory

CATEGORY_RISK: Dict[ToolCategory, Tuple[RiskTier, ...]] = {
    ToolCategory.FILESYSTEM: (RiskTier.HIGH, RiskTier.MEDIUM, RiskTier.LOW),
    ToolCategory.NETWORK: (RiskTier.HIGH, RiskTier.MEDIUM),
    ToolCategory.SYSTEM: (RiskTier.HIGH,),
    ToolCategory.DATABASE: (RiskTier.MEDIUM, RiskTier.HIGH),
    ToolCategory.DEVELOPMENT: (RiskTier.LOW, RiskTier.MEDIUM),
    ToolCategory.MCP: (RiskTier.LOW, RiskTier.MEDIUM),
    ToolCategory.CUSTOM: (RiskTier.MEDIUM,),
}

HIGH_RISK_TOKENS = ("delete", "drop", "rm", "remove", "sudo", "admin")


def _category_tiers(category: Union[ToolCategory, str]) -> Tuple[RiskTier, ...]:
    try:
        return CATEGORY_RISK[ToolCategory(category)]
    except ValueError:
        return (RiskTier.LOW,)


def classify(
    category: Union[ToolCategory, str],
    permission_level: Union[PermissionLevel, str],
    serialized_input: str,
) -> RiskTier:
    """Return the risk tier for a call.

    >>> classify("system", "auto", '{"command":"rm -rf /tmp"}')
    <RiskTier.HIGH: 'high'>
    """
    tiers = _category_tiers(category)
    lowered = serialized_input.lower()
    if any(token in lowered for token in HIGH_RISK_TOKENS) or RiskTier.HIGH in tiers:
        return RiskTier.HIGH
    if PermissionLevel(permission_level) == PermissionLevel.DENIED:
        return RiskTier.HIGH
    if RiskTier.MEDIUM in tiers:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def classify_call(
    category: Union[ToolCategory, str],
    permission_level: Union[PermissionLevel, str],
    tool_input: Dict[str, Any],
) -> RiskTier:
    return classify(category, permission_level, json.dumps(tool_input, default=str, sort_keys=True))
