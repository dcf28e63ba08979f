"""Declarative approval rules and the user-role directory they match against."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from tool_warden.models.approval import ApprovalRequest, ApprovalRule, RuleAction, RuleCondition
from tool_warden.models.enums import (
    ConditionField,
    ConditionOperator,
    PermissionLevel,
    RiskTier,
    RuleDecision,
)

LOG = logging.getLogger(__name__)


def default_rules() -> List[ApprovalRule]:
    """Rules installed on a fresh rule set."""
    return [
        ApprovalRule(
            id="admin-approval-required",
            name="Administrator sign-off",
            description="Tools declared admin_approval always need an administrator.",
            conditions=[
                RuleCondition(
                    field=ConditionField.PERMISSION_LEVEL,
                    operator=ConditionOperator.EQUALS,
                    value=PermissionLevel.ADMIN_APPROVAL.value,
                )
            ],
            action=RuleAction(
                decision=RuleDecision.REQUIRE_APPROVAL,
                required_approvers=["admin"],
                timeout=600.0,
                notification_channels=["websocket", "email"],
            ),
            priority=0,
        ),
        ApprovalRule(
            id="auto-approve-low-risk",
            name="Auto-approve low risk",
            description="Low-risk calls pass without a human.",
            conditions=[RuleCondition(field=ConditionField.RISK_TIER, value=RiskTier.LOW.value)],
            action=RuleAction(decision=RuleDecision.AUTO_APPROVE, required_approvers=["system"]),
            priority=1,
        ),
        ApprovalRule(
            id="user-approve-medium-risk",
            name="User approval for medium risk",
            description="Medium-risk calls need the requesting user's approval.",
            conditions=[RuleCondition(field=ConditionField.RISK_TIER, value=RiskTier.MEDIUM.value)],
            action=RuleAction(
                decision=RuleDecision.REQUIRE_APPROVAL,
                required_approvers=["user"],
                timeout=300.0,
                escalation_path=["admin"],
                notification_channels=["websocket", "email"],
            ),
            priority=2,
        ),
        ApprovalRule(
            id="admin-approve-high-risk",
            name="Administrator approval for high risk",
            description="High-risk calls need an administrator.",
            conditions=[RuleCondition(field=ConditionField.RISK_TIER, value=RiskTier.HIGH.value)],
            action=RuleAction(
                decision=RuleDecision.REQUIRE_APPROVAL,
                required_approvers=["admin"],
                timeout=600.0,
                notification_channels=["websocket", "email", "sms"],
            ),
            priority=3,
        ),
    ]


class ApprovalRuleSet:
    """Ordered rule collection.

    ``evaluate`` returns every enabled rule whose conditions all hold, sorted
    by ascending priority. Callers turn each match into its own sequential
    approval gate; there is no first-match-wins shortcut.
    """

    def __init__(self, rules: Optional[Iterable[ApprovalRule]] = None, *, install_defaults: bool = True) -> None:
        self._rules: Dict[str, ApprovalRule] = {}
        self._user_roles: Dict[str, List[str]] = {}
        if install_defaults:
            for rule in default_rules():
                self.add_rule(rule)
        for rule in rules or []:
            self.add_rule(rule)

    # Rules ----------------------------------------------------------------------
    def add_rule(self, rule: ApprovalRule) -> None:
        self._rules[rule.id] = rule
        LOG.debug("Added approval rule %s (priority %s)", rule.id, rule.priority)

    def remove_rule(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)
        LOG.debug("Removed approval rule %s", rule_id)

    def get_rule(self, rule_id: str) -> Optional[ApprovalRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[ApprovalRule]:
        return sorted(self._rules.values(), key=lambda rule: (rule.priority, rule.id))

    def evaluate(self, request: ApprovalRequest) -> List[ApprovalRule]:
        matches = [
            rule
            for rule in self._rules.values()
            if rule.enabled and all(self._condition_holds(c, request) for c in rule.conditions)
        ]
        return sorted(matches, key=lambda rule: rule.priority)

    # Roles ----------------------------------------------------------------------
    def set_user_roles(self, user_id: str, roles: Iterable[str]) -> None:
        self._user_roles[user_id] = list(roles)

    def roles_for(self, user_id: str) -> List[str]:
        return list(self._user_roles.get(user_id, []))

    def is_eligible(self, user_id: str, required: Iterable[str]) -> bool:
        """True when the user is named directly or holds one of the required roles."""
        required = list(required)
        if user_id in required:
            return True
        roles = self._user_roles.get(user_id, [])
        return any(role in roles for role in required)

    # Condition evaluation ----------------------------------------------------------
    def _condition_holds(self, condition: RuleCondition, request: ApprovalRequest) -> bool:
        if condition.field == ConditionField.RISK_TIER:
            return evaluate_operator(request.risk_tier, condition.operator, condition.value)
        if condition.field == ConditionField.CATEGORY:
            return evaluate_operator(request.category.value, condition.operator, condition.value)
        if condition.field == ConditionField.PERMISSION_LEVEL:
            return evaluate_operator(request.permission_level.value, condition.operator, condition.value)
        if condition.field == ConditionField.ROLE:
            roles = self._user_roles.get(request.requested_by, [])
            return any(evaluate_operator(role, condition.operator, condition.value) for role in roles)
        return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, RiskTier):
        return float(value.rank)
    if isinstance(value, str):
        try:
            return float(RiskTier(value).rank)
        except ValueError:
            pass
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    return value.value if isinstance(value, RiskTier) else str(value)


def evaluate_operator(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Structural comparison; risk tiers compare by rank for the numeric operators."""
    if operator == ConditionOperator.EQUALS:
        return _as_text(actual) == _as_text(expected)
    if operator == ConditionOperator.NOT_EQUALS:
        return _as_text(actual) != _as_text(expected)
    if operator == ConditionOperator.CONTAINS:
        if isinstance(expected, (list, tuple, set)):
            return _as_text(actual) in {_as_text(item) for item in expected}
        return _as_text(expected) in _as_text(actual)

    left = _as_number(actual)
    if left is None:
        return False
    if operator == ConditionOperator.IN_RANGE:
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        low, high = _as_number(expected[0]), _as_number(expected[1])
        if low is None or high is None:
            return False
        return low <= left <= high

    right = _as_number(expected)
    if right is None:
        return False
    if operator == ConditionOperator.GREATER_THAN:
        return left > right
    if operator == ConditionOperator.LESS_THAN:
        return left < right
    return False
