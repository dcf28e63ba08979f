import asyncio
from datetime import timedelta

import pytest

from tool_warden.errors import (
    ApprovalExpired,
    InvalidArgument,
    InvalidStateTransition,
    PermissionDenied,
    WorkflowNotFound,
)
from tool_warden.models.approval import ApprovalRule, RuleAction, RuleCondition
from tool_warden.models.enums import (
    ConditionField,
    EventKind,
    PermissionLevel,
    RiskTier,
    RuleDecision,
    StepStatus,
    WorkflowStatus,
)
from tool_warden.services.rules import ApprovalRuleSet
from tool_warden.services.workflow_service import ApprovalWorkflowEngine
from tool_warden.utils.ids import utcnow


def _high_admin_request(make_request):
    return make_request(risk_tier=RiskTier.HIGH, permission_level=PermissionLevel.ADMIN_APPROVAL)


def test_unmatched_request_gets_default_user_step(make_request):
    engine = ApprovalWorkflowEngine(ApprovalRuleSet(install_defaults=False), default_timeout=120)
    workflow = engine.open(make_request())

    assert len(workflow.steps) == 1
    step = workflow.steps[0]
    assert step.name == "Default approval"
    assert step.required_approvers == ["user"]
    assert step.timeout == 120
    assert step.started_at is not None
    assert engine.pending_requests()[0].id == workflow.request_id


def test_single_step_approval_completes_and_notifies_listener(workflow_engine, listener, make_request):
    request = make_request()
    workflow = workflow_engine.open(request)
    assert workflow.status == WorkflowStatus.ACTIVE
    assert workflow.steps[0].rule_id == "user-approve-medium-risk"

    result = workflow_engine.approve(request.id, "alice", comment="fine")

    assert result.status == WorkflowStatus.COMPLETED
    assert result.steps[0].status == StepStatus.APPROVED
    assert result.steps[0].comments[0].content == "fine"
    assert listener.completed == [request.id]
    assert workflow_engine.get_request(request.id) is None


def test_repeat_approval_after_completion_is_a_noop(workflow_engine, listener, make_request):
    request = make_request()
    workflow_engine.open(request)
    workflow_engine.approve(request.id, "alice")

    again = workflow_engine.approve(request.id, "alice")

    assert again.status == WorkflowStatus.COMPLETED
    assert again.steps[0].approved_by == ["alice"]
    assert listener.completed == [request.id]

    with pytest.raises(InvalidStateTransition):
        workflow_engine.approve(request.id, "carol")


def test_repeat_approval_does_not_clear_the_next_step(workflow_engine, listener, make_request):
    request = _high_admin_request(make_request)
    workflow_engine.open(request)
    workflow_engine.approve(request.id, "root")

    again = workflow_engine.approve(request.id, "root")

    assert again.status == WorkflowStatus.ACTIVE
    assert again.current_step == 1
    assert [step.approved_by for step in again.steps] == [["root"], []]
    assert listener.completed == []

    done = workflow_engine.approve(request.id, "root", step_number=2)
    assert done.status == WorkflowStatus.COMPLETED
    assert workflow_engine.approve(request.id, "root").status == WorkflowStatus.COMPLETED
    assert workflow_engine.approve(request.id, "root", step_number=1).steps[0].approved_by == ["root"]
    assert listener.completed == [request.id]


def test_repeat_approval_by_earlier_approver_is_not_refused(make_request):
    rules = ApprovalRuleSet(install_defaults=False)
    for priority, role in enumerate(["admin", "user"], start=1):
        rules.add_rule(
            ApprovalRule(
                id=f"{role}-gate",
                name=f"{role} gate",
                conditions=[RuleCondition(field=ConditionField.RISK_TIER, value="medium")],
                action=RuleAction(required_approvers=[role]),
                priority=priority,
            )
        )
    rules.set_user_roles("root", ["admin"])
    rules.set_user_roles("alice", ["user"])
    engine = ApprovalWorkflowEngine(rules)
    request = make_request()
    engine.open(request)
    engine.approve(request.id, "root")

    again = engine.approve(request.id, "root")
    assert again.current_step == 1
    assert again.steps[1].approved_by == []
    assert engine.approve(request.id, "root", step_number=1).current_step == 1

    with pytest.raises(InvalidArgument):
        engine.approve(request.id, "root", step_number=3)
    with pytest.raises(InvalidStateTransition):
        engine.approve(request.id, "alice", step_number=1)
    with pytest.raises(PermissionDenied):
        engine.approve(request.id, "root", step_number=2)

    assert engine.approve(request.id, "alice", step_number=2).status == WorkflowStatus.COMPLETED


def test_require_all_needs_every_listed_role(make_request, rules):
    rules.add_rule(
        ApprovalRule(
            id="dual-control",
            name="Dual control",
            conditions=[RuleCondition(field=ConditionField.RISK_TIER, value="medium")],
            action=RuleAction(required_approvers=["user", "admin"], require_all=True),
            priority=1,
        )
    )
    rules.remove_rule("user-approve-medium-risk")
    engine = ApprovalWorkflowEngine(rules)
    request = make_request()
    engine.open(request)

    after_alice = engine.approve(request.id, "alice")
    assert after_alice.status == WorkflowStatus.ACTIVE
    assert after_alice.steps[0].status == StepStatus.PENDING

    after_root = engine.approve(request.id, "root")
    assert after_root.status == WorkflowStatus.COMPLETED


def test_ineligible_approver_is_refused(workflow_engine, make_request):
    request = make_request()
    workflow_engine.open(request)

    with pytest.raises(PermissionDenied):
        workflow_engine.approve(request.id, "bob")
    with pytest.raises(PermissionDenied):
        workflow_engine.reject(request.id, "bob", "no")

    assert workflow_engine.get_workflow(request.id).steps[0].approved_by == []


def test_steps_advance_in_order_and_rejection_is_final(workflow_engine, listener, make_request, audit):
    request = _high_admin_request(make_request)
    workflow = workflow_engine.open(request)
    assert [step.rule_id for step in workflow.steps] == ["admin-approval-required", "admin-approve-high-risk"]

    with pytest.raises(PermissionDenied):
        workflow_engine.approve(request.id, "alice")

    after_first = workflow_engine.approve(request.id, "root")
    assert after_first.current_step == 1
    assert after_first.steps[0].status == StepStatus.APPROVED
    assert after_first.steps[1].started_at is not None

    failed = workflow_engine.reject(request.id, "root", "not today")

    assert failed.status == WorkflowStatus.FAILED
    assert failed.steps[1].status == StepStatus.REJECTED
    assert failed.failure_reason == "not today"
    assert listener.failed == [(request.id, "root", "not today")]
    assert workflow_engine.get_request(request.id) is None
    assert "workflow.failed" in audit.events()

    with pytest.raises(InvalidStateTransition):
        workflow_engine.approve(request.id, "root")


def test_rejection_leaves_later_steps_untouched(workflow_engine, make_request):
    request = _high_admin_request(make_request)
    workflow_engine.open(request)

    failed = workflow_engine.reject(request.id, "root", "no")

    assert failed.steps[0].status == StepStatus.REJECTED
    assert failed.steps[1].status == StepStatus.PENDING
    assert failed.steps[1].started_at is None


def test_reject_requires_a_reason(workflow_engine, make_request):
    request = make_request()
    workflow_engine.open(request)

    with pytest.raises(InvalidArgument):
        workflow_engine.reject(request.id, "alice", "  ")

    assert workflow_engine.get_workflow(request.id).status == WorkflowStatus.ACTIVE


def test_escalation_replaces_approvers(workflow_engine, make_request, events):
    seen = []
    events.subscribe(seen.append, kinds=[EventKind.APPROVAL_ESCALATED])
    request = make_request()
    workflow_engine.open(request)

    escalated = workflow_engine.escalate(request.id, "alice", "need an admin")

    step = escalated.steps[0]
    assert step.required_approvers == ["admin"]
    assert step.escalation_level == 1
    assert len(seen) == 1
    with pytest.raises(PermissionDenied):
        workflow_engine.approve(request.id, "alice")
    assert workflow_engine.approve(request.id, "root").status == WorkflowStatus.COMPLETED


def test_escalation_without_path_is_refused(workflow_engine, make_request):
    request = _high_admin_request(make_request)
    workflow_engine.open(request)

    with pytest.raises(InvalidArgument):
        workflow_engine.escalate(request.id, "root", "up")


def test_escalation_limit(make_request, rules):
    engine = ApprovalWorkflowEngine(rules, max_escalation_levels=1)
    request = make_request()
    engine.open(request)
    engine.escalate(request.id, "alice", "first")

    with pytest.raises(InvalidArgument):
        engine.escalate(request.id, "alice", "second")


@pytest.mark.asyncio
async def test_step_timer_expires_workflow(rules, make_request, listener, audit):
    rules.get_rule("user-approve-medium-risk").action.timeout = 0.05
    engine = ApprovalWorkflowEngine(rules, audit=audit)
    engine.listener = listener
    request = make_request()
    engine.open(request)

    await asyncio.sleep(0.2)

    workflow = engine.get_workflow(request.id)
    assert workflow.status == WorkflowStatus.EXPIRED
    assert workflow.steps[0].status == StepStatus.EXPIRED
    assert listener.expired == [request.id]
    assert engine.get_request(request.id) is None
    assert "approval.expired" in audit.events()

    with pytest.raises(ApprovalExpired):
        engine.approve(request.id, "alice")


@pytest.mark.asyncio
async def test_approval_cancels_step_timer(rules, make_request, listener):
    rules.get_rule("user-approve-medium-risk").action.timeout = 0.05
    engine = ApprovalWorkflowEngine(rules)
    engine.listener = listener
    request = make_request()
    engine.open(request)

    engine.approve(request.id, "alice")
    await asyncio.sleep(0.1)

    assert engine.get_workflow(request.id).status == WorkflowStatus.COMPLETED
    assert listener.expired == []


def test_sweep_expires_overdue_steps(workflow_engine, listener, make_request):
    request = make_request()
    workflow_engine.open(request)

    assert workflow_engine.sweep_expired(utcnow() + timedelta(seconds=10)) == []
    expired = workflow_engine.sweep_expired(utcnow() + timedelta(seconds=301))

    assert expired == [request.id]
    assert listener.expired == [request.id]
    with pytest.raises(ApprovalExpired):
        workflow_engine.reject(request.id, "alice", "late")


def test_purge_finished_drops_old_terminal_workflows(workflow_engine, make_request):
    done = make_request()
    workflow_engine.open(done)
    workflow_engine.approve(done.id, "alice")
    active = make_request()
    workflow_engine.open(active)

    assert workflow_engine.purge_finished(utcnow() - timedelta(hours=1)) == 0
    assert workflow_engine.purge_finished(utcnow() + timedelta(seconds=1)) == 1
    assert workflow_engine.get_workflow(done.id) is None
    assert workflow_engine.get_workflow(active.id) is not None


def test_unknown_request_raises(workflow_engine):
    with pytest.raises(WorkflowNotFound):
        workflow_engine.approve("apr-missing", "alice")


def test_deny_rule_fails_without_human(rules, make_request, listener):
    rules.add_rule(
        ApprovalRule(
            id="no-custom",
            name="No custom tools",
            conditions=[RuleCondition(field=ConditionField.CATEGORY, value="custom")],
            action=RuleAction(decision=RuleDecision.DENY),
            priority=0,
        )
    )
    engine = ApprovalWorkflowEngine(rules)
    engine.listener = listener
    request = make_request()

    workflow = engine.open(request)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.failure_reason == "denied by rule no-custom"
    assert listener.failed == [(request.id, "system", "denied by rule no-custom")]
    assert workflow.steps[1].status == StepStatus.PENDING


def test_auto_steps_are_passed_through(rules, make_request, listener):
    engine = ApprovalWorkflowEngine(rules)
    engine.listener = listener
    request = make_request(risk_tier=RiskTier.LOW, permission_level=PermissionLevel.USER_APPROVAL)

    workflow = engine.open(request)

    assert workflow.status == WorkflowStatus.COMPLETED
    assert workflow.steps[0].approved_by == ["system"]
    assert listener.completed == [request.id]


def test_audit_trail_names(workflow_engine, make_request, audit):
    request = make_request()
    workflow_engine.open(request)
    workflow_engine.escalate(request.id, "alice", "up")
    workflow_engine.approve(request.id, "root")

    assert audit.events() == [
        "workflow.created",
        "approval.escalated",
        "approval.granted",
        "workflow.completed",
    ]


@pytest.mark.asyncio
async def test_notifications_are_delivered_per_channel(workflow_engine, notifier, make_request):
    delivered = []

    async def websocket(recipients, message):
        delivered.append(("websocket", recipients, message))

    notifier.register_handler("websocket", websocket)
    request = make_request()
    workflow_engine.open(request)
    await workflow_engine.flush_notifications()

    assert len(delivered) == 1
    channel, recipients, message = delivered[0]
    assert recipients == ["user"]
    assert request.id in message
    workflow_engine.shutdown()


def test_cancel_only_touches_active_workflows(workflow_engine, make_request, listener):
    request = make_request()
    workflow_engine.open(request)

    cancelled = workflow_engine.cancel(request.id, "caller went away")

    assert cancelled.status == WorkflowStatus.CANCELLED
    assert workflow_engine.get_request(request.id) is None
    assert listener.failed == []
    assert workflow_engine.cancel(request.id, "again").status == WorkflowStatus.CANCELLED
    assert workflow_engine.cancel("apr-missing", "nothing") is None
    with pytest.raises(InvalidStateTransition):
        workflow_engine.approve(request.id, "alice")


def test_list_workflows_filters_by_status(workflow_engine, make_request):
    first = make_request()
    second = make_request()
    workflow_engine.open(first)
    workflow_engine.open(second)
    workflow_engine.approve(first.id, "alice")

    assert [wf.request_id for wf in workflow_engine.list_workflows(WorkflowStatus.ACTIVE)] == [second.id]
    assert len(workflow_engine.list_workflows()) == 2
