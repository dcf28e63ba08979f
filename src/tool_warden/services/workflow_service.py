"""Multi-step approval workflows with escalation and timeouts."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from tool_warden import constants
from tool_warden.clients.store import InMemoryStore, KeyValueStore
from tool_warden.errors import (
    ApprovalExpired,
    InvalidArgument,
    InvalidStateTransition,
    PermissionDenied,
    WorkflowNotFound,
)
from tool_warden.models.approval import (
    ApprovalComment,
    ApprovalRequest,
    ApprovalRule,
    ApprovalStep,
    ApprovalWorkflow,
)
from tool_warden.models.enums import (
    EventKind,
    RuleDecision,
    StepStatus,
    WorkflowStatus,
)
from tool_warden.services.audit import AuditSink, MemoryAuditSink
from tool_warden.services.events import EventBus
from tool_warden.services.notifications import NotificationRouter, NotificationSink
from tool_warden.services.rules import ApprovalRuleSet
from tool_warden.utils.ids import generate_id, utcnow

LOG = logging.getLogger(__name__)

_Notice = Tuple[List[str], str, str]


class WorkflowListener(Protocol):
    """Receives terminal workflow outcomes; the admission queue implements this."""

    def workflow_completed(self, workflow: ApprovalWorkflow) -> None:
        ...

    def workflow_failed(self, workflow: ApprovalWorkflow, actor: str, reason: str) -> None:
        ...

    def workflow_expired(self, workflow: ApprovalWorkflow) -> None:
        ...


class ApprovalWorkflowEngine:
    """Builds and advances approval workflows.

    Workflows are keyed by the id of the approval request they gate. Terminal
    workflows stay readable until ``purge_finished`` drops them, so late
    decisions get a precise error instead of ``WorkflowNotFound``. Pending
    approval requests are removed from their store once resolved.

    All state changes happen synchronously on the caller's control flow;
    only step timers and notification delivery are scheduled on the running
    event loop.
    """

    def __init__(
        self,
        rules: Optional[ApprovalRuleSet] = None,
        *,
        workflows: Optional[KeyValueStore[ApprovalWorkflow]] = None,
        requests: Optional[KeyValueStore[ApprovalRequest]] = None,
        events: Optional[EventBus] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationSink] = None,
        default_timeout: float = constants.DEFAULT_STEP_TIMEOUT,
        max_escalation_levels: int = constants.MAX_ESCALATION_LEVELS,
    ) -> None:
        self.rules = rules or ApprovalRuleSet()
        self.workflows: KeyValueStore[ApprovalWorkflow] = workflows if workflows is not None else InMemoryStore()
        self.requests: KeyValueStore[ApprovalRequest] = requests if requests is not None else InMemoryStore()
        self.events = events or EventBus()
        self.audit = audit or MemoryAuditSink()
        self.notifier = notifier or NotificationRouter()
        self.default_timeout = default_timeout
        self.max_escalation_levels = max_escalation_levels
        self.listener: Optional[WorkflowListener] = None
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._notifications: Set[asyncio.Task] = set()

    # Construction -----------------------------------------------------------------
    def create_workflow(self, request: ApprovalRequest, rules: Iterable[ApprovalRule]) -> ApprovalWorkflow:
        """Build one step per matching rule, or a single ``user`` step when none match."""
        steps: List[ApprovalStep] = []
        for number, rule in enumerate(rules, start=1):
            action = rule.action
            steps.append(
                ApprovalStep(
                    step_number=number,
                    name=rule.name,
                    description=rule.description,
                    rule_id=rule.id,
                    decision=action.decision,
                    required_approvers=list(action.required_approvers),
                    require_all=action.require_all,
                    timeout=action.timeout if action.timeout is not None else self.default_timeout,
                    escalation_path=list(action.escalation_path) if action.escalation_path else None,
                    notification_channels=list(action.notification_channels),
                )
            )
        if not steps:
            steps.append(
                ApprovalStep(
                    step_number=1,
                    name="Default approval",
                    description="No rule matched; the requesting side must approve.",
                    required_approvers=[constants.DEFAULT_APPROVER_ROLE],
                    timeout=self.default_timeout,
                )
            )
        return ApprovalWorkflow(
            id=generate_id("wf"),
            request_id=request.id,
            execution_id=request.execution_id,
            steps=steps,
            started_at=utcnow(),
        )

    def open(self, request: ApprovalRequest) -> ApprovalWorkflow:
        """Register a request, build its workflow and start the first step."""
        matched = self.rules.evaluate(request)
        workflow = self.create_workflow(request, matched)
        self.requests.set(request.id, request)
        self.audit.record(
            "workflow.created",
            workflow_id=workflow.id,
            request_id=request.id,
            execution_id=request.execution_id,
            rules=[rule.id for rule in matched],
        )
        LOG.info(
            "Opened workflow %s for request %s with %d step(s)", workflow.id, request.id, len(workflow.steps)
        )
        self.events.emit(
            EventKind.APPROVAL_REQUIRED,
            execution_id=request.execution_id,
            request_id=request.id,
            workflow_id=workflow.id,
            payload={"tool_name": request.tool_name, "risk_tier": request.risk_tier.value},
        )
        notices: List[_Notice] = []
        outcome = self._advance(workflow, notices)
        self._save(workflow)
        self._finish(workflow, outcome, notices)
        return workflow

    # Decisions ----------------------------------------------------------------------
    def approve(
        self,
        request_id: str,
        approver_id: str,
        comment: Optional[str] = None,
        step_number: Optional[int] = None,
    ) -> ApprovalWorkflow:
        """Record an approval on the step awaiting a decision.

        Repeating an approval is a no-op. Without ``step_number`` the repeat is
        matched against the pending step and the most recently approved one, so
        a retry never clears the next step; an approver eligible for a later step
        passes its ``step_number`` to decide it.
        """
        workflow = self._load(request_id)
        for previous in self._decided_steps(workflow, step_number):
            if approver_id in previous.approved_by:
                LOG.debug("Duplicate approval by %s on step %d of %s", approver_id, previous.step_number, workflow.id)
                return workflow
        step = self._pending_step(workflow)
        if step_number is not None and step_number != step.step_number:
            raise InvalidStateTransition(
                f"Step {step_number} of request '{request_id}' is not awaiting a decision.",
                {"request_id": request_id, "step": step_number, "current": step.step_number},
            )
        self._check_eligible(step, approver_id)

        step.approved_by.append(approver_id)
        if comment:
            step.comments.append(ApprovalComment(author_id=approver_id, content=comment, timestamp=utcnow()))
        self.audit.record(
            "approval.granted",
            workflow_id=workflow.id,
            request_id=request_id,
            approver_id=approver_id,
            step=step.step_number,
        )

        notices: List[_Notice] = []
        outcome = None
        if self._step_satisfied(step):
            step.status = StepStatus.APPROVED
            step.completed_at = utcnow()
            self._cancel_timer(request_id)
            LOG.info("Step %d of workflow %s approved by %s", step.step_number, workflow.id, approver_id)
            self.events.emit(
                EventKind.APPROVAL_GRANTED,
                execution_id=workflow.execution_id,
                request_id=request_id,
                workflow_id=workflow.id,
                payload={"approver_id": approver_id, "step": step.step_number},
            )
            workflow.current_step += 1
            outcome = self._advance(workflow, notices)
        self._save(workflow)
        self._finish(workflow, outcome, notices)
        return workflow

    def reject(self, request_id: str, rejected_by: str, reason: str) -> ApprovalWorkflow:
        if not reason or not reason.strip():
            raise InvalidArgument("A rejection reason is required.", {"request_id": request_id})
        workflow = self._load(request_id)
        step = self._pending_step(workflow)
        self._check_eligible(step, rejected_by)

        now = utcnow()
        step.rejected_by.append(rejected_by)
        step.comments.append(ApprovalComment(author_id=rejected_by, content=reason, timestamp=now))
        step.status = StepStatus.REJECTED
        step.completed_at = now
        self._cancel_timer(request_id)
        self.audit.record(
            "approval.rejected",
            workflow_id=workflow.id,
            request_id=request_id,
            rejected_by=rejected_by,
            reason=reason,
            step=step.step_number,
        )
        LOG.info("Step %d of workflow %s rejected by %s", step.step_number, workflow.id, rejected_by)
        self.events.emit(
            EventKind.APPROVAL_REJECTED,
            execution_id=workflow.execution_id,
            request_id=request_id,
            workflow_id=workflow.id,
            payload={"rejected_by": rejected_by, "reason": reason, "step": step.step_number},
        )
        outcome = self._fail(workflow, rejected_by, reason)
        self._save(workflow)
        self._finish(workflow, outcome, [])
        return workflow

    def escalate(self, request_id: str, escalated_by: str, reason: str) -> ApprovalWorkflow:
        workflow = self._load(request_id)
        step = self._pending_step(workflow)
        if not step.escalation_path:
            raise InvalidArgument(
                f"Step {step.step_number} of request '{request_id}' has no escalation path.",
                {"request_id": request_id, "step": step.step_number},
            )
        if step.escalation_level >= self.max_escalation_levels:
            raise InvalidArgument(
                f"Step {step.step_number} of request '{request_id}' reached the escalation limit.",
                {"request_id": request_id, "limit": self.max_escalation_levels},
            )

        now = utcnow()
        step.required_approvers = list(step.escalation_path)
        step.escalation_level += 1
        step.started_at = now
        if reason:
            step.comments.append(ApprovalComment(author_id=escalated_by, content=reason, timestamp=now))
        self._arm_timer(workflow.request_id, step)
        self.audit.record(
            "approval.escalated",
            workflow_id=workflow.id,
            request_id=request_id,
            escalated_by=escalated_by,
            reason=reason,
            approvers=step.required_approvers,
            level=step.escalation_level,
        )
        LOG.info("Workflow %s escalated to %s by %s", workflow.id, step.required_approvers, escalated_by)
        self.events.emit(
            EventKind.APPROVAL_ESCALATED,
            execution_id=workflow.execution_id,
            request_id=request_id,
            workflow_id=workflow.id,
            payload={"escalated_by": escalated_by, "approvers": step.required_approvers, "reason": reason},
        )
        self._save(workflow)
        notices: List[_Notice] = [
            (step.required_approvers, f"Approval escalated for request {request_id}: {reason}", "escalation")
        ]
        self._finish(workflow, None, notices)
        return workflow

    def cancel(self, request_id: str, reason: str) -> Optional[ApprovalWorkflow]:
        """Cancel an active workflow; terminal or unknown workflows are left alone."""
        workflow = self.workflows.get(request_id)
        if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
            return workflow
        self._cancel_timer(request_id)
        workflow.status = WorkflowStatus.CANCELLED
        workflow.completed_at = utcnow()
        workflow.failure_reason = reason
        self._resolve_request(request_id)
        self._save(workflow)
        self.audit.record("workflow.cancelled", workflow_id=workflow.id, request_id=request_id, reason=reason)
        LOG.info("Workflow %s cancelled: %s", workflow.id, reason)
        return workflow

    # Timeouts -------------------------------------------------------------------------
    def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Expire every active workflow whose current step outlived its timeout."""
        now = now or utcnow()
        expired: List[str] = []
        for workflow in self.workflows.values():
            if workflow.status != WorkflowStatus.ACTIVE:
                continue
            step = workflow.active_step
            if step is None or step.status != StepStatus.PENDING or step.started_at is None:
                continue
            if step.started_at + timedelta(seconds=step.timeout) <= now:
                self._expire(workflow.request_id)
                expired.append(workflow.request_id)
        if expired:
            LOG.info("Sweep expired %d workflow(s)", len(expired))
        return expired

    def resume(self, now: Optional[datetime] = None) -> int:
        """Re-arm step timers for active workflows, e.g. after a restart.

        Each timer fires when the step would have timed out; steps already past
        their deadline expire on the next loop iteration.
        """
        now = now or utcnow()
        resumed = 0
        for workflow in self.workflows.values():
            step = workflow.active_step
            if workflow.status != WorkflowStatus.ACTIVE or step is None or step.status != StepStatus.PENDING:
                continue
            if step.started_at is None:
                continue
            remaining = (step.started_at + timedelta(seconds=step.timeout) - now).total_seconds()
            self._arm_timer(workflow.request_id, step, max(remaining, 0.0))
            resumed += 1
        return resumed

    def purge_finished(self, older_than: datetime) -> int:
        """Drop terminal workflows completed before ``older_than``."""
        purged = 0
        for workflow in self.workflows.values():
            if workflow.status == WorkflowStatus.ACTIVE or workflow.completed_at is None:
                continue
            if workflow.completed_at <= older_than:
                self.workflows.delete(workflow.request_id)
                purged += 1
        return purged

    def _on_timer(self, request_id: str, step_number: int, escalation_level: int) -> None:
        self._timers.pop(request_id, None)
        workflow = self.workflows.get(request_id)
        step = workflow.active_step if workflow else None
        if (
            workflow is None
            or workflow.status != WorkflowStatus.ACTIVE
            or step is None
            or step.step_number != step_number
            or step.escalation_level != escalation_level
            or step.status != StepStatus.PENDING
        ):
            LOG.debug("Ignoring stale timer for request %s step %d", request_id, step_number)
            return
        self._expire(request_id)

    def _expire(self, request_id: str) -> None:
        workflow = self.workflows.get(request_id)
        if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
            return
        step = workflow.active_step
        now = utcnow()
        self._cancel_timer(request_id)
        if step is not None:
            step.status = StepStatus.EXPIRED
            step.completed_at = now
        workflow.status = WorkflowStatus.EXPIRED
        workflow.completed_at = now
        workflow.failure_reason = f"approval step {step.step_number if step else '?'} timed out"
        self._resolve_request(request_id)
        self._save(workflow)
        self.audit.record(
            "approval.expired",
            workflow_id=workflow.id,
            request_id=request_id,
            step=step.step_number if step else None,
        )
        LOG.info("Workflow %s expired", workflow.id)
        self.events.emit(
            EventKind.APPROVAL_EXPIRED,
            execution_id=workflow.execution_id,
            request_id=request_id,
            workflow_id=workflow.id,
        )
        if self.listener is not None:
            self.listener.workflow_expired(workflow)

    # Queries --------------------------------------------------------------------------
    def get_workflow(self, request_id: str) -> Optional[ApprovalWorkflow]:
        return self.workflows.get(request_id)

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return self.requests.get(request_id)

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[ApprovalWorkflow]:
        workflows = sorted(self.workflows.values(), key=lambda wf: wf.started_at)
        if status is None:
            return workflows
        return [wf for wf in workflows if wf.status == status]

    def pending_requests(self) -> List[ApprovalRequest]:
        return sorted(self.requests.values(), key=lambda req: req.requested_at)

    async def flush_notifications(self) -> None:
        """Wait for notification deliveries scheduled so far."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    # Internals ------------------------------------------------------------------------
    def _load(self, request_id: str) -> ApprovalWorkflow:
        workflow = self.workflows.get(request_id)
        if workflow is None:
            raise WorkflowNotFound(request_id)
        return workflow

    def _pending_step(self, workflow: ApprovalWorkflow) -> ApprovalStep:
        if workflow.status == WorkflowStatus.EXPIRED:
            raise ApprovalExpired(
                f"Approval request '{workflow.request_id}' has expired.", {"request_id": workflow.request_id}
            )
        step = workflow.active_step
        if workflow.status != WorkflowStatus.ACTIVE or step is None or step.status != StepStatus.PENDING:
            raise InvalidStateTransition(
                f"Workflow {workflow.id} is {workflow.status.value}; no step is awaiting a decision.",
                {"request_id": workflow.request_id, "status": workflow.status.value},
            )
        return step

    def _decided_steps(self, workflow: ApprovalWorkflow, step_number: Optional[int]) -> List[ApprovalStep]:
        """Steps a repeated approval may refer to; empty once the workflow failed."""
        if workflow.status not in (WorkflowStatus.ACTIVE, WorkflowStatus.COMPLETED):
            return []
        if step_number is not None:
            for step in workflow.steps:
                if step.step_number == step_number:
                    return [step]
            raise InvalidArgument(
                f"Request '{workflow.request_id}' has no step {step_number}.",
                {"request_id": workflow.request_id, "step": step_number},
            )
        candidates = []
        active = workflow.active_step
        if active is not None and active.status == StepStatus.PENDING:
            candidates.append(active)
        for step in reversed(workflow.steps[: workflow.current_step]):
            if step.status == StepStatus.APPROVED:
                candidates.append(step)
                break
        return candidates

    def _check_eligible(self, step: ApprovalStep, user_id: str) -> None:
        if not self.rules.is_eligible(user_id, step.required_approvers):
            raise PermissionDenied(
                f"User '{user_id}' may not decide step {step.step_number}.",
                {"user_id": user_id, "required": step.required_approvers},
            )

    def _step_satisfied(self, step: ApprovalStep) -> bool:
        if not step.require_all:
            return bool(step.approved_by)
        return all(
            any(self.rules.is_eligible(approver, [required]) for approver in step.approved_by)
            for required in step.required_approvers
        )

    def _advance(self, workflow: ApprovalWorkflow, notices: List[_Notice]) -> Optional[str]:
        """Enter the current step, running through auto and deny steps.

        Returns ``"completed"`` or ``"failed"`` when the workflow became
        terminal, otherwise ``None`` with the step waiting on humans.
        """
        while True:
            step = workflow.active_step
            if step is None:
                return self._complete(workflow)
            now = utcnow()
            step.started_at = now
            if step.decision == RuleDecision.AUTO_APPROVE:
                step.approved_by.append(constants.SYSTEM_ACTOR)
                step.status = StepStatus.APPROVED
                step.completed_at = now
                LOG.debug("Step %d of workflow %s auto-approved", step.step_number, workflow.id)
                workflow.current_step += 1
                continue
            if step.decision == RuleDecision.DENY:
                reason = f"denied by rule {step.rule_id or step.name}"
                step.rejected_by.append(constants.SYSTEM_ACTOR)
                step.status = StepStatus.REJECTED
                step.completed_at = now
                step.comments.append(ApprovalComment(author_id=constants.SYSTEM_ACTOR, content=reason, timestamp=now))
                return self._fail(workflow, constants.SYSTEM_ACTOR, reason)

            self._arm_timer(workflow.request_id, step)
            message = f"Approval required for request {workflow.request_id} (step {step.step_number}: {step.name})"
            for channel in step.notification_channels:
                notices.append((list(step.required_approvers), message, channel))
            return None

    def _complete(self, workflow: ApprovalWorkflow) -> str:
        workflow.status = WorkflowStatus.COMPLETED
        workflow.completed_at = utcnow()
        self._resolve_request(workflow.request_id)
        self.audit.record("workflow.completed", workflow_id=workflow.id, request_id=workflow.request_id)
        LOG.info("Workflow %s completed", workflow.id)
        return "completed"

    def _fail(self, workflow: ApprovalWorkflow, actor: str, reason: str) -> str:
        workflow.status = WorkflowStatus.FAILED
        workflow.completed_at = utcnow()
        workflow.failure_reason = reason
        self._resolve_request(workflow.request_id)
        self.audit.record(
            "workflow.failed", workflow_id=workflow.id, request_id=workflow.request_id, actor=actor, reason=reason
        )
        LOG.info("Workflow %s failed: %s", workflow.id, reason)
        return "failed"

    def _finish(self, workflow: ApprovalWorkflow, outcome: Optional[str], notices: List[_Notice]) -> None:
        """Publish terminal outcomes after the workflow is stored."""
        if outcome == "completed":
            self.events.emit(
                EventKind.WORKFLOW_COMPLETED,
                execution_id=workflow.execution_id,
                request_id=workflow.request_id,
                workflow_id=workflow.id,
            )
            if self.listener is not None:
                self.listener.workflow_completed(workflow)
        elif outcome == "failed":
            self.events.emit(
                EventKind.WORKFLOW_FAILED,
                execution_id=workflow.execution_id,
                request_id=workflow.request_id,
                workflow_id=workflow.id,
                payload={"reason": workflow.failure_reason},
            )
            if self.listener is not None:
                step = workflow.active_step
                actor = step.rejected_by[-1] if step and step.rejected_by else constants.SYSTEM_ACTOR
                self.listener.workflow_failed(workflow, actor, workflow.failure_reason or "rejected")
        for recipients, message, channel in notices:
            self._notify(recipients, message, channel)

    def _resolve_request(self, request_id: str) -> None:
        """Drop a decided request; its workflow keeps the outcome."""
        self.requests.delete(request_id)

    def _save(self, workflow: ApprovalWorkflow) -> None:
        self.workflows.set(workflow.request_id, workflow)

    def _arm_timer(self, request_id: str, step: ApprovalStep, delay: Optional[float] = None) -> None:
        self._cancel_timer(request_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOG.debug("No running loop; request %s relies on the expiry sweep", request_id)
            return
        if delay is None:
            delay = step.timeout
        self._timers[request_id] = loop.call_later(
            delay, self._on_timer, request_id, step.step_number, step.escalation_level
        )

    def _cancel_timer(self, request_id: str) -> None:
        handle = self._timers.pop(request_id, None)
        if handle is not None:
            handle.cancel()

    def _notify(self, recipients: List[str], message: str, channel: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOG.debug("No running loop; skipping %s notification", channel)
            return
        task = loop.create_task(self.notifier.notify(recipients, message, channel))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)
