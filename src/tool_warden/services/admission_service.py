"""Execution lifecycle and bounded-concurrency dispatch."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from tool_warden import constants
from tool_warden.clients.store import InMemoryStore, KeyValueStore
from tool_warden.errors import (
    ConcurrencyLimitReached,
    ExecutionError,
    ExecutionNotFound,
    InvalidStateTransition,
    WardenError,
)
from tool_warden.executors.base import ToolExecutor
from tool_warden.models.approval import ApprovalRequest, ApprovalWorkflow
from tool_warden.models.enums import ErrorCode, EventKind, ExecutionStatus, PermissionLevel
from tool_warden.models.execution import (
    Execution,
    ExecutionContext,
    ExecutionFailure,
    ExecutionPage,
    ExecutionStats,
    ExecutorResult,
    StatusChange,
)
from tool_warden.models.tool import ToolDescriptor
from tool_warden.services.audit import AuditSink, MemoryAuditSink
from tool_warden.services.events import EventBus
from tool_warden.services.registry import ToolRegistry
from tool_warden.services.risk import classify_call
from tool_warden.services.workflow_service import ApprovalWorkflowEngine
from tool_warden.utils.ids import generate_id, utcnow

LOG = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ExecutionStatus, Set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.APPROVED, ExecutionStatus.REJECTED, ExecutionStatus.ERROR},
    ExecutionStatus.APPROVED: {ExecutionStatus.EXECUTING, ExecutionStatus.ERROR},
    ExecutionStatus.EXECUTING: {ExecutionStatus.COMPLETED, ExecutionStatus.ERROR},
    ExecutionStatus.REJECTED: set(),
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.ERROR: set(),
}

_EVENT_FOR_STATUS = {
    ExecutionStatus.APPROVED: EventKind.EXECUTION_APPROVED,
    ExecutionStatus.REJECTED: EventKind.EXECUTION_REJECTED,
    ExecutionStatus.EXECUTING: EventKind.EXECUTION_STARTED,
    ExecutionStatus.COMPLETED: EventKind.EXECUTION_COMPLETED,
    ExecutionStatus.ERROR: EventKind.EXECUTION_FAILED,
}


class AdmissionQueue:
    """Owns every execution's state machine and the dispatch of approved work.

    Approved executions enter a FIFO queue in approval order. A single
    dispatcher task drains it, holding one semaphore slot per executing item,
    so no more than ``max_concurrent`` executions are ever ``executing``.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        executor: ToolExecutor,
        workflows: Optional[ApprovalWorkflowEngine] = None,
        *,
        executions: Optional[KeyValueStore[Execution]] = None,
        events: Optional[EventBus] = None,
        audit: Optional[AuditSink] = None,
        max_concurrent: int = constants.MAX_CONCURRENT_EXECUTIONS,
        retention_hours: float = constants.RETENTION_HOURS,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.registry = registry
        self.executor = executor
        self.events = events or (workflows.events if workflows else EventBus())
        self.audit = audit or (workflows.audit if workflows else MemoryAuditSink())
        self.workflows = workflows or ApprovalWorkflowEngine(events=self.events, audit=self.audit)
        self.workflows.listener = self
        self.executions: KeyValueStore[Execution] = executions if executions is not None else InMemoryStore()
        self.max_concurrent = max_concurrent
        self.retention = timedelta(hours=retention_hours)

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._running: Dict[str, asyncio.Task] = {}
        self._slots: Set[str] = set()
        self._contexts: Dict[str, ExecutionContext] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._queued: Set[str] = set()
        self._recovered = False

    # Admission ----------------------------------------------------------------------
    def submit(self, tool_name: str, tool_input: Dict, context: ExecutionContext) -> Execution:
        """Admit a tool call according to the tool's permission level."""
        tool = self.registry.resolve(tool_name)
        execution = self._create(tool, tool_input, context)
        self.events.emit(
            EventKind.EXECUTION_REQUESTED,
            execution_id=execution.id,
            payload={"tool_name": tool.name, "requested_by": context.user_id},
        )

        if tool.permission_level == PermissionLevel.AUTO:
            self._approve(execution, constants.SYSTEM_ACTOR)
            self._enqueue(execution.id)
            return self._require(execution.id)

        if tool.permission_level == PermissionLevel.DENIED:
            self._reject(execution, constants.SYSTEM_ACTOR, f"Tool '{tool.name}' is denied by policy.")
            return self._require(execution.id)

        request = self._approval_request(tool, execution)
        execution.approval_request_id = request.id
        self._save(execution)
        self.workflows.open(request)
        return self._require(execution.id)

    async def execute_directly(
        self,
        tool_name: str,
        tool_input: Dict,
        context: ExecutionContext,
        *,
        wait: bool = True,
    ) -> Execution:
        """Run a tool without approval, for trusted callers.

        The call still takes a concurrency slot and records the full
        ``pending -> approved -> executing -> completed|error`` path. With
        ``wait=False`` a full queue raises ``ConcurrencyLimitReached``
        instead of waiting for a slot.
        """
        tool = self.registry.resolve(tool_name)
        if not wait and self._semaphore.locked():
            raise ConcurrencyLimitReached(
                f"All {self.max_concurrent} execution slots are busy.", {"tool_name": tool_name}
            )
        execution = self._create(tool, tool_input, context)
        execution.metadata["direct"] = True
        self._save(execution)
        self.events.emit(
            EventKind.EXECUTION_REQUESTED,
            execution_id=execution.id,
            payload={"tool_name": tool.name, "requested_by": context.user_id, "direct": True},
        )
        # Recovery leaves ids in _queued alone.
        self._queued.add(execution.id)
        self._approve(execution, constants.SYSTEM_ACTOR)

        try:
            await self._semaphore.acquire()
        finally:
            self._queued.discard(execution.id)
        task = self._start(execution.id)
        if task is not None:
            await asyncio.wait({task})
        return self._require(execution.id)

    def cancel(self, execution_id: str, reason: str = "cancelled by user") -> Execution:
        """Terminate a non-terminal execution without waiting for the executor."""
        execution = self._require(execution_id)
        if execution.status.is_terminal:
            raise InvalidStateTransition(
                f"Execution '{execution_id}' is already {execution.status.value}.",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        previous = execution.status
        context = self._contexts.get(execution_id)
        failure = ExecutionFailure(code=ErrorCode.EXECUTION_CANCELLED, message=reason, details={"from": previous.value})
        self._fail(execution, failure)

        if previous == ExecutionStatus.PENDING and execution.approval_request_id:
            self.workflows.cancel(execution.approval_request_id, reason)
        if context is not None:
            context.cancel_event.set()
        task = self._running.pop(execution_id, None)
        if task is not None:
            task.cancel()
        self._release(execution_id)
        LOG.info("Cancelled execution %s (%s): %s", execution_id, previous.value, reason)
        return self._require(execution_id)

    # Workflow outcomes ----------------------------------------------------------------
    def workflow_completed(self, workflow: ApprovalWorkflow) -> None:
        execution = self.executions.get(workflow.execution_id)
        if execution is None or execution.status != ExecutionStatus.PENDING:
            return
        approvers = [a for step in workflow.steps for a in step.approved_by if a != constants.SYSTEM_ACTOR]
        self._approve(execution, approvers[-1] if approvers else constants.SYSTEM_ACTOR)
        self._enqueue(execution.id)

    def workflow_failed(self, workflow: ApprovalWorkflow, actor: str, reason: str) -> None:
        execution = self.executions.get(workflow.execution_id)
        if execution is None or execution.status != ExecutionStatus.PENDING:
            return
        self._reject(execution, actor, reason)

    def workflow_expired(self, workflow: ApprovalWorkflow) -> None:
        execution = self.executions.get(workflow.execution_id)
        if execution is None or execution.status != ExecutionStatus.PENDING:
            return
        self._fail(
            execution,
            ExecutionFailure(
                code=ErrorCode.APPROVAL_EXPIRED,
                message=workflow.failure_reason or "approval timed out",
                details={"request_id": workflow.request_id},
            ),
        )

    # Dispatch -----------------------------------------------------------------------
    def start(self) -> None:
        """Start the dispatcher on the running loop if it is not already running."""
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOG.debug("No running loop; dispatcher starts on the next submit from a coroutine")
            return
        if not self._recovered:
            self._recovered = True
            self._recover()
        self._dispatcher = loop.create_task(self._dispatch_loop())

    def _recover(self) -> None:
        """Pick up stored work left by a previous process.

        Approved executions are queued again in approval order. Executions
        stored as ``executing`` lost their executor with the old process and
        are failed. Active workflows get their step timers back.
        """
        approved = []
        for execution in self.executions.values():
            if execution.status == ExecutionStatus.APPROVED and execution.id not in self._queued:
                approved.append(execution)
            elif execution.status == ExecutionStatus.EXECUTING and execution.id not in self._slots:
                failure = ExecutionFailure(
                    code=ErrorCode.EXECUTION_CANCELLED,
                    message="interrupted by service restart",
                    details={"from": ExecutionStatus.EXECUTING.value},
                )
                self._fail(execution, failure)
        approved.sort(key=lambda e: e.approved_at or e.created_at)
        for execution in approved:
            self._queued.add(execution.id)
            self._queue.put_nowait(execution.id)
        rearmed = self.workflows.resume()
        if approved or rearmed:
            LOG.info("Recovered %d approved execution(s) and %d active workflow(s)", len(approved), rearmed)

    def _enqueue(self, execution_id: str) -> None:
        self._queued.add(execution_id)
        self.start()
        self._queue.put_nowait(execution_id)

    async def _dispatch_loop(self) -> None:
        while True:
            execution_id = await self._queue.get()
            self._queued.discard(execution_id)
            await self._semaphore.acquire()
            self._start(execution_id)

    def _start(self, execution_id: str) -> Optional[asyncio.Task]:
        """Move an approved execution to ``executing``; the caller holds a slot."""
        execution = self.executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.APPROVED:
            LOG.debug("Skipping dispatch of %s; no longer approved", execution_id)
            self._semaphore.release()
            return None
        self._slots.add(execution_id)
        self._transition(execution, ExecutionStatus.EXECUTING)
        execution.started_at = utcnow()
        self._save(execution)
        self._publish(execution)
        task = asyncio.get_running_loop().create_task(self._run(execution_id))
        self._running[execution_id] = task
        return task

    async def _run(self, execution_id: str) -> None:
        execution = self._require(execution_id)
        tool = self.registry.get(execution.tool_id) or self.registry.resolve(execution.tool_name)
        context = self._context_for(execution)
        loop = asyncio.get_running_loop()
        started = loop.time()
        result: Optional[ExecutorResult] = None
        failure: Optional[ExecutionFailure] = None
        # Release only after recording; the executing count must stay under the cap.
        try:
            try:
                run = self.executor.run(tool.name, execution.input, context)
                if tool.default_timeout:
                    result = await asyncio.wait_for(run, timeout=tool.default_timeout)
                else:
                    result = await run
            except asyncio.TimeoutError:
                failure = ExecutionFailure(
                    code=ErrorCode.EXECUTION_TIMEOUT,
                    message=f"Tool '{tool.name}' exceeded {tool.default_timeout}s.",
                    details={"timeout": tool.default_timeout},
                )
            except WardenError as exc:
                failure = exc.to_failure()
            except Exception as exc:
                LOG.exception("Executor raised for execution %s", execution_id)
                name = exc.__class__.__name__
                failure = ExecutionError(str(exc) or name, {"exception": name}, exc).to_failure()
            self._record(execution_id, result, failure, (loop.time() - started) * 1000.0)
        finally:
            self._running.pop(execution_id, None)
            self._release(execution_id)

    def _record(
        self,
        execution_id: str,
        result: Optional[ExecutorResult],
        failure: Optional[ExecutionFailure],
        elapsed_ms: float,
    ) -> None:
        execution = self.executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.EXECUTING:
            LOG.debug("Dropping result for %s; execution already finalised", execution_id)
            return
        execution.elapsed_ms = elapsed_ms
        if failure is None and result is not None and result.success:
            execution.output = result.output
            self._transition(execution, ExecutionStatus.COMPLETED)
            self._save(execution)
            self._publish(execution)
            return
        if failure is None:
            failure = ExecutionFailure(
                code=ErrorCode.EXECUTION_ERROR,
                message=(result.error_message if result else None) or "executor reported failure",
                details={"executor_code": result.error_code if result else None},
            )
        self._fail(execution, failure)

    def _release(self, execution_id: str) -> None:
        if execution_id in self._slots:
            self._slots.discard(execution_id)
            self._semaphore.release()

    # Queries ----------------------------------------------------------------------------
    def get(self, execution_id: str) -> Execution:
        return self._require(execution_id)

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Wait until the execution reaches a terminal state."""
        execution = self._require(execution_id)
        if execution.status.is_terminal:
            return execution
        event = self._done.setdefault(execution_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return self._require(execution_id)

    def history(
        self,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ExecutionPage:
        items = [
            execution
            for execution in self.executions.values()
            if (user_id is None or execution.requested_by == user_id)
            and (conversation_id is None or execution.conversation_id == conversation_id)
        ]
        items.sort(key=lambda e: e.created_at, reverse=True)
        page = items[offset : offset + limit]
        return ExecutionPage(items=page, total=len(items), has_more=offset + len(page) < len(items))

    def active_executions(self) -> List[Execution]:
        active = (ExecutionStatus.APPROVED, ExecutionStatus.EXECUTING)
        return sorted(
            (e for e in self.executions.values() if e.status in active), key=lambda e: e.created_at
        )

    def pending_approvals(self) -> List[Execution]:
        return sorted(
            (
                e
                for e in self.executions.values()
                if e.status == ExecutionStatus.PENDING and e.approval_request_id
            ),
            key=lambda e: e.created_at,
        )

    def stats(self) -> ExecutionStats:
        stats = ExecutionStats(capacity=self.max_concurrent)
        for execution in self.executions.values():
            stats.total += 1
            status = execution.status.value
            stats.by_status[status] = stats.by_status.get(status, 0) + 1
            stats.by_tool[execution.tool_name] = stats.by_tool.get(execution.tool_name, 0) + 1
            if execution.status == ExecutionStatus.EXECUTING:
                stats.executing += 1
        return stats

    # Maintenance ------------------------------------------------------------------------
    def cleanup_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Evict terminal executions past retention and expire stale approvals."""
        now = now or utcnow()
        cutoff = now - self.retention
        expired = self.workflows.sweep_expired(now)
        removed = 0
        for execution in self.executions.values():
            finished = execution.finished_at or execution.created_at
            if execution.status.is_terminal and finished <= cutoff:
                self.executions.delete(execution.id)
                self._done.pop(execution.id, None)
                removed += 1
        purged = self.workflows.purge_finished(cutoff)
        if removed or expired or purged:
            LOG.info(
                "Cleanup removed %d execution(s), expired %d and purged %d workflow(s)",
                removed,
                len(expired),
                purged,
            )
        return {"executions_removed": removed, "workflows_expired": len(expired), "workflows_purged": purged}

    async def shutdown(self) -> None:
        """Cancel running work and stop the dispatcher.

        With a persistent execution store, pending and approved executions
        stay as they are for the next process to resume; otherwise every
        unfinished execution is cancelled.
        """
        durable = self.executions.persistent
        for execution in self.executions.values():
            if execution.status == ExecutionStatus.EXECUTING or (not durable and not execution.status.is_terminal):
                self.cancel(execution.id, "service shutdown")
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        self.workflows.shutdown()

    # Internals --------------------------------------------------------------------------
    def _create(self, tool: ToolDescriptor, tool_input: Dict, context: ExecutionContext) -> Execution:
        now = utcnow()
        execution = Execution(
            id=generate_id("exec"),
            tool_id=tool.id,
            tool_name=tool.name,
            requested_by=context.user_id,
            conversation_id=context.conversation_id,
            session_id=context.session_id,
            message_id=context.message_id,
            input=dict(tool_input or {}),
            created_at=now,
            history=[StatusChange(status=ExecutionStatus.PENDING, at=now)],
            metadata=dict(context.metadata),
        )
        self._contexts[execution.id] = context
        self._save(execution)
        self.audit.record("execution.requested", execution_id=execution.id, tool=tool.name, user_id=context.user_id)
        LOG.info("Execution %s requested for tool %s by %s", execution.id, tool.name, context.user_id)
        return execution

    def _approval_request(self, tool: ToolDescriptor, execution: Execution) -> ApprovalRequest:
        now = utcnow()
        approver = "admin" if tool.permission_level == PermissionLevel.ADMIN_APPROVAL else constants.DEFAULT_APPROVER_ROLE
        return ApprovalRequest(
            id=generate_id("apr"),
            execution_id=execution.id,
            tool_name=tool.name,
            category=tool.category,
            permission_level=tool.permission_level,
            input=execution.input,
            risk_tier=classify_call(tool.category, tool.permission_level, execution.input),
            requested_by=execution.requested_by,
            requested_at=now,
            deadline=now + timedelta(seconds=self.workflows.default_timeout),
            approvers=[approver],
        )

    def _approve(self, execution: Execution, approver: str) -> None:
        self._transition(execution, ExecutionStatus.APPROVED)
        execution.approved_by = approver
        execution.approved_at = utcnow()
        self._save(execution)
        self._publish(execution, approved_by=approver)

    def _reject(self, execution: Execution, actor: str, reason: str) -> None:
        self._transition(execution, ExecutionStatus.REJECTED)
        execution.rejected_by = actor
        execution.rejected_at = utcnow()
        execution.rejection_reason = reason
        self._save(execution)
        self._publish(execution, rejected_by=actor, reason=reason)

    def _fail(self, execution: Execution, failure: ExecutionFailure) -> None:
        self._transition(execution, ExecutionStatus.ERROR)
        execution.error = failure
        self._save(execution)
        self._publish(execution, code=failure.code.value, message=failure.message)

    def _transition(self, execution: Execution, status: ExecutionStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[execution.status]:
            raise InvalidStateTransition(
                f"Execution '{execution.id}' cannot move from {execution.status.value} to {status.value}.",
                {"execution_id": execution.id, "from": execution.status.value, "to": status.value},
            )
        now = utcnow()
        execution.status = status
        execution.history.append(StatusChange(status=status, at=now))
        if status.is_terminal:
            execution.finished_at = now
        LOG.info("Execution %s -> %s", execution.id, status.value)

    def _publish(self, execution: Execution, **payload) -> None:
        status = execution.status
        self.audit.record(
            f"execution.{status.value}",
            execution_id=execution.id,
            tool=execution.tool_name,
            request_id=execution.approval_request_id,
            **payload,
        )
        self.events.emit(
            _EVENT_FOR_STATUS[status],
            execution_id=execution.id,
            request_id=execution.approval_request_id,
            payload={"tool_name": execution.tool_name, **payload},
        )
        if status.is_terminal:
            self._contexts.pop(execution.id, None)
            event = self._done.pop(execution.id, None)
            if event is not None:
                event.set()

    def _context_for(self, execution: Execution) -> ExecutionContext:
        context = self._contexts.get(execution.id)
        if context is None:
            context = ExecutionContext(
                user_id=execution.requested_by,
                conversation_id=execution.conversation_id,
                session_id=execution.session_id,
                message_id=execution.message_id,
            )
            self._contexts[execution.id] = context
        return context

    def _require(self, execution_id: str) -> Execution:
        execution = self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    def _save(self, execution: Execution) -> None:
        self.executions.set(execution.id, execution)
