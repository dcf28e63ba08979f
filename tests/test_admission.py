import asyncio
from datetime import timedelta

import pytest

from tool_warden.errors import (
    ConcurrencyLimitReached,
    ExecutionNotFound,
    InvalidStateTransition,
    ToolNotFound,
)
from tool_warden.models.enums import ErrorCode, EventKind, ExecutionStatus, WorkflowStatus
from tool_warden.models.execution import ExecutorResult
from tool_warden.services.admission_service import AdmissionQueue
from tool_warden.services.cleanup_service import CleanupService
from tool_warden.utils.ids import utcnow


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_auto_tool_bypasses_approval(admission, fake_executor, make_context, events):
    kinds = []
    events.subscribe(lambda event: kinds.append(event.kind))

    execution = admission.submit("calc", {"expr": "1+1"}, make_context())
    assert execution.status == ExecutionStatus.APPROVED
    assert execution.approved_by == "system"
    assert execution.approval_request_id is None

    done = await admission.wait_for(execution.id, timeout=1)

    assert done.status == ExecutionStatus.COMPLETED
    assert done.output == "2"
    assert done.elapsed_ms is not None
    assert [change.status for change in done.history] == [
        ExecutionStatus.PENDING,
        ExecutionStatus.APPROVED,
        ExecutionStatus.EXECUTING,
        ExecutionStatus.COMPLETED,
    ]
    assert fake_executor.calls == [("calc", {"expr": "1+1"})]
    assert kinds == [
        EventKind.EXECUTION_REQUESTED,
        EventKind.EXECUTION_APPROVED,
        EventKind.EXECUTION_STARTED,
        EventKind.EXECUTION_COMPLETED,
    ]
    await admission.shutdown()


def test_denied_tool_is_rejected_by_system(admission, fake_executor, make_context, audit):
    execution = admission.submit("format_disk", {"device": "sda"}, make_context())

    assert execution.status == ExecutionStatus.REJECTED
    assert execution.rejected_by == "system"
    assert "denied" in execution.rejection_reason
    assert fake_executor.calls == []
    assert audit.events() == ["execution.requested", "execution.rejected"]


def test_unknown_tool_is_refused(admission, make_context):
    with pytest.raises(ToolNotFound):
        admission.submit("teleport", {}, make_context())
    assert admission.history().total == 0


@pytest.mark.asyncio
async def test_user_approval_flow(admission, workflow_engine, fake_executor, make_context):
    execution = admission.submit("report", {"month": "may"}, make_context(conversation_id="conv-1"))

    assert execution.status == ExecutionStatus.PENDING
    assert execution.approval_request_id is not None
    assert [e.id for e in admission.pending_approvals()] == [execution.id]
    request = workflow_engine.get_request(execution.approval_request_id)
    assert request.risk_tier.value == "medium"
    assert request.requested_by == "alice"

    workflow_engine.approve(execution.approval_request_id, "carol")
    done = await admission.wait_for(execution.id, timeout=1)

    assert done.status == ExecutionStatus.COMPLETED
    assert done.approved_by == "carol"
    assert fake_executor.contexts[0].conversation_id == "conv-1"
    assert admission.pending_approvals() == []
    await admission.shutdown()


def test_rejection_never_executes(admission, workflow_engine, fake_executor, make_context):
    execution = admission.submit("report", {}, make_context())

    workflow_engine.reject(execution.approval_request_id, "carol", "too expensive")

    rejected = admission.get(execution.id)
    assert rejected.status == ExecutionStatus.REJECTED
    assert rejected.rejected_by == "carol"
    assert rejected.rejection_reason == "too expensive"
    assert fake_executor.calls == []


@pytest.mark.asyncio
async def test_concurrency_cap_is_respected(admission, fake_executor, make_context):
    fake_executor.release = asyncio.Event()
    ids = [admission.submit("calc", {"expr": str(n)}, make_context()).id for n in range(4)]

    await _until(lambda: admission.stats().executing == 2)
    await asyncio.sleep(0.02)

    assert admission.stats().executing == 2
    statuses = sorted(admission.get(i).status.value for i in ids)
    assert statuses == ["approved", "approved", "executing", "executing"]
    assert len(admission.active_executions()) == 4

    fake_executor.release.set()
    for execution_id in ids:
        assert (await admission.wait_for(execution_id, timeout=1)).status == ExecutionStatus.COMPLETED

    assert fake_executor.peak == 2
    await admission.shutdown()


@pytest.mark.asyncio
async def test_dispatch_follows_approval_order(registry, fake_executor, workflow_engine, make_context):
    queue = AdmissionQueue(registry, fake_executor, workflow_engine, max_concurrent=1)
    first = queue.submit("report", {"n": 1}, make_context())
    second = queue.submit("report", {"n": 2}, make_context())

    workflow_engine.approve(second.approval_request_id, "alice")
    workflow_engine.approve(first.approval_request_id, "alice")
    await queue.wait_for(first.id, timeout=1)
    await queue.wait_for(second.id, timeout=1)

    assert fake_executor.calls == [("report", {"n": 2}), ("report", {"n": 1})]
    assert fake_executor.peak == 1
    await queue.shutdown()


def test_cancel_pending_execution_cancels_workflow(admission, workflow_engine, make_context):
    execution = admission.submit("report", {}, make_context())

    cancelled = admission.cancel(execution.id, "changed my mind")

    assert cancelled.status == ExecutionStatus.ERROR
    assert cancelled.error.code == ErrorCode.EXECUTION_CANCELLED
    assert cancelled.error.details == {"from": "pending"}
    assert workflow_engine.get_workflow(execution.approval_request_id).status == WorkflowStatus.CANCELLED
    assert workflow_engine.pending_requests() == []


@pytest.mark.asyncio
async def test_cancel_executing_signals_executor_and_frees_slot(admission, fake_executor, make_context):
    fake_executor.release = asyncio.Event()
    execution = admission.submit("calc", {"expr": "9"}, make_context())
    await _until(lambda: admission.get(execution.id).status == ExecutionStatus.EXECUTING)

    cancelled = admission.cancel(execution.id)

    assert cancelled.status == ExecutionStatus.ERROR
    assert cancelled.error.details == {"from": "executing"}
    assert fake_executor.contexts[0].cancel_event.is_set()
    assert admission.stats().executing == 0

    await asyncio.sleep(0.02)
    assert admission.get(execution.id).status == ExecutionStatus.ERROR
    assert admission.get(execution.id).output is None
    await admission.shutdown()


def test_cancel_terminal_or_unknown_execution(admission, make_context):
    execution = admission.submit("format_disk", {}, make_context())

    with pytest.raises(InvalidStateTransition):
        admission.cancel(execution.id)
    with pytest.raises(ExecutionNotFound):
        admission.cancel("exec-missing")


def test_illegal_transition_is_refused(admission, make_context):
    execution = admission.submit("format_disk", {}, make_context())

    with pytest.raises(InvalidStateTransition):
        admission._transition(execution, ExecutionStatus.EXECUTING)
    assert [change.status for change in execution.history] == [ExecutionStatus.PENDING, ExecutionStatus.REJECTED]


@pytest.mark.asyncio
async def test_executor_reported_failure(admission, fake_executor, make_context):
    fake_executor.outputs["calc"] = ExecutorResult(success=False, error_code="E42", error_message="bad input")
    execution = admission.submit("calc", {"expr": "x"}, make_context())

    failed = await admission.wait_for(execution.id, timeout=1)

    assert failed.status == ExecutionStatus.ERROR
    assert failed.error.code == ErrorCode.EXECUTION_ERROR
    assert failed.error.message == "bad input"
    assert failed.error.details == {"executor_code": "E42"}
    await admission.shutdown()


@pytest.mark.asyncio
async def test_executor_exception_becomes_execution_error(admission, fake_executor, make_context):
    fake_executor.outputs["calc"] = RuntimeError("boom")
    execution = admission.submit("calc", {"expr": "1"}, make_context())

    failed = await admission.wait_for(execution.id, timeout=1)

    assert failed.error.code == ErrorCode.EXECUTION_ERROR
    assert failed.error.message == "boom"
    assert failed.error.details == {"exception": "RuntimeError"}
    assert admission.stats().executing == 0
    await admission.shutdown()


@pytest.mark.asyncio
async def test_tool_timeout(admission, fake_executor, make_context):
    fake_executor.release = asyncio.Event()
    execution = admission.submit("slow", {}, make_context())

    failed = await admission.wait_for(execution.id, timeout=1)

    assert failed.status == ExecutionStatus.ERROR
    assert failed.error.code == ErrorCode.EXECUTION_TIMEOUT
    assert fake_executor.running == 0
    await admission.shutdown()


def test_expired_approval_fails_execution(admission, make_context):
    execution = admission.submit("report", {}, make_context())

    summary = admission.cleanup_expired(utcnow() + timedelta(seconds=301))

    assert summary["workflows_expired"] == 1
    assert summary["executions_removed"] == 0
    expired = admission.get(execution.id)
    assert expired.status == ExecutionStatus.ERROR
    assert expired.error.code == ErrorCode.APPROVAL_EXPIRED
    assert expired.error.details == {"request_id": execution.approval_request_id}


def test_retention_evicts_only_terminal_executions(admission, make_context):
    rejected = admission.submit("format_disk", {}, make_context())

    assert admission.cleanup_expired(utcnow() + timedelta(hours=1))["executions_removed"] == 0
    summary = admission.cleanup_expired(utcnow() + timedelta(hours=25))

    assert summary["executions_removed"] == 1
    with pytest.raises(ExecutionNotFound):
        admission.get(rejected.id)


@pytest.mark.asyncio
async def test_execute_directly_skips_approval(admission, workflow_engine, make_context):
    execution = await admission.execute_directly("report", {"month": "june"}, make_context())

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.metadata["direct"] is True
    assert execution.approval_request_id is None
    assert workflow_engine.list_workflows() == []
    await admission.shutdown()


@pytest.mark.asyncio
async def test_execute_directly_without_waiting_fails_fast_when_full(admission, fake_executor, make_context):
    fake_executor.release = asyncio.Event()
    ids = [admission.submit("calc", {"expr": str(n)}, make_context()).id for n in range(2)]
    await _until(lambda: admission.stats().executing == 2)

    with pytest.raises(ConcurrencyLimitReached):
        await admission.execute_directly("calc", {"expr": "3"}, make_context(), wait=False)

    fake_executor.release.set()
    for execution_id in ids:
        await admission.wait_for(execution_id, timeout=1)
    await admission.shutdown()


@pytest.mark.asyncio
async def test_wait_for_times_out_on_pending(admission, make_context):
    execution = admission.submit("report", {}, make_context())

    with pytest.raises(asyncio.TimeoutError):
        await admission.wait_for(execution.id, timeout=0.05)
    await admission.shutdown()


def test_history_and_stats(admission, make_context):
    first = admission.submit("format_disk", {}, make_context("alice", "conv-1"))
    second = admission.submit("report", {}, make_context("alice", "conv-2"))
    admission.submit("report", {}, make_context("bob"))

    page = admission.history(user_id="alice", limit=1)
    assert page.total == 2
    assert page.has_more is True
    assert [e.id for e in page.items] == [second.id]
    assert [e.id for e in admission.history(user_id="alice", limit=1, offset=1).items] == [first.id]
    assert [e.id for e in admission.history(conversation_id="conv-1").items] == [first.id]

    stats = admission.stats()
    assert stats.total == 3
    assert stats.by_status == {"rejected": 1, "pending": 2}
    assert stats.by_tool == {"format_disk": 1, "report": 2}
    assert stats.capacity == 2


@pytest.mark.asyncio
async def test_shutdown_cancels_unfinished_work(admission, fake_executor, make_context):
    fake_executor.release = asyncio.Event()
    pending = admission.submit("report", {}, make_context())
    running = admission.submit("calc", {"expr": "1"}, make_context())
    await _until(lambda: admission.get(running.id).status == ExecutionStatus.EXECUTING)

    await admission.shutdown()

    for execution_id in (pending.id, running.id):
        execution = admission.get(execution_id)
        assert execution.status == ExecutionStatus.ERROR
        assert execution.error.message == "service shutdown"


@pytest.mark.asyncio
async def test_cleanup_service_sweeps_periodically(admission, make_context):
    execution = admission.submit("report", {}, make_context())
    service = CleanupService(admission, interval=0.02)

    assert service.run_once() == {"executions_removed": 0, "workflows_expired": 0, "workflows_purged": 0}
    admission.workflows.get_workflow(execution.approval_request_id).steps[0].timeout = 0.01
    task = asyncio.create_task(service.run_forever())
    await _until(lambda: admission.get(execution.id).status == ExecutionStatus.ERROR)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert admission.get(execution.id).error.code == ErrorCode.APPROVAL_EXPIRED
    await admission.shutdown()
