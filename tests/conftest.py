import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from tool_warden import constants
from tool_warden.api import main as api_main
from tool_warden.clients import database
from tool_warden.executors.base import ToolExecutor
from tool_warden.models.approval import ApprovalRequest
from tool_warden.models.enums import PermissionLevel, RiskTier, ToolCategory
from tool_warden.models.execution import ExecutionContext, ExecutorResult
from tool_warden.models.tool import ToolDescriptor, ToolParameter
from tool_warden.services.admission_service import AdmissionQueue
from tool_warden.services.audit import MemoryAuditSink
from tool_warden.services.events import EventBus
from tool_warden.services.notifications import NotificationRouter
from tool_warden.services.registry import ToolRegistry
from tool_warden.services.rules import ApprovalRuleSet
from tool_warden.services.workflow_service import ApprovalWorkflowEngine
from tool_warden.utils.ids import generate_id, utcnow


class FakeExecutor(ToolExecutor):
    """Executor double recording calls and tracking peak concurrency.

    ``outputs`` maps tool name to a plain output, an ``ExecutorResult`` or an
    exception to raise. Setting ``release`` to an ``asyncio.Event`` holds every
    run until the event is set.
    """

    def __init__(self, outputs: Optional[Dict[str, Any]] = None) -> None:
        self.outputs: Dict[str, Any] = dict(outputs or {})
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.contexts: List[ExecutionContext] = []
        self.release: Optional[asyncio.Event] = None
        self.running = 0
        self.peak = 0

    async def run(self, tool_name: str, tool_input: Dict[str, Any], context: ExecutionContext) -> ExecutorResult:
        self.calls.append((tool_name, tool_input))
        self.contexts.append(context)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            if self.release is not None:
                await self.release.wait()
            value = self.outputs.get(tool_name, "ok")
            if isinstance(value, Exception):
                raise value
            if isinstance(value, ExecutorResult):
                return value
            return ExecutorResult(success=True, output=value)
        finally:
            self.running -= 1


class ScriptedCompletion:
    """Completion function replaying canned responses; the last one repeats."""

    def __init__(self, responses: List[str]) -> None:
        self.responses = list(responses)
        self.prompts: List[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        index = min(len(self.prompts) - 1, len(self.responses) - 1)
        return self.responses[index]


class RecordingListener:
    def __init__(self) -> None:
        self.completed: List[str] = []
        self.failed: List[Tuple[str, str, str]] = []
        self.expired: List[str] = []

    def workflow_completed(self, workflow) -> None:
        self.completed.append(workflow.request_id)

    def workflow_failed(self, workflow, actor: str, reason: str) -> None:
        self.failed.append((workflow.request_id, actor, reason))

    def workflow_expired(self, workflow) -> None:
        self.expired.append(workflow.request_id)


@pytest.fixture(autouse=True)
def temp_runtime_dirs(tmp_path, monkeypatch):
    """Redirect runtime directories and database into a temp location."""
    base = tmp_path / "runtime"
    home = base / "home"
    mapping = {
        "HOME_DIR": home,
        "LOG_DIR": home / "logs",
        "DB_DIR": home / "db",
        "DB_FILE": home / "db" / "warden.db",
        "AUDIT_DIR": home / "audit",
    }

    for name, path in mapping.items():
        monkeypatch.setattr(constants, name, path)

    database.init_db()
    yield


def _tool(name: str, category: ToolCategory, permission: PermissionLevel, **extra) -> ToolDescriptor:
    return ToolDescriptor(
        id=f"tool-{name}",
        name=name,
        description=extra.pop("description", f"{name} tool"),
        category=category,
        permission_level=permission,
        **extra,
    )


@pytest.fixture
def tools() -> List[ToolDescriptor]:
    return [
        _tool(
            "calc",
            ToolCategory.DEVELOPMENT,
            PermissionLevel.AUTO,
            description="Evaluate an arithmetic expression",
            parameters=[ToolParameter(name="expr", type="string", description="Expression", required=True)],
        ),
        _tool("report", ToolCategory.CUSTOM, PermissionLevel.USER_APPROVAL, description="Build a usage report"),
        _tool("deploy", ToolCategory.SYSTEM, PermissionLevel.ADMIN_APPROVAL, description="Deploy a service"),
        _tool("format_disk", ToolCategory.SYSTEM, PermissionLevel.DENIED, description="Wipe a disk"),
        _tool("slow", ToolCategory.DEVELOPMENT, PermissionLevel.AUTO, default_timeout=0.05),
    ]


@pytest.fixture
def registry(tools) -> ToolRegistry:
    return ToolRegistry(tools)


@pytest.fixture
def rules() -> ApprovalRuleSet:
    rule_set = ApprovalRuleSet()
    rule_set.set_user_roles("alice", ["user"])
    rule_set.set_user_roles("carol", ["user"])
    rule_set.set_user_roles("root", ["admin"])
    return rule_set


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def notifier() -> NotificationRouter:
    return NotificationRouter()


@pytest.fixture
def workflow_engine(rules, events, audit, notifier) -> ApprovalWorkflowEngine:
    return ApprovalWorkflowEngine(rules, events=events, audit=audit, notifier=notifier)


@pytest.fixture
def listener(workflow_engine) -> RecordingListener:
    recorder = RecordingListener()
    workflow_engine.listener = recorder
    return recorder


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor({"calc": "2"})


@pytest.fixture
def admission(registry, fake_executor, workflow_engine, events, audit) -> AdmissionQueue:
    return AdmissionQueue(
        registry,
        fake_executor,
        workflow_engine,
        events=events,
        audit=audit,
        max_concurrent=2,
    )


@pytest.fixture
def make_request():
    def factory(
        risk_tier: RiskTier = RiskTier.MEDIUM,
        permission_level: PermissionLevel = PermissionLevel.USER_APPROVAL,
        category: ToolCategory = ToolCategory.CUSTOM,
        requested_by: str = "alice",
    ) -> ApprovalRequest:
        now = utcnow()
        return ApprovalRequest(
            id=generate_id("apr"),
            execution_id=generate_id("exec"),
            tool_name="report",
            category=category,
            permission_level=permission_level,
            risk_tier=risk_tier,
            requested_by=requested_by,
            requested_at=now,
            deadline=now + timedelta(minutes=5),
            approvers=["user"],
        )

    return factory


@pytest.fixture
def make_context():
    def factory(user_id: str = "alice", conversation_id: Optional[str] = None) -> ExecutionContext:
        return ExecutionContext(user_id=user_id, conversation_id=conversation_id)

    return factory


@pytest.fixture
def api_client(registry, rules, workflow_engine, admission, events):
    app = api_main.app

    state_attrs = {
        "registry": registry,
        "rules": rules,
        "workflows": workflow_engine,
        "admission": admission,
        "events": events,
        "react_engine": None,
    }

    original_state = {name: getattr(app.state, name, None) for name in state_attrs}
    for name, value in state_attrs.items():
        setattr(app.state, name, value)

    original_overrides = app.dependency_overrides.copy()
    original_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def noop_lifespan(_app):
        yield

    app.router.lifespan_context = noop_lifespan
    app.dependency_overrides.update(
        {
            api_main.get_registry: lambda: registry,
            api_main.get_rules: lambda: rules,
            api_main.get_workflows: lambda: workflow_engine,
            api_main.get_admission: lambda: admission,
        }
    )

    with TestClient(app) as client:
        yield client

    app.dependency_overrides = original_overrides
    app.router.lifespan_context = original_lifespan

    for name, value in original_state.items():
        if value is None:
            try:
                delattr(app.state, name)
            except AttributeError:
                pass
        else:
            setattr(app.state, name, value)


@pytest.fixture
def scripted_completion():
    return ScriptedCompletion
