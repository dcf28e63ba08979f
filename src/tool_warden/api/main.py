from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from tool_warden.clients.completion import HttpCompletionClient
from tool_warden.clients.database import init_db
from tool_warden.clients.store import InMemoryStore, SqlStore
from tool_warden.config import WardenSettings, load_settings
from tool_warden.errors import WardenError
from tool_warden.executors.base import CallableExecutor, ToolExecutor
from tool_warden.executors.http_executor import HttpToolExecutor
from tool_warden.models.approval import (
    ApprovalDecisionRequest,
    ApprovalEscalateRequest,
    ApprovalRejectRequest,
    ApprovalRequest,
    ApprovalRule,
    ApprovalWorkflow,
    UserRolesRequest,
)
from tool_warden.models.enums import ErrorCode, ToolCategory, WorkflowStatus
from tool_warden.models.execution import (
    CancelRequest,
    Execution,
    ExecutionContext,
    ExecutionPage,
    ExecutionStats,
    SubmitRequest,
)
from tool_warden.models.react import ReActResult, ReActRunRequest
from tool_warden.models.tool import ToolDescriptor
from tool_warden.services.admission_service import AdmissionQueue
from tool_warden.services.audit import JsonlAuditSink, MemoryAuditSink
from tool_warden.services.cleanup_service import CleanupService
from tool_warden.services.events import EventBus
from tool_warden.services.notifications import NotificationRouter
from tool_warden.services.react_engine import ReActEngine
from tool_warden.services.registry import ToolRegistry
from tool_warden.services.rules import ApprovalRuleSet
from tool_warden.services.workflow_service import ApprovalWorkflowEngine
from tool_warden.utils.logging import setup_logging

LOG = logging.getLogger(__name__)

STATUS_FOR_CODE: Dict[ErrorCode, int] = {
    ErrorCode.TOOL_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.EXECUTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.WORKFLOW_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.APPROVAL_EXPIRED: status.HTTP_410_GONE,
    ErrorCode.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.CONCURRENCY_LIMIT_REACHED: status.HTTP_429_TOO_MANY_REQUESTS,
}


app = FastAPI(title="Tool Warden API", version="0.1.0")


@app.exception_handler(WardenError)
async def warden_error_handler(_request: Request, exc: WardenError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_FOR_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content={"code": exc.code.value, "message": exc.message, "details": exc.details},
    )


def build_services(settings: WardenSettings, executor: Optional[ToolExecutor] = None) -> Dict[str, object]:
    """Wire the engines from settings; the API and tests share this."""
    if settings.database_url:
        init_db(settings.database_url)
        executions = SqlStore("executions", Execution)
        workflow_store = SqlStore("workflows", ApprovalWorkflow)
        request_store = SqlStore("approval_requests", ApprovalRequest)
    else:
        executions, workflow_store, request_store = InMemoryStore(), InMemoryStore(), InMemoryStore()

    if executor is None:
        executor = HttpToolExecutor(settings.tool_service_url) if settings.tool_service_url else CallableExecutor()

    events = EventBus()
    audit = JsonlAuditSink() if settings.enable_audit_log else MemoryAuditSink()
    registry = ToolRegistry()
    rules = ApprovalRuleSet()
    workflows = ApprovalWorkflowEngine(
        rules,
        workflows=workflow_store,
        requests=request_store,
        events=events,
        audit=audit,
        notifier=NotificationRouter(enabled=settings.enable_notifications),
        default_timeout=settings.default_step_timeout,
        max_escalation_levels=settings.max_escalation_levels,
    )
    admission = AdmissionQueue(
        registry,
        executor,
        workflows,
        executions=executions,
        events=events,
        audit=audit,
        max_concurrent=settings.max_concurrent_executions,
        retention_hours=settings.retention_hours,
    )
    react = None
    if settings.completion_api_key:
        react = ReActEngine(
            admission,
            HttpCompletionClient.from_settings(settings),
            max_steps=settings.react_max_steps,
            observation_limit=settings.observation_limit,
        )
    return {
        "events": events,
        "registry": registry,
        "rules": rules,
        "workflows": workflows,
        "admission": admission,
        "react_engine": react,
        "cleanup_service": CleanupService(admission, interval=settings.sweep_interval),
    }


def _require_service(name: str):
    service = getattr(app.state, name, None)
    if service is None:
        raise RuntimeError(f"Service '{name}' not initialised.")
    return service


def get_registry() -> ToolRegistry:
    return _require_service("registry")


def get_rules() -> ApprovalRuleSet:
    return _require_service("rules")


def get_workflows() -> ApprovalWorkflowEngine:
    return _require_service("workflows")


def get_admission() -> AdmissionQueue:
    return _require_service("admission")


def get_react_engine() -> ReActEngine:
    engine = getattr(app.state, "react_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No completion endpoint configured (set WARDEN_COMPLETION_API_KEY).",
        )
    return engine


@app.on_event("startup")
async def startup_event() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    services = build_services(settings)
    for name, service in services.items():
        setattr(app.state, name, service)
    admission: AdmissionQueue = services["admission"]  # type: ignore[assignment]
    admission.start()
    cleanup: CleanupService = services["cleanup_service"]  # type: ignore[assignment]
    app.state.background_tasks = [asyncio.create_task(cleanup.run_forever())]
    LOG.info("Tool Warden API started (max %d concurrent executions)", settings.max_concurrent_executions)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    tasks = getattr(app.state, "background_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    admission = getattr(app.state, "admission", None)
    if admission is not None:
        await admission.shutdown()


@app.get("/health")
async def health() -> dict[str, str]:
    """Lightweight health probe."""
    return {"status": "ok"}


# Tools ---------------------------------------------------------------------------------
@app.get("/tools", response_model=List[ToolDescriptor])
async def list_tools(
    category: Optional[ToolCategory] = None,
    q: Optional[str] = None,
    registry: ToolRegistry = Depends(get_registry),
) -> List[ToolDescriptor]:
    tools = registry.search(q) if q else registry.list_tools()
    if category is not None:
        tools = [tool for tool in tools if tool.category == category]
    return tools


@app.post("/tools", response_model=ToolDescriptor, status_code=status.HTTP_201_CREATED)
async def register_tool(
    payload: ToolDescriptor,
    registry: ToolRegistry = Depends(get_registry),
) -> ToolDescriptor:
    registry.register(payload)
    return payload


@app.get("/tools/{name}", response_model=ToolDescriptor)
async def get_tool(
    name: str,
    registry: ToolRegistry = Depends(get_registry),
) -> ToolDescriptor:
    return registry.resolve(name)


# Executions ----------------------------------------------------------------------------
@app.post("/executions", response_model=Execution, status_code=status.HTTP_201_CREATED)
async def submit_execution(
    payload: SubmitRequest,
    admission: AdmissionQueue = Depends(get_admission),
) -> Execution:
    context = ExecutionContext(
        user_id=payload.user_id,
        conversation_id=payload.conversation_id,
        session_id=payload.session_id,
        message_id=payload.message_id,
    )
    return admission.submit(payload.tool_name, payload.input, context)


@app.get("/executions", response_model=ExecutionPage)
async def list_executions(
    user_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    admission: AdmissionQueue = Depends(get_admission),
) -> ExecutionPage:
    return admission.history(user_id=user_id, conversation_id=conversation_id, limit=limit, offset=offset)


@app.get("/executions/active", response_model=List[Execution])
async def list_active_executions(
    admission: AdmissionQueue = Depends(get_admission),
) -> List[Execution]:
    return admission.active_executions()


@app.get("/executions/stats", response_model=ExecutionStats)
async def execution_stats(
    admission: AdmissionQueue = Depends(get_admission),
) -> ExecutionStats:
    return admission.stats()


@app.get("/executions/{execution_id}", response_model=Execution)
async def get_execution(
    execution_id: str,
    admission: AdmissionQueue = Depends(get_admission),
) -> Execution:
    return admission.get(execution_id)


@app.post("/executions/{execution_id}/cancel", response_model=Execution)
async def cancel_execution(
    execution_id: str,
    payload: CancelRequest,
    admission: AdmissionQueue = Depends(get_admission),
) -> Execution:
    return admission.cancel(execution_id, payload.reason)


# Approvals -----------------------------------------------------------------------------
@app.get("/approvals", response_model=List[ApprovalRequest])
async def list_approvals(
    workflows: ApprovalWorkflowEngine = Depends(get_workflows),
) -> List[ApprovalRequest]:
    return workflows.pending_requests()


@app.post("/approvals/{request_id}/approve", response_model=ApprovalWorkflow)
async def approve_request(
    request_id: str,
    payload: ApprovalDecisionRequest,
    workflows: ApprovalWorkflowEngine = Depends(get_workflows),
) -> ApprovalWorkflow:
    return workflows.approve(request_id, payload.approver_id, payload.comment, payload.step_number)


@app.post("/approvals/{request_id}/reject", response_model=ApprovalWorkflow)
async def reject_request(
    request_id: str,
    payload: ApprovalRejectRequest,
    workflows: ApprovalWorkflowEngine = Depends(get_workflows),
) -> ApprovalWorkflow:
    return workflows.reject(request_id, payload.rejected_by, payload.reason)


@app.post("/approvals/{request_id}/escalate", response_model=ApprovalWorkflow)
async def escalate_request(
    request_id: str,
    payload: ApprovalEscalateRequest,
    workflows: ApprovalWorkflowEngine = Depends(get_workflows),
) -> ApprovalWorkflow:
    return workflows.escalate(request_id, payload.escalated_by, payload.reason)


@app.get("/workflows", response_model=List[ApprovalWorkflow])
async def list_workflows(
    status_filter: Optional[WorkflowStatus] = None,
    workflows: ApprovalWorkflowEngine = Depends(get_workflows),
) -> List[ApprovalWorkflow]:
    return workflows.list_workflows(status_filter)


@app.get("/workflows/{request_id}", response_model=ApprovalWorkflow)
async def get_workflow(
    request_id: str,
    workflows: ApprovalWorkflowEngine = Depends(get_workflows),
) -> ApprovalWorkflow:
    workflow = workflows.get_workflow(request_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found.")
    return workflow


# Rules and roles -----------------------------------------------------------------------
@app.get("/rules", response_model=List[ApprovalRule])
async def list_rules(
    rules: ApprovalRuleSet = Depends(get_rules),
) -> List[ApprovalRule]:
    return rules.list_rules()


@app.post("/rules", response_model=ApprovalRule, status_code=status.HTTP_201_CREATED)
async def add_rule(
    payload: ApprovalRule,
    rules: ApprovalRuleSet = Depends(get_rules),
) -> ApprovalRule:
    rules.add_rule(payload)
    return payload


@app.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_rule(
    rule_id: str,
    rules: ApprovalRuleSet = Depends(get_rules),
) -> None:
    rules.remove_rule(rule_id)


@app.put("/users/{user_id}/roles")
async def set_user_roles(
    user_id: str,
    payload: UserRolesRequest,
    rules: ApprovalRuleSet = Depends(get_rules),
) -> dict[str, object]:
    rules.set_user_roles(user_id, payload.roles)
    return {"user_id": user_id, "roles": rules.roles_for(user_id)}


# Reasoning -----------------------------------------------------------------------------
@app.post("/react/runs", response_model=ReActResult)
async def run_reasoning(
    payload: ReActRunRequest,
    engine: ReActEngine = Depends(get_react_engine),
) -> ReActResult:
    return await engine.run(
        payload.message,
        payload.user_id,
        conversation_id=payload.conversation_id,
        max_steps=payload.max_steps,
    )
