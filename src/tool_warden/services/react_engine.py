"""Reasoning-action-observation loop driving tool calls toward an answer."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from tool_warden import constants
from tool_warden.errors import CompletionFailed, InvalidStateTransition, MaxStepsExceeded, ParseError, WardenError
from tool_warden.models.enums import EventKind, ExecutionStatus, ReActStepType
from tool_warden.models.execution import Execution, ExecutionContext, ExecutionFailure
from tool_warden.models.react import ReActResult, ReActStep, ToolCall
from tool_warden.services.admission_service import AdmissionQueue
from tool_warden.services.events import EventBus
from tool_warden.utils.ids import generate_id, utcnow

LOG = logging.getLogger(__name__)

CompletionFunction = Callable[..., Awaitable[str]]
TokenCallback = Callable[[str], None]

SYSTEM_PREAMBLE = """You are an AI assistant that uses the ReAct (Reasoning and Acting) framework to solve problems.

For each task, you should:
1. THINK: Analyze what needs to be done and plan your approach
2. ACT: Choose and execute appropriate tools
3. OBSERVE: Examine the results and determine next steps
4. Repeat until the task is complete or you have enough information

Format your response as:
THOUGHT: [Your reasoning about what to do next]
ACTION: [tool_name]
INPUT: {json input for the tool}

When you have the final answer or the task is complete, respond with:
ANSWER: [Your final response to the user]"""

TRUNCATION_MARKER = "... (truncated)"


def _step(step_type: ReActStepType, content: str, **extra: Any) -> ReActStep:
    return ReActStep(type=step_type, content=content, timestamp=utcnow(), **extra)


def parse_response(text: str) -> List[ReActStep]:
    """Split a completion into thought, action and answer steps.

    Lines are matched on ``THOUGHT:``, ``ACTION:``, ``INPUT:`` and ``ANSWER:``
    prefixes. Unprefixed lines extend the current thought. An ``INPUT`` that is
    not a JSON object becomes ``{"input": <raw text>}``. Parsing stops at the
    first answer.
    """
    steps: List[ReActStep] = []
    thought: Optional[str] = None
    action: Optional[ToolCall] = None

    def flush() -> None:
        nonlocal thought, action
        if thought:
            steps.append(_step(ReActStepType.THOUGHT, thought))
        if action is not None:
            steps.append(_step(ReActStepType.ACTION, f"Executing tool: {action.name}", tool_call=action))
        thought, action = None, None

    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("THOUGHT:"):
            flush()
            thought = line[len("THOUGHT:"):].strip()
        elif line.startswith("ACTION:"):
            if action is not None:
                flush()
            if thought:
                steps.append(_step(ReActStepType.THOUGHT, thought))
                thought = None
            name = line[len("ACTION:"):].strip()
            action = ToolCall(name=name) if name else None
        elif line.startswith("INPUT:"):
            if action is not None:
                action.input = _parse_input(line[len("INPUT:"):].strip())
        elif line.startswith("ANSWER:"):
            flush()
            steps.append(_step(ReActStepType.ANSWER, line[len("ANSWER:"):].strip()))
            return steps
        elif line and thought is not None and action is None:
            thought = f"{thought} {line}"
    flush()
    return steps


def _parse_input(raw: str) -> dict:
    try:
        value = json.loads(raw)
    except ValueError:
        return {"input": raw}
    return value if isinstance(value, dict) else {"input": value}


def format_observation(result: Any, limit: int = constants.OBSERVATION_LIMIT) -> str:
    if isinstance(result, str):
        text = result
    else:
        try:
            text = json.dumps(result, indent=2, default=str)
        except (TypeError, ValueError):
            text = str(result)
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


@dataclass
class _RunState:
    run_id: str
    started: float
    steps: List[ReActStep] = field(default_factory=list)
    completion_calls: int = 0
    final_answer: str = ""
    error: Optional[ExecutionFailure] = None

    def result(self) -> ReActResult:
        return ReActResult(
            run_id=self.run_id,
            steps=list(self.steps),
            final_answer=self.final_answer,
            success=self.error is None and self._answered,
            error=self.error,
            completion_calls=self.completion_calls,
            elapsed_ms=(time.monotonic() - self.started) * 1000.0,
        )

    @property
    def _answered(self) -> bool:
        return any(step.type == ReActStepType.ANSWER for step in self.steps)


class ReActStream:
    """Async iterator over the steps of one run; ``result`` is set once it is exhausted."""

    def __init__(self, state: _RunState, steps: AsyncIterator[ReActStep]) -> None:
        self._state = state
        self._steps = steps
        self._finished = False

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def result(self) -> Optional[ReActResult]:
        return self._state.result() if self._finished else None

    def __aiter__(self) -> "ReActStream":
        return self

    async def __anext__(self) -> ReActStep:
        try:
            return await self._steps.__anext__()
        except StopAsyncIteration:
            self._finished = True
            raise


class ReActEngine:
    """Runs bounded ReAct loops against the admission queue.

    In the default mode actions go through ``execute_directly``. With
    ``gated=True`` they are submitted like any other call and the loop waits
    for the execution to settle, so approval rules apply to agent actions.
    Failures end the run with a coded error in the result; they are never
    raised to the caller.
    """

    def __init__(
        self,
        admission: AdmissionQueue,
        complete: CompletionFunction,
        *,
        events: Optional[EventBus] = None,
        max_steps: int = constants.REACT_MAX_STEPS,
        observation_limit: int = constants.OBSERVATION_LIMIT,
        gated: bool = False,
        approval_timeout: Optional[float] = None,
    ) -> None:
        self.admission = admission
        self.complete = complete
        self.events = events or admission.events
        self.max_steps = max_steps
        self.observation_limit = observation_limit
        self.gated = gated
        self.approval_timeout = approval_timeout

    async def run(
        self,
        message: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_steps: Optional[int] = None,
    ) -> ReActResult:
        stream = self.stream(message, user_id, conversation_id=conversation_id, max_steps=max_steps)
        async for _ in stream:
            pass
        return stream.result

    def stream(
        self,
        message: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_steps: Optional[int] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> ReActStream:
        state = _RunState(run_id=generate_id("run"), started=time.monotonic())
        context = ExecutionContext(
            user_id=user_id,
            conversation_id=conversation_id,
            metadata={"react_run_id": state.run_id},
        )
        steps = self._iterate(state, message, context, max_steps or self.max_steps, on_token)
        return ReActStream(state, steps)

    def initial_prompt(self, message: str) -> str:
        catalogue = self.admission.registry.catalogue()
        return (
            f"{SYSTEM_PREAMBLE}\n\n"
            f"Available Tools:\n{catalogue}\n\n"
            f"User Request: {message}\n\n"
            "Begin your reasoning:"
        )

    async def _iterate(
        self,
        state: _RunState,
        message: str,
        context: ExecutionContext,
        max_steps: int,
        on_token: Optional[TokenCallback],
    ) -> AsyncIterator[ReActStep]:
        prompt = self.initial_prompt(message)
        LOG.info("ReAct run %s started for %s (max %d steps)", state.run_id, context.user_id, max_steps)
        try:
            while state.completion_calls < max_steps:
                state.completion_calls += 1
                response = await self._call_completion(prompt, on_token)
                parsed = parse_response(response)
                if not parsed:
                    raise ParseError(
                        "Completion could not be parsed into reasoning steps.",
                        {"response": response[:200], "call": state.completion_calls},
                    )

                transcript: List[str] = []
                for step in parsed:
                    self._record(state, step)
                    yield step
                    if step.type == ReActStepType.ANSWER:
                        state.final_answer = step.content
                        LOG.info("ReAct run %s answered after %d call(s)", state.run_id, state.completion_calls)
                        return
                    if step.type == ReActStepType.THOUGHT:
                        transcript.append(f"THOUGHT: {step.content}")
                        continue
                    if step.type == ReActStepType.ACTION and step.tool_call is not None:
                        observation = await self._act(step.tool_call, context)
                        self._record(state, observation)
                        yield observation
                        transcript.append(f"ACTION: {step.tool_call.name}")
                        transcript.append(f"INPUT: {json.dumps(step.tool_call.input, default=str)}")
                        transcript.append(f"OBSERVATION: {observation.content}")
                prompt += "\n\n" + "\n".join(transcript) + "\n\nContinue with your next thought:"

            raise MaxStepsExceeded(
                f"Maximum steps ({max_steps}) reached without an answer.", {"max_steps": max_steps}
            )
        except WardenError as exc:
            state.error = exc.to_failure()
            LOG.warning("ReAct run %s failed: %s", state.run_id, exc.message)

    async def _call_completion(self, prompt: str, on_token: Optional[TokenCallback]) -> str:
        try:
            if on_token is not None:
                return await self.complete(prompt, on_token=on_token)
            return await self.complete(prompt)
        except WardenError:
            raise
        except Exception as exc:
            LOG.exception("Completion function failed")
            raise CompletionFailed(str(exc) or exc.__class__.__name__, {"exception": exc.__class__.__name__}) from exc

    async def _act(self, call: ToolCall, context: ExecutionContext) -> ReActStep:
        action_context = ExecutionContext(
            user_id=context.user_id,
            conversation_id=context.conversation_id,
            metadata=dict(context.metadata),
        )
        try:
            if self.gated:
                execution = self.admission.submit(call.name, call.input, action_context)
                try:
                    execution = await self.admission.wait_for(execution.id, timeout=self.approval_timeout)
                except asyncio.TimeoutError:
                    return self._abandon(execution, call)
            else:
                execution = await self.admission.execute_directly(call.name, call.input, action_context)
        except WardenError as exc:
            return self._error_observation(exc.message)
        return self._observe(execution)

    def _abandon(self, execution: Execution, call: ToolCall) -> ReActStep:
        """Cancel an action the run stopped waiting for, so a late approval cannot run it."""
        try:
            self.admission.cancel(execution.id, "reasoning run stopped waiting for approval")
        except InvalidStateTransition:
            return self._observe(self.admission.get(execution.id))
        message = f"approval for '{call.name}' timed out; the action was cancelled"
        return self._error_observation(message, execution.id)

    def _observe(self, execution: Execution) -> ReActStep:
        if execution.status == ExecutionStatus.COMPLETED:
            return _step(
                ReActStepType.OBSERVATION,
                format_observation(execution.output, self.observation_limit),
                tool_result=execution.output,
                execution_id=execution.id,
            )
        if execution.status == ExecutionStatus.REJECTED:
            message = f"rejected by {execution.rejected_by}: {execution.rejection_reason}"
        elif execution.error is not None:
            message = execution.error.message
        else:
            message = f"execution ended as {execution.status.value}"
        return self._error_observation(message, execution.id)

    def _error_observation(self, message: str, execution_id: Optional[str] = None) -> ReActStep:
        return _step(
            ReActStepType.OBSERVATION,
            format_observation(f"Error: {message}", self.observation_limit),
            tool_result={"error": message},
            execution_id=execution_id,
        )

    def _record(self, state: _RunState, step: ReActStep) -> None:
        state.steps.append(step)
        self.events.emit(
            EventKind.REASONING_STEP,
            run_id=state.run_id,
            execution_id=step.execution_id,
            payload=step.model_dump(mode="json"),
        )
