"""HTTP tool executor that calls a tool service."""

from __future__ import annotations

from typing import Any, Dict

import httpx

from tool_warden.executors.base import ToolExecutor
from tool_warden.models.execution import ExecutionContext, ExecutorResult


class HttpToolExecutor(ToolExecutor):
    """Execute tools by POSTing to ``{base_url}/tools/{tool_name}``.

    The service answers ``{"success": true, "output": ...}`` or
    ``{"success": false, "errorCode": ..., "errorMessage": ...}``; transport
    errors and non-2xx statuses become coded failures instead of exceptions.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 120.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    async def run(self, tool_name: str, tool_input: Dict[str, Any], context: ExecutionContext) -> ExecutorResult:
        url = f"{self._base_url}/tools/{tool_name}"
        body = {
            "input": tool_input,
            "context": {
                "user_id": context.user_id,
                "conversation_id": context.conversation_id,
                "session_id": context.session_id,
                "message_id": context.message_id,
            },
        }

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(url, json=body, timeout=self._timeout)
        except httpx.HTTPError as exc:
            return ExecutorResult(success=False, error_code="TRANSPORT_ERROR", error_message=str(exc))

        if resp.status_code >= 400:
            return ExecutorResult(
                success=False,
                error_code=f"HTTP_{resp.status_code}",
                error_message=resp.text,
            )
        return _to_result(resp.json())


def _to_result(payload: Dict[str, Any]) -> ExecutorResult:
    if payload.get("success", True):
        return ExecutorResult(success=True, output=payload.get("output"))
    return ExecutorResult(
        success=False,
        error_code=payload.get("errorCode") or payload.get("error_code") or "EXECUTION_ERROR",
        error_message=payload.get("errorMessage") or payload.get("error_message") or "Tool execution failed",
    )
