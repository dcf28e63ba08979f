from __future__ import annotations

import json
from typing import Any, Dict, Optional

import click
import httpx

from tool_warden import constants
from tool_warden.cli import formatters
from tool_warden.clients.database import init_db
from tool_warden.utils.logging import setup_logging
from tool_warden.utils.pathing import ensure_runtime_directories

API_BASE = f"http://{constants.SERVER_HOST}:{constants.SERVER_PORT}"


def _request(
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    url = f"{API_BASE}{path}"
    with httpx.Client(timeout=60) as client:
        response = client.request(method, url, json=payload, params=params)
    if response.status_code >= 400:
        raise click.ClickException(f"API error {response.status_code}: {response.text}")
    if response.content:
        return response.json()
    return None


def _echo(result: Any) -> None:
    click.echo(json.dumps(result, indent=2))


@click.group(help="Tool Warden command-line interface.")
def cli() -> None:
    """Root command for Tool Warden."""
    setup_logging(console=False)


@cli.command()
def init() -> None:
    """Initialize local directories and database."""
    ensure_runtime_directories()
    init_db()
    click.echo("Tool Warden environment initialized.")


@cli.command()
@click.option("--host", default=constants.SERVER_HOST, show_default=True)
@click.option("--port", default=constants.SERVER_PORT, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Run the API server."""
    import uvicorn

    uvicorn.run("tool_warden.api.main:app", host=host, port=port)


@cli.command("tools")
@click.option("--category", help="Only list tools of this category.")
@click.option("--search", "query", help="Match name, description or category.")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def list_tools(category: Optional[str], query: Optional[str], as_json: bool) -> None:
    """List registered tools."""
    params = {key: value for key, value in {"category": category, "q": query}.items() if value}
    result = _request("GET", "/tools", params=params)
    click.echo(json.dumps(result, indent=2) if as_json else formatters.tools_table(result))


@cli.command()
@click.argument("tool_name")
@click.option("--input", "tool_input", default="{}", show_default=True, help="JSON object passed to the tool.")
@click.option("--user", "user_id", required=True, help="Requesting user ID.")
@click.option("--conversation", "conversation_id", help="Conversation correlation ID.")
def submit(tool_name: str, tool_input: str, user_id: str, conversation_id: Optional[str]) -> None:
    """Submit a tool call for admission."""
    try:
        parsed = json.loads(tool_input)
    except ValueError as exc:
        raise click.ClickException(f"--input is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise click.ClickException("--input must be a JSON object.")
    payload = {"tool_name": tool_name, "input": parsed, "user_id": user_id, "conversation_id": conversation_id}
    _echo(_request("POST", "/executions", payload))


@cli.command("executions")
@click.option("--user", "user_id", help="Filter by requesting user.")
@click.option("--conversation", "conversation_id", help="Filter by conversation.")
@click.option("--limit", default=50, show_default=True, type=int)
@click.option("--offset", default=0, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def executions(
    user_id: Optional[str], conversation_id: Optional[str], limit: int, offset: int, as_json: bool
) -> None:
    """List execution history, newest first."""
    params: Dict[str, Any] = {"limit": limit, "offset": offset}
    if user_id:
        params["user_id"] = user_id
    if conversation_id:
        params["conversation_id"] = conversation_id
    result = _request("GET", "/executions", params=params)
    if as_json:
        _echo(result)
        return
    click.echo(formatters.executions_table(result["items"]))
    if result.get("has_more"):
        click.echo(f"... {result['total']} total")


@cli.command()
@click.argument("execution_id")
def show(execution_id: str) -> None:
    """Show one execution."""
    _echo(_request("GET", f"/executions/{execution_id}"))


@cli.command()
@click.argument("execution_id")
@click.option("--reason", default="cancelled by user", show_default=True)
def cancel(execution_id: str, reason: str) -> None:
    """Cancel a pending or running execution."""
    _echo(_request("POST", f"/executions/{execution_id}/cancel", {"reason": reason}))


@cli.command("stats")
def stats() -> None:
    """Show execution counts by status and tool."""
    _echo(_request("GET", "/executions/stats"))


@cli.command("approvals")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def approvals(as_json: bool) -> None:
    """List approval requests awaiting a decision."""
    result = _request("GET", "/approvals")
    click.echo(json.dumps(result, indent=2) if as_json else formatters.approvals_table(result))


@cli.command("approve")
@click.argument("request_id")
@click.option("--as", "approver_id", required=True, help="Approver user ID.")
@click.option("--comment", help="Optional comment recorded on the step.")
@click.option("--step", "step_number", type=int, help="Step being approved; repeats on it are ignored.")
def approve(request_id: str, approver_id: str, comment: Optional[str], step_number: Optional[int]) -> None:
    """Approve the current step of a request."""
    payload = {"approver_id": approver_id, "comment": comment, "step_number": step_number}
    _echo(_request("POST", f"/approvals/{request_id}/approve", payload))


@cli.command("reject")
@click.argument("request_id")
@click.option("--as", "rejected_by", required=True, help="Rejecting user ID.")
@click.option("--reason", required=True, help="Reason for rejection.")
def reject(request_id: str, rejected_by: str, reason: str) -> None:
    """Reject a request; the workflow fails immediately."""
    payload = {"rejected_by": rejected_by, "reason": reason}
    _echo(_request("POST", f"/approvals/{request_id}/reject", payload))


@cli.command("escalate")
@click.argument("request_id")
@click.option("--as", "escalated_by", required=True, help="Escalating user ID.")
@click.option("--reason", required=True, help="Reason for escalation.")
def escalate(request_id: str, escalated_by: str, reason: str) -> None:
    """Hand the current step to its escalation approvers."""
    payload = {"escalated_by": escalated_by, "reason": reason}
    _echo(_request("POST", f"/approvals/{request_id}/escalate", payload))


@cli.group()
def rules() -> None:
    """Approval rule management commands."""


@rules.command("list")
def list_rules() -> None:
    _echo(_request("GET", "/rules"))


@rules.command("add")
@click.argument("rule_file", type=click.File("r"))
def add_rule(rule_file) -> None:
    """Add a rule from a JSON file."""
    try:
        payload = json.load(rule_file)
    except ValueError as exc:
        raise click.ClickException(f"Rule file is not valid JSON: {exc}") from exc
    _echo(_request("POST", "/rules", payload))


@rules.command("remove")
@click.argument("rule_id")
def remove_rule(rule_id: str) -> None:
    _request("DELETE", f"/rules/{rule_id}")
    click.echo("Rule removed.")


@cli.command("roles")
@click.argument("user_id")
@click.argument("roles", nargs=-1)
def set_roles(user_id: str, roles) -> None:
    """Assign approver roles to a user."""
    _echo(_request("PUT", f"/users/{user_id}/roles", {"roles": list(roles)}))


@cli.command("ask")
@click.argument("message")
@click.option("--user", "user_id", required=True, help="Requesting user ID.")
@click.option("--max-steps", type=int, help="Override the reasoning step budget.")
def ask(message: str, user_id: str, max_steps: Optional[int]) -> None:
    """Run a reasoning loop and print the answer."""
    payload = {"message": message, "user_id": user_id, "max_steps": max_steps}
    result = _request("POST", "/react/runs", payload)
    if result.get("success"):
        click.echo(result["final_answer"])
    else:
        error = result.get("error") or {}
        raise click.ClickException(f"{error.get('code', 'ERROR')}: {error.get('message', 'reasoning failed')}")


if __name__ == "__main__":
    cli()
