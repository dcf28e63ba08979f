from __future__ import annotations

from typing import Any, Dict, List, Optional


def table(headers: List[str], rows: List[List[str]], max_widths: Optional[Dict[int, int]] = None) -> str:
    """Format data as ASCII table."""
    if not rows:
        return "No data"

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            if i < len(widths):
                widths[i] = max(widths[i], len(str(cell)))

    if max_widths:
        for i, max_w in max_widths.items():
            if i < len(widths):
                widths[i] = min(widths[i], max_w)

    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "  ".join("-" * w for w in widths)
    row_lines = [
        "  ".join(str(cell)[: widths[i]].ljust(widths[i]) for i, cell in enumerate(row)) for row in rows
    ]
    return "\n".join([header_line, separator] + row_lines)


def tools_table(tools: List[Dict[str, Any]]) -> str:
    rows = [[t["name"], t["category"], t["permission_level"], t.get("description", "")] for t in tools]
    return table(["NAME", "CATEGORY", "PERMISSION", "DESCRIPTION"], rows, max_widths={3: 60})


def executions_table(executions: List[Dict[str, Any]]) -> str:
    rows = []
    for e in executions:
        error = (e.get("error") or {}).get("code", "")
        rows.append([e["id"], e["tool_name"], e["status"], e["requested_by"], error or ""])
    return table(["ID", "TOOL", "STATUS", "REQUESTED BY", "ERROR"], rows)


def approvals_table(requests: List[Dict[str, Any]]) -> str:
    rows = [
        [r["id"], r["tool_name"], r["risk_tier"], ",".join(r.get("approvers", [])), r["deadline"]]
        for r in requests
    ]
    return table(["REQUEST", "TOOL", "RISK", "APPROVERS", "DEADLINE"], rows)
