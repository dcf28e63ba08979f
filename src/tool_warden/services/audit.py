"""Audit trail sinks for admission and approval state changes."""

from __future__ import annotations

from json import dumps
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from tool_warden import constants
from tool_warden.utils.ids import utcnow


class AuditSink(Protocol):
    def record(self, event_name: str, **ids: Any) -> None:
        ...


def _entry(event_name: str, ids: Dict[str, Any]) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"timestamp": utcnow().isoformat(), "event": event_name}
    entry.update({key: value for key, value in ids.items() if value is not None})
    return entry


class JsonlAuditSink:
    """Appends one JSON object per line to ``audit.log``."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = directory

    @property
    def log_file(self) -> Path:
        return (self.directory or constants.AUDIT_DIR) / "audit.log"

    def record(self, event_name: str, **ids: Any) -> None:
        log_file = self.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(dumps(_entry(event_name, ids), default=str) + "\n")


class MemoryAuditSink:
    """Keeps entries in a list; used by tests and when file auditing is off."""

    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    def record(self, event_name: str, **ids: Any) -> None:
        self.entries.append(_entry(event_name, ids))

    def events(self) -> List[str]:
        return [entry["event"] for entry in self.entries]
