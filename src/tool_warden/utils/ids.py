"""Identifier and clock helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def generate_id(prefix: str) -> str:
    """Return a random identifier such as ``exec-1f3a...``."""
    return f"{prefix}-{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
