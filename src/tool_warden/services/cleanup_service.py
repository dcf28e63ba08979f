"""Periodic maintenance for executions and approval workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from tool_warden import constants
from tool_warden.services.admission_service import AdmissionQueue

LOG = logging.getLogger(__name__)


class CleanupService:
    """Drives the retention sweep and the approval expiry sweep."""

    def __init__(self, admission: AdmissionQueue, interval: float = constants.SWEEP_INTERVAL) -> None:
        self.admission = admission
        self.interval = interval

    def run_once(self) -> Dict[str, int]:
        return self.admission.cleanup_expired()

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.run_once()
            except Exception:  # pragma: no cover - defensive logging
                LOG.exception("Cleanup sweep failed")
