# classes/sweep_trigger.py

import logging
from typing import Optional

from classes.auth import CallerIdentity, require_privileged
from classes.deadline_sweep import DeadlineSweepEngine, SweepResult

logger = logging.getLogger("craft_backend")


class SweepTrigger:
    """
    Scheduled and manual entry into the deadline sweep. Both go through
    `_invoke`, so the manual trigger runs exactly what the schedule runs.
    """

    def __init__(self, engine: DeadlineSweepEngine):
        self.engine = engine

    def run_scheduled(self) -> SweepResult:
        logger.info("🕐 Scheduled deadline check")
        return self._invoke()

    def run_manual(self, identity: Optional[CallerIdentity]) -> dict:
        # privileges are checked before anything is read
        caller = require_privileged(identity)
        logger.info(f"🔧 Manual deadline check triggered by: {caller.uid}")

        result = self._invoke()
        return {
            "success": True,
            "expiredRequestsCount": result.expired_count,
            "timestamp": result.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    def _invoke(self) -> SweepResult:
        return self.engine.run()
