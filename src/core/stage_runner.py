"""Stage execution adapter between the machine and external services."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from core.models import Stage, StageOutcome

LOGGER = logging.getLogger(__name__)


class StageRunner:
    """Runs one stage operation to completion and reports exactly one outcome.

    There is no retry, timeout or cancellation here. The operation either
    resolves or raises, and the machine decides what happens next.
    """

    async def run(self, stage: Stage, operation: Callable[[], Awaitable[Any]]) -> StageOutcome:
        LOGGER.info("Stage %s started", stage)
        started = time.monotonic()
        try:
            result = await operation()
        except Exception as exc:
            duration = time.monotonic() - started
            LOGGER.error("Stage %s failed after %.1fs: %s", stage, duration, exc)
            return StageOutcome(stage=stage, ok=False, error=exc, duration_sec=duration)

        duration = time.monotonic() - started
        LOGGER.info("Stage %s finished in %.1fs", stage, duration)
        return StageOutcome(stage=stage, ok=True, result=result, duration_sec=duration)
