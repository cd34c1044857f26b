"""Error taxonomy shared by the core and adapters."""

from __future__ import annotations

from typing import Optional


class StackwatchError(Exception):
    """Base class for all stackwatch errors."""


class StageFailure(StackwatchError):
    """A build, synth or deploy operation failed."""

    def __init__(self, stage: str, detail: str, exit_code: Optional[int] = None) -> None:
        self.stage = stage
        self.detail = detail
        self.exit_code = exit_code
        if exit_code is None:
            message = f"{stage} failed: {detail}"
        else:
            message = f"{stage} failed (exit {exit_code}): {detail}"
        super().__init__(message)


class FingerprintFailure(StackwatchError):
    """The synth output manifest or one of its templates is missing or unreadable."""
