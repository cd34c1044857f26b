"""Core domain models.

These types are shared across the core and adapters to avoid tight coupling
to any subprocess, watcher or UI specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional


class MachineState(str, Enum):
    """States of the orchestration machine."""

    IDLE = "idle"
    BUILDING = "building"
    SYNTHING = "synthing"
    DEPLOYABLE = "deployable"
    DEPLOYING = "deploying"

    def __str__(self) -> str:
        return self.value


class Stage(str, Enum):
    """Long-running external operations driven by the machine."""

    BUILD = "build"
    SYNTH = "synth"
    DEPLOY = "deploy"

    def __str__(self) -> str:
        return self.value


class EventType(str, Enum):
    """Inbound events plus the completion events synthesized for each stage."""

    FILE_CHANGE = "FILE_CHANGE"
    TRIGGER_DEPLOY = "TRIGGER_DEPLOY"
    BUILD_DONE = "BUILD_DONE"
    BUILD_ERROR = "BUILD_ERROR"
    SYNTH_DONE = "SYNTH_DONE"
    SYNTH_ERROR = "SYNTH_ERROR"
    DEPLOY_DONE = "DEPLOY_DONE"
    DEPLOY_ERROR = "DEPLOY_ERROR"

    def __str__(self) -> str:
        return self.value


# Completion event types per stage: (success, failure)
COMPLETION_EVENTS: dict[Stage, tuple[EventType, EventType]] = {
    Stage.BUILD: (EventType.BUILD_DONE, EventType.BUILD_ERROR),
    Stage.SYNTH: (EventType.SYNTH_DONE, EventType.SYNTH_ERROR),
    Stage.DEPLOY: (EventType.DEPLOY_DONE, EventType.DEPLOY_ERROR),
}


@dataclass
class Context:
    """Mutable record owned by a single machine instance.

    - dirty: a change arrived that no completed build has absorbed yet
    - deployed_hash: fingerprint of the templates believed deployed
    - pending_hash: fingerprint of the latest synth output awaiting deploy
    """

    dirty: bool = False
    deployed_hash: str = ""
    pending_hash: str = ""

    def snapshot(self) -> "Context":
        return replace(self)


@dataclass(frozen=True)
class Event:
    """One item on the machine's event queue."""

    type: EventType
    data: Any = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class StageOutcome:
    """Result of running one stage to completion."""

    stage: Stage
    ok: bool
    result: Any = None
    error: Optional[BaseException] = None
    duration_sec: float = 0.0

    def to_event(self) -> Event:
        """Convert the outcome into the completion event the machine consumes."""

        done, failed = COMPLETION_EVENTS[self.stage]
        if self.ok:
            return Event(type=done, data=self.result)
        return Event(type=failed, error=self.error)


@dataclass(frozen=True)
class TransitionRecord:
    """A state entry as seen by transition listeners."""

    source: Optional[MachineState]
    event: Optional[EventType]
    target: MachineState
    context: Context
    halted: bool = False
    error: Optional[BaseException] = None
