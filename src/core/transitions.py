"""Transition table for the orchestration machine.

Every (state, event) pair maps to an ordered list of candidates. The first
candidate whose guard passes is taken. ``is_dirty`` is always listed before
any other guard so a change recorded during a stage forces a rebuild.

Entering a state runs its entry action first and then starts the state's
stage, including on a self-transition such as building -> building.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from core.models import Context, Event, EventType, MachineState, Stage

Guard = Callable[[Context, Event], bool]
Action = Callable[[Context, Event], None]

INITIAL_STATE = MachineState.SYNTHING


def is_dirty(context: Context, event: Event) -> bool:
    return context.dirty


def is_changed(context: Context, event: Event) -> bool:
    """True when the synth fingerprint differs from what is deployed."""

    if event.type != EventType.SYNTH_DONE:
        return False
    return event.data != context.deployed_hash


def assign_pending_hash(context: Context, event: Event) -> None:
    context.pending_hash = event.data


def assign_deployed_hash(context: Context, event: Event) -> None:
    context.deployed_hash = context.pending_hash


def clear_dirty(context: Context, event: Optional[Event]) -> None:
    context.dirty = False


def mark_dirty(context: Context, event: Optional[Event]) -> None:
    context.dirty = True


@dataclass(frozen=True)
class Transition:
    """One candidate reaction to an event.

    A candidate with ``halt`` set has no target: the machine stays where it
    is and stops starting stages until an operator intervenes.
    """

    target: Optional[MachineState]
    guard: Optional[Guard] = None
    action: Optional[Action] = None
    halt: bool = False

    def applies(self, context: Context, event: Event) -> bool:
        return self.guard is None or self.guard(context, event)


TRANSITIONS: dict[tuple[MachineState, EventType], list[Transition]] = {
    (MachineState.IDLE, EventType.FILE_CHANGE): [
        Transition(MachineState.BUILDING),
    ],
    (MachineState.BUILDING, EventType.BUILD_DONE): [
        Transition(MachineState.BUILDING, guard=is_dirty),
        Transition(MachineState.SYNTHING),
    ],
    (MachineState.BUILDING, EventType.BUILD_ERROR): [
        Transition(MachineState.BUILDING, guard=is_dirty),
        Transition(MachineState.IDLE),
    ],
    (MachineState.SYNTHING, EventType.SYNTH_DONE): [
        Transition(MachineState.BUILDING, guard=is_dirty),
        Transition(MachineState.DEPLOYABLE, guard=is_changed, action=assign_pending_hash),
        Transition(MachineState.IDLE),
    ],
    (MachineState.SYNTHING, EventType.SYNTH_ERROR): [
        Transition(MachineState.BUILDING, guard=is_dirty),
        Transition(MachineState.IDLE),
    ],
    (MachineState.DEPLOYABLE, EventType.TRIGGER_DEPLOY): [
        Transition(MachineState.DEPLOYING),
    ],
    (MachineState.DEPLOYABLE, EventType.FILE_CHANGE): [
        Transition(MachineState.BUILDING),
    ],
    (MachineState.DEPLOYING, EventType.DEPLOY_DONE): [
        Transition(MachineState.BUILDING, guard=is_dirty, action=assign_deployed_hash),
        Transition(MachineState.IDLE, action=assign_deployed_hash),
    ],
    (MachineState.DEPLOYING, EventType.DEPLOY_ERROR): [
        Transition(None, halt=True),
    ],
}

# Applied when no state-specific candidate claims the event.
DEFAULT_ACTIONS: dict[EventType, Action] = {
    EventType.FILE_CHANGE: mark_dirty,
}

ENTRY_ACTIONS: dict[MachineState, Action] = {
    MachineState.BUILDING: clear_dirty,
}

STAGE_FOR_STATE: dict[MachineState, Stage] = {
    MachineState.BUILDING: Stage.BUILD,
    MachineState.SYNTHING: Stage.SYNTH,
    MachineState.DEPLOYING: Stage.DEPLOY,
}


def select_transition(state: MachineState, context: Context, event: Event) -> Optional[Transition]:
    """Return the first candidate for (state, event) whose guard passes."""

    for candidate in TRANSITIONS.get((state, event.type), []):
        if candidate.applies(context, event):
            return candidate
    return None
