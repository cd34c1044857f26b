"""Build / synth / deploy orchestration machine.

The machine owns a single Context and one event queue. Inbound events
(file changes, deploy triggers) and stage completion events all go through
the same queue and are applied one at a time by ``run()``. Stage operations
run as tasks that only enqueue their completion event; they never touch the
Context directly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from core.config import FingerprintConfig
from core.fingerprint import compute_fingerprint
from core.models import (
    COMPLETION_EVENTS,
    Context,
    Event,
    EventType,
    MachineState,
    Stage,
    TransitionRecord,
)
from core.ports import StackServices, TransitionListener
from core.stage_runner import StageRunner
from core.transitions import (
    DEFAULT_ACTIONS,
    ENTRY_ACTIONS,
    INITIAL_STATE,
    STAGE_FOR_STATE,
    select_transition,
)

LOGGER = logging.getLogger(__name__)

INBOUND_EVENTS = frozenset({EventType.FILE_CHANGE, EventType.TRIGGER_DEPLOY})
COMPLETION_TYPES = frozenset(t for pair in COMPLETION_EVENTS.values() for t in pair)


class OrchestrationMachine:
    """Drives build -> synth -> deploy in response to change and deploy events."""

    def __init__(
        self,
        services: StackServices,
        deployed_hash: str,
        runner: Optional[StageRunner] = None,
    ) -> None:
        self._services = services
        self._runner = runner or StageRunner()
        self._context = Context(deployed_hash=deployed_hash)
        self._state: Optional[MachineState] = None
        self._queue: asyncio.Queue[Optional[Event]] = asyncio.Queue()
        self._listeners: list[TransitionListener] = []
        self._stage_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[Stage] = None
        self._failure: Optional[BaseException] = None
        self._stopped = asyncio.Event()

    @property
    def state(self) -> Optional[MachineState]:
        return self._state

    @property
    def context(self) -> Context:
        """A copy of the current context; mutating it has no effect."""

        return self._context.snapshot()

    @property
    def in_flight(self) -> Optional[Stage]:
        return self._in_flight

    @property
    def halted(self) -> bool:
        return self._failure is not None

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    def subscribe(self, listener: TransitionListener) -> None:
        """Register a callback invoked on every state entry and on halt."""

        self._listeners.append(listener)

    def send(self, event_type: EventType) -> None:
        """Queue an inbound event. Safe to call before ``run()`` starts."""

        if event_type not in INBOUND_EVENTS:
            raise ValueError(f"Not an inbound event: {event_type}")
        self._queue.put_nowait(Event(type=event_type))

    async def run(self) -> None:
        """Enter the initial state and process events until ``stop()``."""

        if self._state is not None:
            raise RuntimeError("Machine already started")

        LOGGER.info("Machine starting; deployed hash %s", self._context.deployed_hash[:12])
        self._enter(INITIAL_STATE, source=None, event=None)
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                self.dispatch(event)
        finally:
            # Stages are never aborted; wait for the current one to end on its own.
            if self._stage_task is not None and not self._stage_task.done():
                LOGGER.info("Waiting for in-flight %s before stopping", self._in_flight)
                await asyncio.wait({self._stage_task})
            self._stopped.set()
            LOGGER.info("Machine stopped in state %s", self._state)

    async def stop(self) -> None:
        """Stop the dispatch loop once queued events and the running stage finish.

        The completion of a stage that is still running at this point is not
        applied to the context.
        """

        if self._state is None:
            return
        self._queue.put_nowait(None)
        await self._stopped.wait()

    def dispatch(self, event: Event) -> None:
        """Apply one event to the current state and context."""

        if event.type in COMPLETION_TYPES:
            self._in_flight = None
            self._stage_task = None

        if self.halted:
            # Only the global defaults still apply while waiting for an operator.
            default = DEFAULT_ACTIONS.get(event.type)
            if default is not None:
                default(self._context, event)
            LOGGER.debug("Halted; %s only recorded", event.type)
            return

        transition = select_transition(self._state, self._context, event)
        if transition is None:
            default = DEFAULT_ACTIONS.get(event.type)
            if default is not None:
                default(self._context, event)
                LOGGER.debug("%s recorded in %s (dirty=%s)", event.type, self._state, self._context.dirty)
            else:
                LOGGER.debug("Ignoring %s in %s", event.type, self._state)
            return

        if transition.action is not None:
            transition.action(self._context, event)

        if transition.halt:
            self._halt(event)
            return

        self._enter(transition.target, source=self._state, event=event.type)

    def _enter(
        self,
        target: MachineState,
        source: Optional[MachineState],
        event: Optional[EventType],
    ) -> None:
        self._state = target
        entry = ENTRY_ACTIONS.get(target)
        if entry is not None:
            entry(self._context, None)

        stage = STAGE_FOR_STATE.get(target)
        if stage is not None:
            self._start_stage(stage)

        self._notify(
            TransitionRecord(
                source=source,
                event=event,
                target=target,
                context=self._context.snapshot(),
            )
        )

    def _start_stage(self, stage: Stage) -> None:
        if self._in_flight is not None:
            raise RuntimeError(f"Cannot start {stage} while {self._in_flight} is running")
        operation = getattr(self._services, stage.value)
        self._in_flight = stage
        self._stage_task = asyncio.create_task(self._invoke(stage, operation))

    async def _invoke(self, stage: Stage, operation) -> None:
        outcome = await self._runner.run(stage, operation)
        self._queue.put_nowait(outcome.to_event())

    def _halt(self, event: Event) -> None:
        self._failure = event.error or RuntimeError(f"{event.type} without error detail")
        LOGGER.error(
            "Deploy failed; machine halted in %s until restarted: %s",
            self._state,
            self._failure,
        )
        self._notify(
            TransitionRecord(
                source=self._state,
                event=event.type,
                target=self._state,
                context=self._context.snapshot(),
                halted=True,
                error=self._failure,
            )
        )

    def _notify(self, record: TransitionRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                LOGGER.exception("Transition listener failed")


def build_stacks_machine(
    services: StackServices,
    output_dir: str,
    fingerprint_config: Optional[FingerprintConfig] = None,
    runner: Optional[StageRunner] = None,
) -> OrchestrationMachine:
    """Create a machine whose baseline is the fingerprint of the existing output.

    The existing output is assumed to match the last successful deploy. A
    missing or unreadable output raises ``FingerprintFailure``.
    """

    fingerprint_config = fingerprint_config or FingerprintConfig()
    baseline = compute_fingerprint(
        output_dir,
        manifest_name=fingerprint_config.manifest_name,
        artifact_type=fingerprint_config.artifact_type,
    )
    return OrchestrationMachine(services, deployed_hash=baseline, runner=runner)
