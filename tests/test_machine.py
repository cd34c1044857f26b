from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable, Optional

import pytest

from core.errors import FingerprintFailure, StageFailure
from core.machine import OrchestrationMachine, build_stacks_machine
from core.models import EventType, MachineState, Stage, TransitionRecord

IDLE = MachineState.IDLE
BUILDING = MachineState.BUILDING
SYNTHING = MachineState.SYNTHING
DEPLOYABLE = MachineState.DEPLOYABLE
DEPLOYING = MachineState.DEPLOYING


class FakeServices:
    def __init__(self, fingerprints: Optional[list[str]] = None, failures: Optional[dict[str, int]] = None) -> None:
        self.calls: list[str] = []
        self._fingerprints = list(fingerprints or [])
        self._failures = dict(failures or {})
        self._gates: dict[str, asyncio.Event] = {}

    def hold(self, stage: str) -> None:
        self._gates[stage] = asyncio.Event()

    def release(self, stage: str) -> None:
        self._gates.pop(stage).set()

    async def _stage(self, stage: str) -> None:
        self.calls.append(stage)
        gate = self._gates.get(stage)
        if gate is not None:
            await gate.wait()
        if self._failures.get(stage):
            self._failures[stage] -= 1
            raise StageFailure(stage, "boom", exit_code=1)

    async def build(self) -> None:
        await self._stage("build")

    async def synth(self) -> str:
        await self._stage("synth")
        return self._fingerprints.pop(0)

    async def deploy(self) -> None:
        await self._stage("deploy")


class Recorder:
    def __init__(self) -> None:
        self.records: list[TransitionRecord] = []

    def __call__(self, record: TransitionRecord) -> None:
        self.records.append(record)

    @property
    def states(self) -> list[MachineState]:
        return [record.target for record in self.records if not record.halted]


async def _wait_for(predicate: Callable[[], bool], steps: int = 1000) -> None:
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def _start(services: FakeServices, baseline: str = "h0") -> tuple[OrchestrationMachine, Recorder, asyncio.Task]:
    machine = OrchestrationMachine(services, deployed_hash=baseline)
    recorder = Recorder()
    machine.subscribe(recorder)
    task = asyncio.create_task(machine.run())
    await _wait_for(lambda: machine.state is not None)
    return machine, recorder, task


async def _finish(machine: OrchestrationMachine, task: asyncio.Task) -> None:
    await machine.stop()
    await task


async def _settled(machine: OrchestrationMachine, recorder: Recorder, count: int) -> None:
    await _wait_for(lambda: len(recorder.states) >= count and machine.in_flight is None)


def test_initial_synth_matching_baseline_goes_idle() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        assert recorder.states == [SYNTHING, IDLE]
        assert recorder.records[0].source is None
        assert machine.context.deployed_hash == "h0"
        assert machine.context.pending_hash == ""
        await _finish(machine, task)

    asyncio.run(scenario())


def test_change_with_new_output_becomes_deployable() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h1"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 5)

        assert recorder.states == [SYNTHING, IDLE, BUILDING, SYNTHING, DEPLOYABLE]
        assert services.calls == ["synth", "build", "synth"]
        assert machine.state == DEPLOYABLE
        assert machine.context.pending_hash == "h1"
        assert machine.context.deployed_hash == "h0"
        assert machine.context.dirty is False
        await _finish(machine, task)

    asyncio.run(scenario())


def test_change_while_deployable_rebuilds_and_unchanged_output_goes_idle() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h1", "h0"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)
        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 5)

        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 8)

        assert recorder.states[4:] == [DEPLOYABLE, BUILDING, SYNTHING, IDLE]
        assert "deploy" not in services.calls
        assert machine.context.deployed_hash == "h0"
        await _finish(machine, task)

    asyncio.run(scenario())


def test_change_during_build_restarts_build() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h1"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        services.hold("build")
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.in_flight == Stage.BUILD)
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.context.dirty)
        assert machine.state == BUILDING

        services.release("build")
        await _settled(machine, recorder, 6)

        assert recorder.states == [SYNTHING, IDLE, BUILDING, BUILDING, SYNTHING, DEPLOYABLE]
        assert services.calls == ["synth", "build", "build", "synth"]
        await _finish(machine, task)

    asyncio.run(scenario())


def test_deploy_promotes_pending_hash() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h1"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)
        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 5)
        pending = machine.context.pending_hash

        machine.send(EventType.TRIGGER_DEPLOY)
        await _settled(machine, recorder, 7)

        assert recorder.states[4:] == [DEPLOYABLE, DEPLOYING, IDLE]
        assert machine.context.deployed_hash == pending == "h1"
        assert services.calls[-1] == "deploy"
        await _finish(machine, task)

    asyncio.run(scenario())


def test_changes_during_synth_win_over_changed_fingerprint() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h1", "h0"])
        services.hold("synth")
        machine, recorder, task = await _start(services)

        for _ in range(3):
            machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.context.dirty)
        services.release("synth")
        await _settled(machine, recorder, 4)

        assert recorder.states == [SYNTHING, BUILDING, SYNTHING, IDLE]
        assert recorder.states.count(BUILDING) == 1
        assert machine.context.pending_hash == ""
        await _finish(machine, task)

    asyncio.run(scenario())


def test_change_during_deploy_still_records_deploy_then_rebuilds() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h1", "h1"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)
        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 5)

        services.hold("deploy")
        machine.send(EventType.TRIGGER_DEPLOY)
        await _wait_for(lambda: machine.in_flight == Stage.DEPLOY)
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.context.dirty)
        services.release("deploy")
        await _settled(machine, recorder, 9)

        assert recorder.states[4:] == [DEPLOYABLE, DEPLOYING, BUILDING, SYNTHING, IDLE]
        building_after_deploy = recorder.records[6]
        assert building_after_deploy.context.deployed_hash == "h1"
        assert machine.context.deployed_hash == "h1"
        await _finish(machine, task)

    asyncio.run(scenario())


def test_unchanged_synth_never_becomes_deployable() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h0"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)
        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 5)

        assert DEPLOYABLE not in recorder.states
        assert recorder.states[-1] == IDLE
        assert machine.context.pending_hash == ""
        assert machine.context.deployed_hash == "h0"
        await _finish(machine, task)

    asyncio.run(scenario())


def test_entering_building_always_clears_dirty() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h0"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        services.hold("build")
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.in_flight == Stage.BUILD)
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.context.dirty)
        services.release("build")
        await _settled(machine, recorder, 6)

        building = [record for record in recorder.records if record.target == BUILDING]
        assert len(building) == 2
        assert all(record.context.dirty is False for record in building)
        await _finish(machine, task)

    asyncio.run(scenario())


def test_build_failure_goes_idle() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0"], failures={"build": 1})
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 4)

        assert recorder.states == [SYNTHING, IDLE, BUILDING, IDLE]
        assert services.calls == ["synth", "build"]
        await _finish(machine, task)

    asyncio.run(scenario())


def test_build_failure_with_pending_change_rebuilds() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h0"], failures={"build": 1})
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        services.hold("build")
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.in_flight == Stage.BUILD)
        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.context.dirty)
        services.release("build")
        await _settled(machine, recorder, 6)

        assert recorder.states == [SYNTHING, IDLE, BUILDING, BUILDING, SYNTHING, IDLE]
        await _finish(machine, task)

    asyncio.run(scenario())


def test_synth_failure_goes_idle_and_keeps_baseline() -> None:
    async def scenario() -> None:
        services = FakeServices(failures={"synth": 1})
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        assert recorder.states == [SYNTHING, IDLE]
        assert machine.context.deployed_hash == "h0"
        assert not machine.halted
        await _finish(machine, task)

    asyncio.run(scenario())


def test_fingerprint_failure_is_a_synth_failure() -> None:
    class BrokenOutput(FakeServices):
        async def synth(self) -> str:
            await super().synth()
            raise FingerprintFailure("Template not found: cdk.out/Api.template.json")

    async def scenario() -> None:
        services = BrokenOutput(fingerprints=["h1"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        assert recorder.states == [SYNTHING, IDLE]
        assert machine.context.pending_hash == ""
        assert machine.context.deployed_hash == "h0"
        assert not machine.halted
        await _finish(machine, task)

    asyncio.run(scenario())


def test_synth_failure_with_pending_change_rebuilds() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0"], failures={"synth": 1})
        services.hold("synth")
        machine, recorder, task = await _start(services)

        machine.send(EventType.FILE_CHANGE)
        await _wait_for(lambda: machine.context.dirty)
        services.release("synth")
        await _settled(machine, recorder, 4)

        assert recorder.states == [SYNTHING, BUILDING, SYNTHING, IDLE]
        assert services.calls == ["synth", "build", "synth"]
        assert machine.context.dirty is False
        await _finish(machine, task)

    asyncio.run(scenario())


def test_deploy_failure_halts_machine() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0", "h1"], failures={"deploy": 1})
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)
        machine.send(EventType.FILE_CHANGE)
        await _settled(machine, recorder, 5)

        machine.send(EventType.TRIGGER_DEPLOY)
        await _wait_for(lambda: machine.halted)

        assert machine.state == DEPLOYING
        assert isinstance(machine.failure, StageFailure)
        assert machine.context.deployed_hash == "h0"
        assert recorder.records[-1].halted is True

        calls_before = list(services.calls)
        machine.send(EventType.FILE_CHANGE)
        machine.send(EventType.TRIGGER_DEPLOY)
        await _wait_for(lambda: machine.context.dirty)
        for _ in range(20):
            await asyncio.sleep(0)

        assert machine.state == DEPLOYING
        assert services.calls == calls_before
        assert machine.in_flight is None
        await _finish(machine, task)

    asyncio.run(scenario())


def test_trigger_deploy_outside_deployable_is_ignored() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0"])
        machine, recorder, task = await _start(services)
        await _settled(machine, recorder, 2)

        machine.send(EventType.TRIGGER_DEPLOY)
        for _ in range(20):
            await asyncio.sleep(0)

        assert recorder.states == [SYNTHING, IDLE]
        assert "deploy" not in services.calls
        await _finish(machine, task)

    asyncio.run(scenario())


def test_failing_listener_does_not_stop_machine() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h0"])
        machine = OrchestrationMachine(services, deployed_hash="h0")

        def broken(record: TransitionRecord) -> None:
            raise RuntimeError("listener bug")

        recorder = Recorder()
        machine.subscribe(broken)
        machine.subscribe(recorder)
        task = asyncio.create_task(machine.run())
        await _settled(machine, recorder, 2)

        assert recorder.states == [SYNTHING, IDLE]
        await _finish(machine, task)

    asyncio.run(scenario())


def test_stop_waits_for_in_flight_stage() -> None:
    async def scenario() -> None:
        services = FakeServices(fingerprints=["h1"])
        services.hold("synth")
        machine, recorder, task = await _start(services)

        stopping = asyncio.create_task(machine.stop())
        for _ in range(20):
            await asyncio.sleep(0)
        assert not stopping.done()

        services.release("synth")
        await stopping
        await task
        assert recorder.states == [SYNTHING]

    asyncio.run(scenario())


def test_send_rejects_completion_events() -> None:
    machine = OrchestrationMachine(FakeServices(), deployed_hash="h0")

    with pytest.raises(ValueError):
        machine.send(EventType.BUILD_DONE)


def test_build_stacks_machine_uses_existing_output_as_baseline(tmp_path: Path) -> None:
    (tmp_path / "manifest.json").write_text(
        json.dumps({"artifacts": {"Api": {"type": "aws:cloudformation:stack", "displayName": "Api"}}}),
        encoding="utf-8",
    )
    (tmp_path / "Api.template.json").write_bytes(b"{}")

    machine = build_stacks_machine(FakeServices(), str(tmp_path))

    assert len(machine.context.deployed_hash) == 64
    assert machine.state is None


def test_build_stacks_machine_without_output_fails(tmp_path: Path) -> None:
    with pytest.raises(FingerprintFailure):
        build_stacks_machine(FakeServices(), str(tmp_path / "cdk.out"))
