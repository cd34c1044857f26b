from __future__ import annotations

import asyncio

from core.errors import StageFailure
from core.models import EventType, Stage
from core.stage_runner import StageRunner


def test_success_carries_result() -> None:
    async def operation() -> str:
        return "abc123"

    outcome = asyncio.run(StageRunner().run(Stage.SYNTH, operation))

    assert outcome.ok is True
    assert outcome.result == "abc123"
    assert outcome.error is None
    assert outcome.to_event().type == EventType.SYNTH_DONE
    assert outcome.to_event().data == "abc123"


def test_failure_carries_error() -> None:
    async def operation() -> None:
        raise StageFailure("build", "tsc exploded", exit_code=2)

    outcome = asyncio.run(StageRunner().run(Stage.BUILD, operation))

    assert outcome.ok is False
    assert isinstance(outcome.error, StageFailure)
    assert outcome.error.exit_code == 2
    event = outcome.to_event()
    assert event.type == EventType.BUILD_ERROR
    assert event.error is outcome.error


def test_operation_runs_exactly_once() -> None:
    calls: list[str] = []

    async def operation() -> None:
        calls.append("deploy")
        raise RuntimeError("network down")

    outcome = asyncio.run(StageRunner().run(Stage.DEPLOY, operation))

    assert calls == ["deploy"]
    assert outcome.to_event().type == EventType.DEPLOY_ERROR
    assert outcome.duration_sec >= 0
