"""Ports (interfaces) used by the orchestration machine.

Ports define the minimal contracts for stage services and transition
observers so that the core can be driven by subprocesses, fakes or any other
backend.
"""

from __future__ import annotations

from typing import Protocol

from core.models import TransitionRecord


class StackServices(Protocol):
    """Stage operations required by the machine."""

    async def build(self) -> None:
        ...

    async def synth(self) -> str:
        """Synthesize and return the fingerprint of the output."""
        ...

    async def deploy(self) -> None:
        ...


class TransitionListener(Protocol):
    """Callback invoked for every state entry."""

    def __call__(self, record: TransitionRecord) -> None:
        ...
