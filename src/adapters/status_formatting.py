"""Shared status formatting helpers.

Keeping formatting here prevents drift between the log output and the status
panel, so a transition reads the same wherever it is shown.
"""

from __future__ import annotations

from rich.markup import escape

from core.models import Context, MachineState, TransitionRecord

HASH_CHARS = 12

STATE_STYLES: dict[MachineState, str] = {
    MachineState.IDLE: "green",
    MachineState.BUILDING: "yellow",
    MachineState.SYNTHING: "yellow",
    MachineState.DEPLOYABLE: "bold cyan",
    MachineState.DEPLOYING: "magenta",
}


def short_hash(value: str) -> str:
    """Return a clipped hash for display, or a dash when unset."""

    if not value:
        return "-"
    return value[:HASH_CHARS]


def format_context(context: Context) -> str:
    return (
        f"deployed={short_hash(context.deployed_hash)} "
        f"pending={short_hash(context.pending_hash)} "
        f"dirty={'yes' if context.dirty else 'no'}"
    )


def _format_plain(record: TransitionRecord) -> str:
    source = str(record.source) if record.source else "start"
    trigger = f" on {record.event}" if record.event else ""
    if record.halted:
        return (
            f"HALTED in {record.target}{trigger}: {record.error} "
            f"({format_context(record.context)}); restart required"
        )
    return f"{source} -> {record.target}{trigger} ({format_context(record.context)})"


def _format_rich(record: TransitionRecord) -> str:
    if record.halted:
        return f"[bold red]halted[/] in {record.target}: {escape(str(record.error))}"
    style = STATE_STYLES.get(record.target, "bold")
    source = str(record.source) if record.source else "start"
    trigger = f" [dim]({record.event})[/]" if record.event else ""
    return f"{source} -> [{style}]{record.target}[/]{trigger}"


def format_transition(record: TransitionRecord, mode: str = "plain") -> str:
    """Return the transition formatted for the requested mode."""

    if mode == "plain":
        return _format_plain(record)
    if mode == "rich":
        return _format_rich(record)
    raise ValueError(f"Unsupported status format: {mode}")
