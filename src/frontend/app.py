"""Main Textual app for the stackwatch status panel."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import Button, DataTable, Footer, Static

from adapters.fs_watcher import FileChangeWatcher
from adapters.status_formatting import STATE_STYLES, format_transition, short_hash
from core.machine import OrchestrationMachine
from core.models import EventType, MachineState, TransitionRecord

from .constants import ACCENT, HISTORY_LIMIT, REFRESH_SECONDS


class StatusPanelApp(App):
    """Live view of the machine with a deploy trigger."""

    BINDINGS = [
        ("d", "trigger_deploy", "Deploy"),
        ("q", "request_quit", "Quit"),
        ("ctrl+c", "request_quit", "Quit"),
    ]

    CSS = """
    Screen {
        background: #14171c;
        color: #e8eef5;
    }

    #header {
        height: 8;
        padding: 1 4;
        border-bottom: solid #2a3340;
    }

    #header-row {
        height: 6;
    }

    #header-left, #header-right {
        width: 1fr;
    }

    #header-right {
        content-align: right top;
        text-align: right;
    }

    #title {
        text-style: bold;
    }

    .subtle {
        color: #aab6c3;
    }

    #status {
        height: 5;
        padding: 1 4;
        border-bottom: solid #2a3340;
    }

    #status-state {
        text-style: bold;
    }

    #actions {
        height: 3;
        padding: 0 4;
    }

    #history {
        height: 1fr;
        margin: 0 4;
    }
    """

    def __init__(
        self,
        machine: OrchestrationMachine,
        watcher: FileChangeWatcher,
        root: str,
        output_dir: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._machine = machine
        self._watcher = watcher
        self._root = root
        self._output_dir = output_dir
        self._stopping = False
        self._row_keys: list = []

    def compose(self) -> ComposeResult:
        with Container(id="header"):
            with Horizontal(id="header-row"):
                with Vertical(id="header-left"):
                    yield Static(self._title_text(), id="title")
                    yield Static(f"root: {self._root}", classes="subtle")
                with Vertical(id="header-right"):
                    yield Static(f"output: {self._output_dir}", classes="subtle")
                    yield Static("", id="header-status")

        with Vertical(id="status"):
            yield Static("", id="status-state")
            yield Static("", id="status-hashes", classes="subtle")
            yield Static("", id="status-error")

        with Horizontal(id="actions"):
            yield Button("Deploy", id="deploy-btn", variant="success", disabled=True)

        yield DataTable(id="history", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#history", DataTable)
        table.add_column("time", key="time", width=10)
        table.add_column("transition", key="transition")
        table.zebra_stripes = True

        self._machine.subscribe(self._on_transition)
        self._watcher.start()
        self.run_worker(self._machine.run(), name="machine")
        self.set_interval(REFRESH_SECONDS, self._refresh_status)
        self._refresh_status()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "deploy-btn":
            self.action_trigger_deploy()

    def action_trigger_deploy(self) -> None:
        if self._machine.state != MachineState.DEPLOYABLE:
            self.notify("Nothing to deploy", severity="warning")
            return
        self._machine.send(EventType.TRIGGER_DEPLOY)

    def action_request_quit(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        if self._machine.in_flight is not None:
            self.notify(f"Waiting for {self._machine.in_flight} to finish...")
        self.run_worker(self._shutdown(), name="shutdown")

    async def _shutdown(self) -> None:
        self._watcher.stop()
        await self._machine.stop()
        self.exit()

    def _on_transition(self, record: TransitionRecord) -> None:
        table = self.query_one("#history", DataTable)
        row_key = table.add_row(
            datetime.now().strftime("%H:%M:%S"),
            Text.from_markup(format_transition(record, mode="rich")),
        )
        self._row_keys.append(row_key)
        if len(self._row_keys) > HISTORY_LIMIT:
            table.remove_row(self._row_keys.pop(0))
        table.move_cursor(row=table.row_count - 1)
        self._refresh_status()

    def _refresh_status(self) -> None:
        machine = self._machine
        state = machine.state
        context = machine.context

        if state is None:
            label = Text("starting", style="dim")
        else:
            label = Text(str(state), style=STATE_STYLES.get(state, "bold"))
        line = Text.assemble("state: ", label)
        if machine.in_flight is not None:
            line.append(f"  ({machine.in_flight} running)", style="dim")
        if context.dirty:
            line.append("  changes pending", style="yellow")
        self.query_one("#status-state", Static).update(line)

        self.query_one("#status-hashes", Static).update(
            f"deployed: {short_hash(context.deployed_hash)}   "
            f"pending: {short_hash(context.pending_hash)}"
        )

        error = self.query_one("#status-error", Static)
        header_status = self.query_one("#header-status", Static)
        if machine.halted:
            error.update(Text(f"deploy failed: {machine.failure}. Restart required.", style="bold red"))
            header_status.update(Text("halted", style="bold red"))
        else:
            error.update("")
            header_status.update(Text("stopping" if self._stopping else "watching", style="green"))

        deploy_btn = self.query_one("#deploy-btn", Button)
        deploy_btn.disabled = state != MachineState.DEPLOYABLE or machine.halted

    @staticmethod
    def _title_text() -> Text:
        return Text.assemble(
            ("STACK", ACCENT),
            ("WATCH > Status", "bold"),
        )


def run_status_panel(
    machine: OrchestrationMachine,
    watcher: FileChangeWatcher,
    root: str,
    output_dir: str,
) -> None:
    """Run the panel until the operator quits."""

    StatusPanelApp(machine, watcher, root, output_dir).run()
