"""TUI Dashboard for deliver."""

import asyncio

from rich.text import Text
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerCancelled, WorkerFailed, WorkerState

from .config import Configuration
from .deploy import Deployment, DeploymentResult
from .errors import Interrupted
from .executor import Executor, HostStatus
from .modes import LOCAL, Dispatcher, ExecutionMode
from .runlog import EventLogger
from .strategies import Strategy

STATUS_ICONS = {
    HostStatus.PENDING: ("·", "dim"),
    HostStatus.CONNECTING: ("…", "yellow"),
    HostStatus.RUNNING: ("▶", "yellow"),
    HostStatus.SUCCESS: ("✔", "green"),
    HostStatus.FAILED: ("✘", "red"),
}

_FINISHED = (WorkerState.SUCCESS, WorkerState.ERROR, WorkerState.CANCELLED)


def _panel_id(source: str) -> str:
    return "".join(ch if ch.isalnum() else "-" for ch in source)


class HostPanel(Static):
    """A panel displaying output for a single host, or for local commands."""

    status: reactive[HostStatus] = reactive(HostStatus.PENDING)

    def __init__(self, source: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.source = source
        self.key = _panel_id(source)

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.key}")
        yield RichLog(
            id=f"log-{self.key}",
            highlight=True,
            markup=True,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{self.source}[/bold][/]"

    def watch_status(self, status: HostStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.key}", Label)
        header.update(self._get_header())

    def append_output(self, line: str) -> None:
        """Append a line of output to this panel."""
        log = self.query_one(f"#log-{self.key}", RichLog)
        if line.startswith("$ ") or line.startswith("==> "):
            log.write(Text(line, style="bold cyan"))
        elif line.startswith("STDERR:"):
            log.write(Text(line, style="red"))
        elif line.startswith("ERROR:"):
            log.write(Text(line, style="bold red"))
        else:
            log.write(Text(line))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    step: reactive[str] = reactive("")
    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)
    failed: reactive[bool] = reactive(False)

    def render(self) -> str:
        if self.running:
            status = f"Running: {self.step}" if self.step else "Starting..."
        else:
            status = "Failed" if self.failed else "Complete"
        return f"Steps: {self.completed}/{self.total} | {status} | Press 'q' to quit"


class SourceOutput(Message):
    """Message for host or local output."""

    def __init__(self, source: str, line: str) -> None:
        super().__init__()
        self.source = source
        self.line = line


class SourceStatusChange(Message):
    """Message for host status change."""

    def __init__(self, source: str, status: HostStatus) -> None:
        super().__init__()
        self.source = source
        self.status = status


class Dashboard(App):
    """Runs a deployment with one live panel per host."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    HostPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    HostPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    HostPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        config: Configuration,
        strategy: Strategy,
        run_log: EventLogger | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.strategy = strategy
        self.run_log = run_log
        self.panels: dict[str, HostPanel] = {}
        self.result: DeploymentResult | None = None
        self.interrupted = False
        self._worker: Worker | None = None
        self._cancel: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        # Duplicate hosts share a panel
        for source in [LOCAL] + [str(host) for host in self.config.hosts]:
            if source in self.panels:
                continue
            panel = HostPanel(source, id=f"panel-{_panel_id(source)}")
            self.panels[source] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the deployment when the app mounts."""
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.strategy.steps)
        self._worker = self.run_worker(self._run_deployment(), exclusive=True, thread=True)

    async def _run_deployment(self) -> None:
        """Run every step, routing output and status into the panels."""
        config = self.config
        if ExecutionMode.from_config(config) is ExecutionMode.COMPACT:
            # Panels replace the progress indicator, so output is always echoed
            config = Configuration(
                {**config.values, "mode": ExecutionMode.VERBOSE.value}, config.source_path
            )
        # The worker runs its own event loop in a thread
        self._loop = asyncio.get_running_loop()
        self._cancel = asyncio.Event()
        if self.interrupted:
            self._cancel.set()

        executor = Executor(
            config,
            on_output=self._on_output,
            on_status=self._on_status,
            cancel=self._cancel,
        )
        dispatcher = Dispatcher(config, executor, self.run_log, on_output=self._on_output)
        deployment = Deployment(config, self.strategy, dispatcher)
        try:
            self.result = await deployment.run()
        except Interrupted as e:
            self.interrupted = True
            self._on_output(LOCAL, f"ERROR: {e}")

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker != self._worker or event.state not in _FINISHED:
            return
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.running = False
        if self.result is not None:
            status_bar.completed = len(self.result.completed)
            status_bar.failed = not self.result.ok
        else:
            status_bar.failed = True

    def _on_output(self, source: str, line: str) -> None:
        """Handle output - posts message to main thread."""
        self.post_message(SourceOutput(source, line))

    def _on_status(self, source: str, status: HostStatus) -> None:
        """Handle status change - posts message to main thread."""
        self.post_message(SourceStatusChange(source, status))

    def on_source_output(self, message: SourceOutput) -> None:
        """Handle SourceOutput message in main thread."""
        if message.line.startswith("==> "):
            status_bar = self.query_one("#status-bar", StatusBar)
            if status_bar.step:
                status_bar.completed += 1
            status_bar.step = message.line[4:]
        if message.source in self.panels:
            self.panels[message.source].append_output(message.line)

    def on_source_status_change(self, message: SourceStatusChange) -> None:
        """Handle SourceStatusChange message in main thread."""
        if message.source in self.panels:
            self.panels[message.source].status = message.status

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self.interrupted = True
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._cancel.set)
            try:
                await self._worker.wait()
            except (WorkerCancelled, WorkerFailed):
                pass
        self.exit()
