"""TUI Dashboard for tailrun."""

import math

from rich.text import Text
from textual.app import App, ComposeResult
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerState

from .config import Config
from .executor import Dispatcher, PeerStatus
from .inventory import Peer
from .remote import Transport


STATUS_ICONS = {
    PeerStatus.PENDING: ("○", "dim"),
    PeerStatus.CONNECTING: ("◌", "yellow"),
    PeerStatus.RUNNING: ("◐", "yellow"),
    PeerStatus.SUCCESS: ("●", "green"),
    PeerStatus.FAILED: ("✗", "red"),
}

MAX_COLUMNS = 3


def grid_columns(count: int) -> int:
    """Roughly square grid, capped so panels stay readable."""
    return max(1, min(MAX_COLUMNS, math.ceil(math.sqrt(count))))


class PeerPanel(Static):
    """Output of one peer, headed by its status, name, target and tags."""

    status: reactive[PeerStatus] = reactive(PeerStatus.PENDING)

    def __init__(self, peer: Peer, user: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.peer = peer
        self.user = user

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), classes="peer-header")
        yield RichLog(highlight=True, markup=False, wrap=True, auto_scroll=True)

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        address = self.peer.addresses[0] if self.peer.addresses else "no address"
        header = (
            f"[{color}]{icon}[/] [bold]{self.peer.hostname}[/bold] "
            f"[{color}]{self.user}@{address}[/]"
        )
        if self.peer.tags:
            header += f" [dim]{' '.join(sorted(self.peer.tags))}[/dim]"
        return header

    def watch_status(self, status: PeerStatus) -> None:
        if not self.is_mounted:
            return
        self.query_one(".peer-header", Label).update(self._get_header())
        self.set_class(status == PeerStatus.FAILED, "failed")

    def append_output(self, line: str) -> None:
        """Append a line of output to this panel."""
        if not self.is_mounted:
            return
        # Text, not markup: remote output may contain square brackets
        log = self.query_one(RichLog)
        if line.startswith("$ "):
            log.write(Text(line, style="bold cyan"))
        elif line.startswith("ERROR:"):
            log.write(Text(line, style="bold red"))
        else:
            log.write(Text(line))


class StatusBar(Static):
    """Bottom status bar with per-outcome counts."""

    succeeded: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    state: reactive[str] = reactive("Running...")

    def render(self) -> str:
        done = self.succeeded + self.failed
        return (
            f"{done}/{self.total} peers | {self.succeeded} ok, {self.failed} failed"
            f" | {self.state} | 'f' failed only, 'q' quit"
        )


class Dashboard(App):
    """Live view of one dispatch round."""

    TITLE = "tailrun"

    CSS = """
    Screen {
        layout: grid;
        grid-gutter: 1;
    }

    PeerPanel {
        border: round $primary;
        height: 100%;
        min-height: 8;
    }

    PeerPanel.failed {
        border: round $error;
    }

    PeerPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    PeerPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    #empty {
        padding: 1 2;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("f", "toggle_failed", "Failed only"),
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    show_failed_only: reactive[bool] = reactive(False)

    def __init__(
        self,
        config: Config,
        transport: Transport,
        peers: list[Peer],
        enable_logging: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.transport = transport
        self.peers = peers
        self.enable_logging = enable_logging
        # Keyed by id(): hostnames and even whole records may repeat
        self.panels: dict[int, PeerPanel] = {}
        self.dispatcher: Dispatcher | None = None
        self.finished = False
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        if not self.peers:
            yield Label(
                f"No online peers matched tag filter {self.config.tag!r}", id="empty"
            )

        for index, peer in enumerate(self.peers):
            panel = PeerPanel(peer, self.config.user, id=f"panel-{index}")
            self.panels[id(peer)] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the dispatch round on the app's event loop."""
        self.sub_title = f"{self.config.user}: {self.config.command}"
        self.screen.styles.grid_size_columns = grid_columns(len(self.peers))
        self.query_one(StatusBar).total = len(self.peers)

        self.dispatcher = Dispatcher(
            self.config,
            self.transport,
            on_output=self._on_output,
            on_status=self._on_status,
            enable_logging=self.enable_logging,
        )
        self._worker = self.run_worker(
            self.dispatcher.run_all(self.peers), exclusive=True
        )

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.worker is not self._worker:
            return
        status_bar = self.query_one(StatusBar)
        if event.state == WorkerState.SUCCESS:
            self.finished = True
            status_bar.state = "Complete"
        elif event.state in (WorkerState.CANCELLED, WorkerState.ERROR):
            status_bar.state = "Interrupted"

    def _on_output(self, peer: Peer, line: str) -> None:
        panel = self.panels.get(id(peer))
        if panel:
            panel.append_output(line)

    def _on_status(self, peer: Peer, status: PeerStatus) -> None:
        panel = self.panels.get(id(peer))
        if panel:
            panel.status = status
            panel.display = self._visible(panel)

        status_bar = self.query_one(StatusBar)
        if status == PeerStatus.SUCCESS:
            status_bar.succeeded += 1
        elif status == PeerStatus.FAILED:
            status_bar.failed += 1

    def _visible(self, panel: PeerPanel) -> bool:
        return not self.show_failed_only or panel.status == PeerStatus.FAILED

    def watch_show_failed_only(self, show_failed_only: bool) -> None:
        for panel in self.panels.values():
            panel.display = self._visible(panel)

    def action_toggle_failed(self) -> None:
        self.show_failed_only = not self.show_failed_only

    async def action_quit(self) -> None:
        """Quit, abandoning any commands still in flight."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
