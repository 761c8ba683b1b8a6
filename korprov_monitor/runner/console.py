"""
Terminal display adapter for the booking monitor.

Prints one line per accepted status snapshot, QR update and connection
change. Labels are the Swedish texts shown to end users.
"""

from __future__ import annotations

from typing import TextIO

from rich.console import Console
from rich.text import Text

from korprov_monitor.core.models import ConnectionState, JobStatusSnapshot, QrFrame

STATUS_LABELS: dict[str, str] = {
    "idle": "Inte aktiv",
    "initializing": "Startar webbläsare...",
    "waiting_bankid": "Väntar på BankID-inloggning...",
    "bankid_waiting": "Väntar på BankID-inloggning...",
    "qr_waiting": "Väntar på BankID-inloggning...",
    "searching": "Söker efter lediga tider...",
    "booking": "Tid hittad - bokar nu...",
    "completed": "Bokning klar!",
    "error": "Fel uppstod",
    "failed": "Fel uppstod",
    "cancelled": "Avbruten",
    "fallback": "Fallback-läge",
}

STATUS_STYLES: dict[str, str] = {
    "completed": "bold green",
    "booking": "green",
    "error": "red",
    "failed": "red",
    "cancelled": "yellow",
    "fallback": "yellow",
}

CONNECTION_LABELS: dict[ConnectionState, str] = {
    ConnectionState.CHECKING: "Kontrollerar...",
    ConnectionState.CONNECTED: "Ansluten",
    ConnectionState.DEGRADED: "Försämrad",
    ConnectionState.DISCONNECTED: "Frånkopplad",
    ConnectionState.FALLBACK: "Fallback-läge",
}

CONNECTION_STYLES: dict[ConnectionState, str] = {
    ConnectionState.CHECKING: "dim",
    ConnectionState.CONNECTED: "green",
    ConnectionState.DEGRADED: "yellow",
    ConnectionState.DISCONNECTED: "red",
    ConnectionState.FALLBACK: "yellow",
}


def status_label(snapshot: JobStatusSnapshot) -> str:
    for key in (snapshot.stage, snapshot.status):
        if key and key in STATUS_LABELS:
            return STATUS_LABELS[key]
    return snapshot.status


def make_console(stream: TextIO | None = None) -> Console:
    # Text objects are passed straight through, so worker messages containing
    # brackets are never parsed as markup.
    return Console(file=stream, highlight=False, soft_wrap=True)


class ConsoleDisplay:
    """DisplayAdapter that writes to a rich Console (stdout by default)."""

    def __init__(self, stream: TextIO | None = None, show_qr_payload: bool = False):
        self.console = make_console(stream)
        self.show_qr_payload = show_qr_payload
        self.qr_updates = 0

    def on_status(self, snapshot: JobStatusSnapshot) -> None:
        line = Text(f"[{snapshot.effective_progress:3.0f}%] ", style="dim")
        line.append(status_label(snapshot), style=STATUS_STYLES.get(snapshot.status, "bold"))
        if snapshot.message:
            line.append(f" - {snapshot.message}")
        if snapshot.cycle_count is not None:
            line.append(f" (cykel {snapshot.cycle_count})", style="dim")
        if snapshot.slots_found:
            line.append(f" [{snapshot.slots_found} lediga tider]", style="cyan")
        if snapshot.error_message:
            line.append(f" FEL: {snapshot.error_message}", style="red")
        self.console.print(line)

    def on_qr(self, frame: QrFrame) -> None:
        self.qr_updates += 1
        line = Text(f"[QR #{self.qr_updates}] ", style="magenta")
        line.append(f"Ny BankID QR-kod ({frame.source})")
        if frame.is_url or self.show_qr_payload:
            line.append(f": {frame.payload}", style="dim")
        self.console.print(line)

    def on_connection_change(self, state: ConnectionState) -> None:
        line = Text("[VPS] ", style="bold")
        line.append(CONNECTION_LABELS.get(state, state.value), style=CONNECTION_STYLES.get(state, ""))
        self.console.print(line)
