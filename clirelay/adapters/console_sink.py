"""Terminal event sink for ``clirelay run``.

Streams response increments to stdout as they arrive and renders
session/error/completion notices with rich.
"""
from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown as RichMarkdown
from rich.table import Table
from rich.text import Text

from clirelay.adapters.events import (
    RelayEvent,
    ResponseIncrement,
    SessionCreated,
    TurnComplete,
    TurnError,
)


class ConsoleSink:
    """Prints turn events; errors and notices go to stderr."""

    def __init__(
        self,
        console: Console | None = None,
        err_console: Console | None = None,
        *,
        markdown: bool = False,
    ) -> None:
        self._console = console or Console(highlight=False)
        self._err = err_console or Console(stderr=True, highlight=False)
        self._markdown = markdown
        self._collected: list[str] = []
        self.session_id: str | None = None
        self.exit_code: int | None = None
        self.errors: list[str] = []

    def __call__(self, event: RelayEvent) -> None:
        if isinstance(event, SessionCreated):
            self.session_id = event.session_id
            self._err.print(Text(f"session {event.session_id}", style="dim"))
        elif isinstance(event, ResponseIncrement):
            if self._markdown:
                self._collected.append(event.content)
            else:
                self._console.out(event.content, end="" if not event.is_final else "\n")
        elif isinstance(event, TurnError):
            self.errors.append(event.message)
            self._err.print(Text(event.message.rstrip(), style="bold red"))
        elif isinstance(event, TurnComplete):
            self.exit_code = event.exit_code
            if event.session_id:
                self.session_id = event.session_id
            if self._markdown and self._collected:
                self._console.print(RichMarkdown("".join(self._collected)))
                self._collected.clear()
            style = "green" if event.exit_code == 0 else "red"
            self._err.print(Text(f"exit {event.exit_code}", style=f"dim {style}"))


def render_provider_table(catalog: list[dict]) -> Table:
    """Availability and model catalog for `clirelay providers`."""
    table = Table(title="Agent CLIs")
    table.add_column("Provider", style="bold")
    table.add_column("Command")
    table.add_column("Available")
    table.add_column("Protocol")
    table.add_column("Timeout", justify="right")
    table.add_column("Default model")
    table.add_column("Models")
    for entry in catalog:
        table.add_row(
            f"{entry['display_name']} ({entry['provider']})",
            entry["command"],
            Text("yes", style="green") if entry["available"] else Text("no", style="red"),
            entry["protocol"],
            f"{entry['timeout_seconds']:g}s",
            entry.get("default_model") or "-",
            ", ".join(m["value"] for m in entry.get("models", [])) or "-",
        )
    return table
