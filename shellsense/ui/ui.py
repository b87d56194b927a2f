# shellsense/ui/ui.py
from __future__ import annotations

import os
from typing import List

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.containers import Vertical
from textual.widgets import Static

from ..status import PublishedSuggestion, format_status, read_status, read_suggestions, sort_for_display

PRIORITY_STYLE = {"high": "bold red", "medium": "yellow", "low": "dim"}


def render_suggestions(items: List[PublishedSuggestion], limit: int = 20) -> str:
    """Markup for the details pane; items are re-sorted since file order is not trusted."""
    items = sort_for_display(items)[:limit]
    if not items:
        return "[dim]No suggestions yet.[/dim]"
    lines: List[str] = []
    for i, s in enumerate(items, 1):
        style = PRIORITY_STYLE.get(s.priority, "")
        lines.append(f"[b]{i}[/b] [{style}]{s.priority}[/{style}] {escape(s.title)}  [dim]{s.confidence:.0%}[/dim]")
        if s.description:
            lines.append(f"    {escape(s.description)}")
        if s.actionable_snippet:
            for line in s.actionable_snippet.splitlines():
                lines.append(f"    [cyan]> {escape(line)}[/cyan]")
        if s.command:
            lines.append(f"    [dim]from:[/dim] {escape(s.command)}")
        lines.append("")
    return "\n".join(lines)


class ShellSenseUI(App):
    """
    Minimal, non-interactive UI:
      • Title + status bar
      • Single scrolling 'details' pane with ranked suggestions
    """

    CSS = """
    Screen { layout: vertical; }
    #title   { height: 1; content-align: center middle; }
    #status  { height: 1; padding: 0 1; }
    #details { height: 1fr; padding: 0 1; overflow: auto; }
    """

    BINDINGS = [("q", "quit", "Quit")]

    def __init__(self, status_path: str, suggestions_path: str):
        super().__init__()
        self.status_path = os.path.expanduser(status_path)
        self.suggestions_path = os.path.expanduser(suggestions_path)
        self._last_mtime: float = 0.0
        self.title_bar: Static | None = None
        self.status: Static | None = None
        self.details: Static | None = None

    def compose(self) -> ComposeResult:
        self.title_bar = Static("shellsense suggestions", id="title")
        self.status = Static(f"following: {self.status_path}", id="status")
        self.details = Static(render_suggestions([]), id="details")
        yield Vertical(self.title_bar, self.status, self.details)

    def on_mount(self) -> None:
        # Poll the status files periodically and refresh if they changed
        self.set_interval(0.5, self._tick)

    def _mtime(self) -> float:
        try:
            return max(os.path.getmtime(p) for p in (self.status_path, self.suggestions_path) if os.path.exists(p))
        except ValueError:
            return 0.0  # neither file exists yet
        except OSError:
            return 0.0

    # ---------- file polling ----------
    def _tick(self) -> None:
        mtime = self._mtime()
        if mtime <= self._last_mtime:
            return
        self._last_mtime = mtime

        st = read_status(self.status_path)
        if self.status:
            last = escape(st.last_command) if st.last_command else "-"
            self.status.update(f"{format_status(st)}    |    high: {st.high_priority_count}    |    last: {last}")
        if self.details:
            self.details.update(render_suggestions(read_suggestions(self.suggestions_path)))


def run_ui(status_path: str, suggestions_path: str) -> None:
    app = ShellSenseUI(status_path=status_path, suggestions_path=suggestions_path)
    app.run()
