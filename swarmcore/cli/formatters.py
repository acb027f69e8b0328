"""CLI formatters: color helpers, state indicators, table formatting."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def status_indicator(status: str) -> Text:
    """Map a session, subtask or health status to a colored indicator."""
    mapping = {
        "forming": Text("~ ", style="cyan"),
        "active": Text("> ", style="green"),
        "in_progress": Text("> ", style="green"),
        "completing": Text("> ", style="cyan"),
        "completed": Text("+ ", style="bold green"),
        "healthy": Text("+ ", style="green"),
        "pending": Text("- ", style="dim"),
        "dissolved": Text("x ", style="dim"),
        "degraded": Text("! ", style="yellow"),
        "error": Text("! ", style="red"),
        "critical": Text("! ", style="bold red"),
    }
    return mapping.get(status, Text("? ", style="dim"))


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def format_progress(percent: int, width: int = 20) -> str:
    """Render a fixed-width text progress bar, e.g. ``[#####-----] 50%``."""
    percent = max(0, min(100, int(percent)))
    filled = round(width * percent / 100)
    return f"[{'#' * filled}{'-' * (width - filled)}] {percent}%"


def truncate(text: Any, limit: int = 60) -> str:
    text = "" if text is None else str(text)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table
