"""Console output for the apistash CLI, rendered with rich."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from rich.box import HEAVY, ROUNDED, SIMPLE
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from apistash.domain.models.results import CallResult, CallSource

logger = logging.getLogger(__name__)

_SOURCE_STYLES = {
    CallSource.TRANSPORT: "green",
    CallSource.CACHE: "cyan",
    CallSource.FALLBACK: "yellow",
    CallSource.FAILED: "red",
}


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


class ConsoleDisplay:
    """Renders command output using the rich library."""

    def __init__(self, console: Optional[Console] = None):
        """Initializes the rich Console."""
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Get the Rich console instance for direct operations."""
        return self._console

    def display_output(self, output: Any, **kwargs: Any) -> None:
        """Displays a payload inside a panel.

        Args:
            output: Text, bytes or any value (rendered with str()).
            **kwargs: Additional arguments including:
                - title: Panel title (default: "Response")
        """
        title = kwargs.get("title", "Response")
        panel = Panel(
            Text(_as_text(output)),
            title=f"[bold white]{title}[/bold white]",
            title_align="left",
            border_style="blue",
            box=ROUNDED,
            padding=(0, 1),
        )
        self.console.print(panel)

    def display_result(self, result: CallResult, **kwargs: Any) -> None:
        """Displays an orchestrated call result and where it came from."""
        style = _SOURCE_STYLES.get(result.source, "white")
        title = f"Response [{style}]({result.source.value}, attempts={result.attempts})[/{style}]"
        self.display_output(result.value, title=title)

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message in a distinct style."""
        panel = Panel(
            Text(error_message, style="white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            box=HEAVY,
            padding=(0, 1),
        )
        self.console.print(panel)

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        panel = Panel(
            Text(info_message, style="white"),
            title="[bold blue]Info[/bold blue]",
            border_style="blue",
            box=SIMPLE,
            padding=(0, 1),
        )
        self.console.print(panel)

    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        logger.warning(f"Display warning: {warning_message}")
        panel = Panel(
            Text(warning_message, style="white"),
            title="[bold yellow]Warning[/bold yellow]",
            border_style="yellow",
            box=HEAVY,
            padding=(0, 1),
        )
        self.console.print(panel)

    def display_table(self, title: str, columns: Sequence[str], rows: List[Sequence[Any]]) -> None:
        """Displays rows in a rich table."""
        table = Table(title=title, box=ROUNDED, show_lines=False)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(_as_text(cell) for cell in row))
        self.console.print(table)

    def display_mapping(self, title: str, data: Dict[str, Any]) -> None:
        """Displays key/value pairs as a two-column table."""
        self.display_table(title, ["Key", "Value"], [[k, v] for k, v in data.items()])

    def display_batch(self, results: List[CallResult], urls: Sequence[str]) -> None:
        """One row per batch item: index, url, source, attempts, error."""
        rows = []
        for index, (url, result) in enumerate(zip(urls, results)):
            style = _SOURCE_STYLES.get(result.source, "white")
            rows.append([
                index,
                url,
                Text(result.source.value, style=style),
                result.attempts,
                str(result.error) if result.error else "",
            ])
        table = Table(title="Batch results", box=ROUNDED)
        for column in ("#", "URL", "Source", "Attempts", "Error"):
            table.add_column(column)
        for row in rows:
            table.add_row(*(cell if isinstance(cell, Text) else _as_text(cell) for cell in row))
        self.console.print(table)
