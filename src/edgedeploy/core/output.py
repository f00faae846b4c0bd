"""Output formatting utilities using Rich."""

import json
from enum import Enum
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table
from tabulate import tabulate

error_console = Console(stderr=True)


class OutputFormat(str, Enum):
    """Supported output formats."""

    TABLE = "table"
    JSON = "json"
    YAML = "yaml"
    RAW = "raw"


STATUS_STYLES = {
    "success": "green",
    "completed": "green",
    "running": "blue",
    "pending": "dim",
    "failed": "red",
    "rolling_back": "yellow",
    "rolled_back": "yellow",
    "partially_rolled_back": "red",
}


class OutputFormatter:
    """Handles output formatting for CLI commands."""

    def __init__(
        self,
        format: OutputFormat = OutputFormat.TABLE,
        color: bool = True,
        quiet: bool = False,
    ):
        self.format = format
        self.color = color
        self.quiet = quiet
        self._console = Console(force_terminal=color, no_color=not color)

    @property
    def console(self) -> Console:
        return self._console

    def print(self, message: str, style: str | None = None) -> None:
        """Print a message to stdout."""
        if self.quiet:
            return
        self._console.print(message, style=style)

    def print_error(self, message: str) -> None:
        """Print an error message to stderr."""
        error_console.print(f"[red]Error:[/red] {message}")

    def print_warning(self, message: str) -> None:
        """Print a warning message."""
        if self.quiet:
            return
        self._console.print(f"[yellow]Warning:[/yellow] {message}")

    def print_success(self, message: str) -> None:
        """Print a success message."""
        if self.quiet:
            return
        self._console.print(f"[green]✓[/green] {message}")

    def print_info(self, message: str) -> None:
        """Print an info message."""
        if self.quiet:
            return
        self._console.print(f"[blue]ℹ[/blue] {message}")

    def print_data(
        self,
        data: list[dict[str, Any]] | dict[str, Any],
        headers: list[str] | None = None,
        title: str | None = None,
    ) -> None:
        """Print data in the configured format."""
        if self.format == OutputFormat.JSON:
            self._print_json(data)
        elif self.format == OutputFormat.YAML:
            self._print_yaml(data)
        elif self.format == OutputFormat.RAW:
            self._print_raw(data, headers)
        else:
            self._print_table(data, headers, title)

    def _print_json(self, data: Any) -> None:
        """Print data as JSON."""
        self._console.print_json(json.dumps(data, default=str))

    def _print_yaml(self, data: Any) -> None:
        """Print data as YAML."""
        self._console.print(
            yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False),
            markup=False,
        )

    def _print_raw(self, data: Any, headers: list[str] | None = None) -> None:
        """Print data as plain text without markup."""
        if isinstance(data, dict):
            rows = [[key, value] for key, value in data.items()]
            self._console.print(tabulate(rows, tablefmt="plain"), markup=False)
        elif isinstance(data, list) and data:
            headers = headers or list(data[0].keys())
            rows = [[row.get(h, "") for h in headers] for row in data]
            self._console.print(tabulate(rows, headers=headers, tablefmt="plain"), markup=False)

    def _print_table(
        self,
        data: list[dict[str, Any]] | dict[str, Any],
        headers: list[str] | None = None,
        title: str | None = None,
    ) -> None:
        """Print data as a formatted table."""
        if isinstance(data, dict):
            table = Table(title=title, show_header=True, header_style="bold cyan")
            table.add_column("Field", style="dim")
            table.add_column("Value")
            for key, value in data.items():
                table.add_row(str(key), format_status(value) if key == "status" else str(value))
            self._console.print(table)
        elif isinstance(data, list) and len(data) > 0:
            if headers is None:
                headers = list(data[0].keys())

            table = Table(title=title, show_header=True, header_style="bold cyan")
            for header in headers:
                table.add_column(header)

            for row in data:
                table.add_row(
                    *[
                        format_status(row.get(h, "")) if h == "status" else str(row.get(h, ""))
                        for h in headers
                    ]
                )

            self._console.print(table)
        else:
            self._console.print("[dim]No data to display[/dim]")


def format_status(status: Any) -> str:
    """Wrap a status value in its Rich style."""
    value = str(getattr(status, "value", status))
    style = STATUS_STYLES.get(value)
    if style:
        return f"[{style}]{value}[/{style}]"
    return value


def format_duration(seconds: float) -> str:
    """Format seconds to human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    elif seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    return f"{seconds / 86400:.1f}d"
