"""Output formatting utilities using Rich."""

import json
import sys
from typing import Any, Dict, Optional

from rich import box
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from serveflow.cli.output.styles import SERVEFLOW_THEME

console = Console(theme=SERVEFLOW_THEME)
error_console = Console(theme=SERVEFLOW_THEME, file=sys.stderr)


def mask(value: Optional[str], visible: int = 4) -> str:
    """
    Hide all but the last characters of a secret.

    Examples:
        >>> mask("sig_abcdefgh")
        '********efgh'
    """
    if not value:
        return "-"
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def format_status(status: str) -> str:
    """
    Colorize a check status.

    Examples:
        >>> format_status("valid")
        '[status.valid]valid[/status.valid]'
    """
    style = f"status.{status.lower()}"
    if status.lower() not in ("valid", "invalid", "missing"):
        return status
    return f"[{style}]{status}[/{style}]"


def format_json(data: Any, indent: int = 2) -> None:
    """
    Format and print data as JSON with syntax highlighting.

    Args:
        data: Data to format as JSON
        indent: JSON indentation level
    """
    json_str = json.dumps(data, indent=indent, default=str)
    syntax = Syntax(json_str, "json", theme="monokai", line_numbers=False)
    console.print(syntax)


def format_table(rows: Dict[str, Dict[str, Any]], columns: list, title: Optional[str] = None) -> None:
    """
    Print rows keyed by name as a table.

    Args:
        rows: Mapping of row name to cell values
        columns: Column names, the row name comes first
        title: Optional table title
    """
    table = Table(title=title, show_header=True, header_style="bold magenta", box=box.ROUNDED)
    for col in columns:
        table.add_column(col, style="key" if col == columns[0] else None)

    for name, cells in rows.items():
        values = [name]
        for col in columns[1:]:
            value = cells.get(col)
            if col.lower() == "status":
                values.append(format_status(str(value)))
            else:
                values.append("-" if value is None else str(value))
        table.add_row(*values)

    console.print(table)


def format_key_value(data: Dict[str, Any], title: Optional[str] = None) -> None:
    """
    Format and print key-value pairs.

    Args:
        data: Dictionary of key-value pairs
        title: Optional title
    """
    if title:
        console.print(f"\n[bold magenta]{title}[/bold magenta]")

    for key, value in data.items():
        if isinstance(value, dict):
            value_str = json.dumps(value, indent=2)
        elif value is None:
            value_str = "[dim]None[/dim]"
        else:
            value_str = str(value)

        if key.lower() == "status":
            value_str = format_status(value_str)

        console.print(f"  [key]{key}:[/key] {value_str}")


def print_success(message: str) -> None:
    """Print success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    """Print error message."""
    error_console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    """Print warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_info(message: str) -> None:
    """Print info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
