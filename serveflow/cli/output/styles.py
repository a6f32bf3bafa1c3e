"""Rich styles and themes for CLI output."""

from rich.theme import Theme

# Custom theme for the serveflow CLI
SERVEFLOW_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "key": "cyan",
    "masked": "dim",
    "region": "magenta",
    "status.valid": "green",
    "status.invalid": "red",
    "status.missing": "yellow",
})
