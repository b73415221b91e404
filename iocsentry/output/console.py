"""
IOCSentry Console Output Module

Rich console formatting for the CLI interface.
"""

from typing import Any

from rich.box import ROUNDED
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from iocsentry import __version__


# =============================================================================
# Constants
# =============================================================================

VERDICT_STYLES = {
    "malicious": "red bold",
    "suspicious": "yellow",
    "harmless": "green",
    "undetected": "cyan",
    "unknown": "dim",
}

STATUS_STYLES = {
    "ok": "green",
    "limited": "yellow",
    "invalid": "red",
}


# =============================================================================
# Console Display Class
# =============================================================================


class IOCSentryConsole:
    """Rich console interface for the IOCSentry CLI."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def print_banner(self) -> None:
        title = Text()
        title.append("IOCSentry", style="bold cyan")
        title.append(f" v{__version__}", style="bright_white")
        title.append(" | ", style="dim")
        title.append("VirusTotal indicator lookups", style="bright_blue")
        self.console.print(Panel(title, border_style="bright_blue", box=ROUNDED))

    def print_success(self, text: str) -> None:
        """Print a success message."""
        self.console.print(f"  [green]✓[/green] {text}")

    def print_warning(self, text: str) -> None:
        """Print a warning message."""
        self.console.print(f"  [yellow]⚠[/yellow] {text}")

    def print_error(self, text: str) -> None:
        """Print an error message."""
        self.console.print(f"  [red]✗[/red] {text}")

    def print_info(self, text: str) -> None:
        """Print an info message."""
        self.console.print(f"  [cyan]ℹ[/cyan] {text}")

    # =========================================================================
    # Lookup Results
    # =========================================================================

    def print_submission(self, result: dict[str, Any]) -> None:
        """Print the items, errors and totals of a submission."""
        items = result.get("items", [])

        if items:
            table = Table(
                title="Lookup Results",
                box=ROUNDED,
                border_style="bright_blue",
                header_style="bold bright_white",
                title_style="bold cyan",
            )
            table.add_column("#", style="bright_yellow", justify="right", width=4)
            table.add_column("Indicator", style="bright_white", overflow="fold", min_width=30)
            table.add_column("Type", style="cyan", width=8)
            table.add_column("Verdict", width=12)
            table.add_column("Source", style="dim", width=9)
            table.add_column("Report", width=10)

            for i, item in enumerate(items, 1):
                verdict = item["verdict"]
                table.add_row(
                    str(i),
                    item["identity"],
                    item["type"],
                    f"[{VERDICT_STYLES.get(verdict, 'white')}]{verdict}[/]",
                    item.get("source", ""),
                    f"[link={item['vt_link']}]VirusTotal[/link]" if item.get("vt_link") else "",
                )
            self.console.print(table)

        for error in result.get("errors", []):
            self.print_error(error)

        self.console.print()
        self.console.print(
            f"[bold]Total:[/bold] {result['total']}  "
            f"[bold green]Created:[/bold green] {result['created']}  "
            f"[bold cyan]From cache:[/bold cyan] {result['from_cache']}  "
            f"[bold red]Errors:[/bold red] {len(result.get('errors', []))}"
        )

    def print_records(self, page: dict[str, Any]) -> None:
        """Print a page of stored records."""
        records = page.get("items", [])
        if not records:
            self.print_info("No stored records match")
            return

        table = Table(
            title=f"Stored Records ({page['total']} total)",
            box=ROUNDED,
            border_style="bright_blue",
            header_style="bold bright_white",
            title_style="bold cyan",
        )
        table.add_column("Indicator", style="bright_white", overflow="fold", min_width=30)
        table.add_column("Type", style="cyan", width=8)
        table.add_column("Verdict", width=12)
        table.add_column("Detections", justify="right", width=10)
        table.add_column("Label", style="dim")
        table.add_column("Fetched", style="dim", width=20)

        for record in records:
            verdict = record["verdict"]
            table.add_row(
                record["indicator"],
                record["type"],
                f"[{VERDICT_STYLES.get(verdict, 'white')}]{verdict}[/]",
                record["detection_ratio"],
                record.get("label") or "",
                record["fetched_at"][:19].replace("T", " "),
            )
        self.console.print(table)

    def print_keys(self, keys: list[dict[str, Any]]) -> None:
        """Print the key pool snapshot."""
        if not keys:
            self.print_warning("No VirusTotal API keys configured (set IOCSENTRY_VIRUSTOTAL_API_KEYS)")
            return

        table = Table(title="API Key Pool", box=ROUNDED, border_style="dim", header_style="bold bright_white")
        table.add_column("Key", style="bright_white")
        table.add_column("Status")
        table.add_column("Remaining", justify="right")
        table.add_column("Requests", justify="right")
        table.add_column("Last Error", style="dim")

        for key in keys:
            status = key["status"]
            table.add_row(
                key["id"],
                f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]",
                str(key["remaining_quota"]),
                str(key["requests_made"]),
                key.get("last_error") or "",
            )
        self.console.print(table)


# =============================================================================
# Singleton Instance
# =============================================================================

_console: IOCSentryConsole | None = None


def get_console() -> IOCSentryConsole:
    """Get the singleton console instance."""
    global _console
    if _console is None:
        _console = IOCSentryConsole()
    return _console
