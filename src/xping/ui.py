"""
Rich-based output for xping.

Everything the user sees goes through here: the connection banner,
one line per probe, the statistics block and fatal diagnostics.
"""

import sys
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.status import Status

from .errors import XpingError
from .models import ConnectionDescriptor, FragmentInfo, PingStatistics, Provenance
from .prober import PingReporter, ProbeResult
from .utils import clock


console = Console()


# Status icons - use ASCII fallbacks on Windows to avoid encoding issues
class Icons:
    """Icons for status indicators (ASCII on Windows, Unicode elsewhere)."""
    if sys.platform == "win32":
        SUCCESS = "[OK]"
        ERROR = "[X]"
        WARNING = "[!]"
        INFO = ">"
    else:
        SUCCESS = "\u2713"  # ✓
        ERROR = "\u2717"    # ✗
        WARNING = "\u26a0"  # ⚠
        INFO = "\u2192"     # →


class Colors:
    """Consistent color scheme."""
    PRIMARY = "cyan"
    SUCCESS = "green"
    ERROR = "red"
    WARNING = "yellow"
    MUTED = "dim"
    ACCENT = "bold cyan"


def status_line(
    message: str,
    status: str = "info",
    indent: int = 0,
    out: Optional[Console] = None,
) -> None:
    """
    Print a status line with appropriate icon and color.

    Args:
        message: Status message (Rich markup allowed)
        status: One of 'success', 'error', 'warning', 'info'
        indent: Number of spaces to indent
        out: Console to print to (module console by default)
    """
    icons = {
        "success": (Icons.SUCCESS, Colors.SUCCESS),
        "error": (Icons.ERROR, Colors.ERROR),
        "warning": (Icons.WARNING, Colors.WARNING),
        "info": (Icons.INFO, Colors.PRIMARY),
    }

    icon, color = icons.get(status, (Icons.INFO, Colors.PRIMARY))
    prefix = " " * indent
    (out or console).print(f"{prefix}[{color}]{icon}[/{color}] {message}", highlight=False)


def success(message: str, out: Optional[Console] = None) -> None:
    """Print a success status line."""
    status_line(message, "success", out=out)


def error(message: str, out: Optional[Console] = None) -> None:
    """Print an error status line."""
    status_line(message, "error", out=out)


def warning(message: str, out: Optional[Console] = None) -> None:
    """Print a warning status line."""
    status_line(message, "warning", out=out)


def show_fatal(exc: XpingError, out: Optional[Console] = None) -> None:
    """Print a fatal error and its diagnostic lines."""
    out = out or console
    error(f"[{Colors.ERROR}]{escape(exc.message)}[/{Colors.ERROR}]", out=out)
    for line in exc.details:
        out.print(f"   [{Colors.ERROR}]{escape(line)}[/{Colors.ERROR}]", highlight=False)


def show_xray_error(line: str, out: Optional[Console] = None) -> None:
    """Echo a fatal xray stderr line the moment it arrives."""
    error(f"[{Colors.ERROR}]Xray error: {escape(line)}[/{Colors.ERROR}]", out=out)


def show_connection(
    descriptor: ConnectionDescriptor,
    provenance: Provenance,
    fragment: FragmentInfo,
    out: Optional[Console] = None,
) -> None:
    """Print the target summary shown before the first probe."""
    out = out or console
    out.print(
        f"[bold {Colors.PRIMARY}]{escape(descriptor.endpoint)}[/bold {Colors.PRIMARY}]"
        f"[{Colors.MUTED}] | [/{Colors.MUTED}]{escape(descriptor.label)}",
        highlight=False,
    )

    if provenance == Provenance.DIRECT_URL:
        details = (
            f"[{Colors.MUTED}] | SNI: [/{Colors.MUTED}][yellow]{escape(descriptor.sni)}[/yellow]"
            f"[{Colors.MUTED}] | Path: [/{Colors.MUTED}][yellow]{escape(descriptor.path)}[/yellow]"
        )
    else:
        details = (
            f"[{Colors.MUTED}] | Network: [/{Colors.MUTED}][yellow]{escape(descriptor.network)}[/yellow]"
            f"[{Colors.MUTED}] | Protocol: [/{Colors.MUTED}][yellow]{escape(descriptor.protocol)}[/yellow]"
        )
    out.print(
        f"[bold {Colors.PRIMARY}]Security: {escape(descriptor.security)}[/bold {Colors.PRIMARY}]{details}",
        highlight=False,
    )

    if fragment.enabled:
        out.print(
            f"[bold {Colors.PRIMARY}]Fragment:[/bold {Colors.PRIMARY}] "
            f"[{Colors.MUTED}]packets: [/{Colors.MUTED}][yellow]{escape(fragment.packets or '')}[/yellow]"
            f"[{Colors.MUTED}], length: [/{Colors.MUTED}][yellow]{escape(fragment.length or '')}[/yellow]"
            f"[{Colors.MUTED}], interval: [/{Colors.MUTED}][yellow]{escape(fragment.interval or '')}[/yellow]",
            highlight=False,
        )
    else:
        out.print(
            f"[bold {Colors.PRIMARY}]Fragment:[/bold {Colors.PRIMARY}] [{Colors.MUTED}]disabled[/{Colors.MUTED}]",
            highlight=False,
        )
    out.print()


def show_statistics(stats: PingStatistics, out: Optional[Console] = None) -> None:
    """Print the end-of-run summary."""
    out = out or console
    out.print()
    out.print("[blue]=== Statistics ===[/blue]", highlight=False)
    out.print(
        f"Sent: [cyan]{stats.attempted}[/cyan]"
        f" | Received: [green]{stats.succeeded}[/green]"
        f" | Lost: [red]{stats.lost}[/red]"
        f" [yellow]({stats.loss_percent}% loss)[/yellow]",
        highlight=False,
    )
    if stats.succeeded > 0:
        out.print(
            f"Min: [green]{int(stats.min_ms)}ms[/green]"
            f" | Max: [red]{stats.max_ms}ms[/red]"
            f" | Avg: [yellow]{stats.average_ms}ms[/yellow]",
            highlight=False,
        )
    out.print("[magenta]Completed![/magenta]", highlight=False)


class ConsoleReporter(PingReporter):
    """Prints one timestamped line per probe, with a spinner while it runs."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        target_url: str,
        out: Optional[Console] = None,
    ):
        self.descriptor = descriptor
        self.target_url = target_url
        self.out = out or console
        self._status: Optional[Status] = None

    def probe_started(self, sequence: int) -> None:
        if not self.out.is_terminal:
            return
        self._status = self.out.status(
            f"[{Colors.MUTED}]\\[{clock()}] Testing connection to {escape(self.target_url)}...[/{Colors.MUTED}]"
        )
        self._status.start()

    def _clear_status(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def probe_finished(self, sequence: int, result: ProbeResult) -> None:
        self._clear_status()
        stamp = f"[{Colors.MUTED}]\\[{clock()}][/{Colors.MUTED}]"
        if result.ok:
            self.out.print(
                f"{stamp} [{Colors.SUCCESS}]{Icons.SUCCESS} {escape(self.descriptor.endpoint)}"
                f" ({escape(self.descriptor.label)}) responded in [/{Colors.SUCCESS}]"
                f"[bold white]{result.latency_ms}ms[/bold white]",
                highlight=False,
            )
        else:
            reason = result.reason.text if result.reason else "Network error"
            self.out.print(
                f"{stamp} [{Colors.ERROR}]{Icons.ERROR} {reason}[/{Colors.ERROR}]",
                highlight=False,
            )

    def interrupted(self) -> None:
        """Clear any pending probe line and mark the interrupt."""
        self._clear_status()
        self.out.print(f"\n[{Colors.WARNING}]^C[/{Colors.WARNING}]", highlight=False)
