from __future__ import annotations

from typing import TYPE_CHECKING

from rich.table import Table

from haspbridge.hasp.broker import redact_broker_url
from haspbridge.hasp.topics import build_command_topic

if TYPE_CHECKING:
    from rich.console import Console

    from haspbridge.hasp.config import BridgeConfig, PathBinding
    from haspbridge.hasp.session import SessionStatus


class RichOutput:
    """Rich-based terminal output helpers for *haspbridge*."""

    def __init__(self, console: Console) -> None:
        self._con = console

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def config_summary(self, config: BridgeConfig, system_id: str | None = None) -> None:
        """Print broker / Signal K settings as a two-column table."""
        table = Table(title="Bridge")
        table.add_column("Setting", style="bold")
        table.add_column("Value")

        broker = config.mqtt_broker_address
        table.add_row(
            "MQTT broker", redact_broker_url(broker) if broker else "[red](not set)[/red]"
        )
        table.add_row("Verify TLS", "yes" if config.reject_unauthorized else "[yellow]no[/yellow]")
        table.add_row("Signal K", config.signalk_url)
        table.add_row("System id", system_id or config.self_id or "[dim](from server)[/dim]")
        table.add_row("Keepalive TTL", f"{config.keepalive_ttl}s")
        table.add_row("Nodes", str(len(config.nodes)))

        self._con.print(table)

    def bindings(self, bindings: list[PathBinding]) -> None:
        """Print one row per path binding with its command topic."""
        table = Table(title="Path bindings")
        table.add_column("Node", style="cyan")
        table.add_column("Path")
        table.add_column("Keyword", style="bold")
        table.add_column("Interval", justify="right")
        table.add_column("Topic", style="dim")

        for b in bindings:
            table.add_row(
                b.node_name,
                b.path,
                b.keyword,
                f"{b.interval:g}s",
                build_command_topic(b.node_name),
            )

        self._con.print(table)

    # ------------------------------------------------------------------
    # Session status
    # ------------------------------------------------------------------

    def status(self, status: SessionStatus) -> None:
        """Print a session status line, red when it reports an error."""
        if status.error:
            self._con.print(f"[red]{status.message}[/red]")
        else:
            self._con.print(f"[green]{status.message}[/green]")

    def error(self, message: str) -> None:
        """Print a bold red error line."""
        self._con.print(f"[bold red]Error:[/bold red] {message}")

    def info(self, message: str) -> None:
        """Print an informational message (plain)."""
        self._con.print(message)
