"""CLI entry-point: Click command group and dispatch."""

from __future__ import annotations

import dataclasses
import logging

import click

from haspbridge.errors import ConfigurationError, HaspBridgeError
from haspbridge.output.formatter import OutputFormatter

# ---------------------------------------------------------------------------
# Application context (stored in ctx.obj)
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class AppContext:
    """Shared state passed to every Click command via ``@click.pass_obj``."""

    config_path: str | None
    output_format: str | None
    quiet: bool
    verbose: bool
    command: str | None = None
    _formatter: OutputFormatter | None = dataclasses.field(default=None, repr=False)

    @property
    def formatter(self) -> OutputFormatter:
        if self._formatter is None:
            force = "quiet" if self.quiet else self.output_format
            self._formatter = OutputFormatter(force_format=force)
        return self._formatter


def configure_logging(verbose: bool) -> None:
    """Route log records to stderr through Rich; DEBUG with ``--verbose``."""
    from rich.console import Console
    from rich.logging import RichHandler

    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Library chatter stays at WARNING even in verbose mode.
    for name in ("websockets", "aiomqtt", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Root Click group
# ---------------------------------------------------------------------------


# Most recent AppContext; Click has popped its context stack by the time an
# exception reaches main().
_current_app: AppContext | None = None


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="HASPBRIDGE_CONFIG_FILE",
    help="Bridge config JSON path (default: ~/.config/haspbridge/bridge.json)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["rich", "json", "quiet"]),
    default=None,
    help="Output format (default: HASPBRIDGE_OUTPUT_FORMAT, else auto-detect)",
)
@click.option("--quiet", is_flag=True, default=False, help="Suppress normal output")
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    output_format: str | None,
    quiet: bool,
    verbose: bool,
) -> None:
    """Bridge Signal K telemetry to openHASP displays over MQTT."""
    from haspbridge.models.config import AppSettings

    global _current_app
    if output_format is None:
        output_format = AppSettings().output_format
    ctx.ensure_object(dict)
    ctx.obj = _current_app = AppContext(
        config_path=config_path,
        output_format=output_format,
        quiet=quiet,
        verbose=verbose,
    )


# ---------------------------------------------------------------------------
# Register subcommand groups (lazy imports keep startup fast)
# ---------------------------------------------------------------------------


def _register_commands() -> None:
    """Import and attach all subcommands to the root CLI."""
    from haspbridge.cli.config import config_group
    from haspbridge.cli.run import run_cmd

    cli.add_command(config_group)
    cli.add_command(run_cmd)


_register_commands()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to the appropriate command handler."""
    global _current_app
    _current_app = None
    try:
        cli(args=argv, standalone_mode=False)
    except click.exceptions.Exit as exc:
        raise SystemExit(exc.exit_code) from None
    except click.exceptions.Abort:
        raise SystemExit(1) from None
    except click.exceptions.ClickException as exc:
        exc.show()
        raise SystemExit(exc.exit_code) from None
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    except SystemExit:
        raise
    except Exception as exc:
        app_ctx = _extract_app_ctx()
        formatter = app_ctx.formatter if app_ctx else OutputFormatter()
        cmd_name = _get_command_name(app_ctx)

        if _handle_known_error(exc, formatter, cmd_name):
            raise SystemExit(1) from exc

        formatter.output_error(
            code=type(exc).__name__,
            message=str(exc),
            command=cmd_name,
        )
        raise SystemExit(1) from exc


# ---------------------------------------------------------------------------
# Helpers for error handling
# ---------------------------------------------------------------------------


def _extract_app_ctx() -> AppContext | None:
    """Find the AppContext of the failed invocation."""
    ctx = click.get_current_context(silent=True)
    while ctx is not None:
        if isinstance(ctx.obj, AppContext):
            return ctx.obj
        ctx = ctx.parent
    return _current_app


def command_name(ctx: click.Context) -> str:
    """Dotted subcommand path of *ctx* without the program name (``config.show``)."""
    parts: list[str] = []
    while ctx.parent is not None:
        if ctx.info_name:
            parts.append(ctx.info_name)
        ctx = ctx.parent
    return ".".join(reversed(parts))


def _get_command_name(app_ctx: AppContext | None) -> str:
    """Name of the command that failed, or ``"unknown"`` before dispatch."""
    ctx = click.get_current_context(silent=True)
    if ctx is not None:
        return command_name(ctx) or "unknown"
    if app_ctx is not None and app_ctx.command:
        return app_ctx.command
    return "unknown"


def _handle_known_error(exc: Exception, formatter: OutputFormatter, cmd_name: str) -> bool:
    """Handle well-known errors with friendly output.

    Returns ``True`` if the error was handled and the caller should exit.
    """
    if isinstance(exc, ConfigurationError):
        if formatter.format == "json":
            formatter.output_error(code="configuration_error", message=str(exc), command=cmd_name)
            return True
        formatter.rich.error(str(exc))
        formatter.rich.info("")
        formatter.rich.info("Check the bridge configuration:")
        formatter.rich.info("  [cyan]haspbridge config show[/cyan]")
        return True
    if isinstance(exc, HaspBridgeError):
        formatter.output_error(code=type(exc).__name__, message=str(exc), command=cmd_name)
        return True
    return False
