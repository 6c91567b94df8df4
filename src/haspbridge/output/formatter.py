from __future__ import annotations

import json
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rich.console import Console

from haspbridge.output.json_output import format_json_error, format_json_response
from haspbridge.output.rich_output import RichOutput

if TYPE_CHECKING:
    from io import TextIOBase

    from haspbridge.hasp.session import SessionStatus


class OutputFormatter:
    """Unified output formatter that auto-detects JSON vs Rich output.

    Selection logic:

    * If *force_format* is provided, use it unconditionally.
    * Otherwise, if *stream* (default ``sys.stdout``) is a TTY, use ``"rich"``.
    * If the stream is **not** a TTY (piped / redirected, e.g. under a
      service manager), use ``"json"``.

    When the format is ``"quiet"``, the Rich console writes to *stderr* so
    that normal stdout stays empty.
    """

    def __init__(
        self,
        *,
        stream: TextIOBase | Any | None = None,
        force_format: str | None = None,
    ) -> None:
        self._stream = stream or sys.stdout
        if force_format is not None:
            self._format = force_format
        elif hasattr(self._stream, "isatty") and self._stream.isatty():
            self._format = "rich"
        else:
            self._format = "json"

        if self._format == "quiet":
            self._console = Console(stderr=True)
        else:
            self._console = Console()

        self._rich = RichOutput(self._console)

    @property
    def format(self) -> str:  # noqa: A003
        """Return the active output format (``"rich"``, ``"json"``, or ``"quiet"``)."""
        return self._format

    @property
    def rich(self) -> RichOutput:
        return self._rich

    @property
    def console(self) -> Console:
        return self._console

    def output(self, data: Any, *, command: str) -> None:
        """Emit *data* as a JSON envelope, or as plain text for rich / quiet."""
        if self._format == "json":
            print(format_json_response(data=data, command=command), file=self._stream)  # noqa: T201
        else:
            self._rich.info(str(data))

    def output_error(self, *, code: str, message: str, command: str) -> None:
        """Emit an error using the current format."""
        if self._format == "json":
            print(  # noqa: T201
                format_json_error(code=code, message=message, command=command),
                file=self._stream,
            )
        else:
            self._rich.error(message)

    def status(self, status: SessionStatus) -> None:
        """Report a session status change.

        JSON mode writes one compact line per change so a supervisor can
        follow the stream; quiet mode shows errors only.
        """
        if self._format == "json":
            line = {
                "event": "status",
                "message": status.message,
                "error": status.error,
                "timestamp": datetime.now(UTC).isoformat(),
            }
            print(json.dumps(line), file=self._stream, flush=True)  # noqa: T201
        elif self._format == "quiet":
            if status.error:
                self._rich.status(status)
        else:
            self._rich.status(status)
