"""Console output for the maintenance CLI.

Data (stats, entry listings) goes to stdout in one of three formats so
that it can be piped; everything else (status lines, warnings, errors,
log records) goes to stderr. Colour follows ``NO_COLOR`` and
``TERM=dumb``, and ``AUTO`` falls back to plain text when stdout is not
a terminal.

The CLI callback installs one :class:`OutputManager` with
:func:`set_output`; commands reach it through :func:`get_output`.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text


class OutputFormat(str, Enum):
    """``AUTO`` means ``RICH`` on a colour-capable TTY, ``PLAIN`` otherwise."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


# level -> (plain-text prefix, Rich style, hidden by --quiet)
_LEVELS: dict[str, tuple[str, str, bool]] = {
    "info": ("", "", True),
    "success": ("", "green", True),
    "warning": ("Warning: ", "yellow", False),
    "error": ("Error: ", "bold red", False),
}


class OutputManager:
    """Writes CLI data to stdout and diagnostics to stderr.

    Args:
        format: Output format for data. ``AUTO`` is resolved here, once.
        no_color: Disable colour even on a terminal.
        quiet: Hide ``info`` and ``success`` diagnostics.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        if format == OutputFormat.AUTO:
            format = OutputFormat.RICH if _is_tty() and not self._no_color else OutputFormat.PLAIN
        self._format = format
        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=format == OutputFormat.RICH,
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def stderr_console(self) -> Console:
        return self._stderr

    def write_record(self, data: dict[str, Any]) -> None:
        """Write one mapping: a JSON object, ``key<TAB>value`` lines, or a two-column table."""
        if self._format == OutputFormat.JSON:
            self._emit(_dump(data))
        elif self._format == OutputFormat.PLAIN:
            self._emit(*(f"{key}\t{value}" for key, value in data.items()))
        else:
            table = Table(show_header=False)
            table.add_column(style="bold cyan")
            table.add_column()
            for key, value in data.items():
                table.add_row(str(key), str(value))
            self._stdout.print(table)

    def write_rows(self, headers: list[str], rows: list[list[str]], title: Optional[str] = None) -> None:
        """Write rows as a JSON array of objects, TSV with a header line, or a titled table."""
        if self._format == OutputFormat.JSON:
            self._emit(_dump([dict(zip(headers, row)) for row in rows]))
        elif self._format == OutputFormat.PLAIN:
            self._emit(*("\t".join(line) for line in [headers, *rows]))
        else:
            table = Table(*headers, title=title, header_style="bold cyan")
            for row in rows:
                table.add_row(*row)
            self._stdout.print(table)

    def notify(self, level: str, message: str) -> None:
        """Write a diagnostic to stderr. Warnings and errors ignore ``quiet``."""
        prefix, style, quietable = _LEVELS[level]
        if quietable and self._quiet:
            return
        if self._no_color:
            sys.stderr.write(f"{prefix}{message}\n")
            sys.stderr.flush()
        elif prefix:
            self._stderr.print(Text.assemble((prefix, style), message))
        else:
            self._stderr.print(Text(message, style=style))

    def info(self, message: str) -> None:
        self.notify("info", message)

    def success(self, message: str) -> None:
        self.notify("success", message)

    def warning(self, message: str) -> None:
        self.notify("warning", message)

    def error(self, message: str) -> None:
        self.notify("error", message)

    @staticmethod
    def _emit(*lines: str) -> None:
        for line in lines:
            sys.stdout.write(line + "\n")
        sys.stdout.flush()


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when NO_COLOR is set (any value) or TERM=dumb."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    return os.environ.get("TERM") == "dumb"


def configure_logging(verbose: bool) -> None:
    """Route ``cache_serde`` log records to stderr through Rich.

    Library code only creates loggers; handlers are installed here, by
    the CLI, and nowhere else.
    """
    logger = logging.getLogger("cache_serde")
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=get_output().stderr_console, show_path=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the installed :class:`OutputManager`, creating an ``AUTO`` one if none is."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    global _output
    _output = None
