"""Output rendering for the stagegate CLI.

File: src/stagegate/ui/render.py
Last updated: 2026-10-19

Purpose
- Provide a thin rendering layer for CLI output on top of ``rich``.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Output without a terminal (pipes, captured test output) is plain text.
- Gate decisions and stages are colour-coded only when colour is allowed.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence

_STATUS_STYLES: Final[dict[str, str]] = {
    "pass": "bold green",
    "committed": "bold green",
    "warn": "bold yellow",
    "retrying": "yellow",
    "block": "bold red",
    "escalated": "bold red",
    "abandoned": "dim",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Writes through a ``rich`` console bound to the current ``sys.stdout``.
    """

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self._console = Console(
            no_color=not self._color,
            highlight=False,
            soft_wrap=True,
            force_terminal=self._color or None,
        )

    @property
    def color(self) -> bool:
        return self._color

    def heading(self, text: str) -> None:
        self._console.print(Text(text, style="bold"))

    def kv(self, key: str, value: object) -> None:
        line = Text(f"{key}: ")
        line.append(self.styled(str(value)))
        self._console.print(line)

    def text(self, line: str) -> None:
        self._console.print(Text(line))

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(Text(title, style="bold"))

    def warning(self, text: str) -> None:
        self._console.print(Text(f"  Warning: {text}", style="yellow"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; status-like cells are colour-coded."""

        if not rows:
            return
        if title:
            self.section(title)
        table = Table(box=None, show_edge=False, pad_edge=False, header_style="bold")
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            table.add_row(*(self.styled(str(cell)) for cell in row))
        self._console.print(table)

    def styled(self, value: str) -> Text:
        style = _STATUS_STYLES.get(value.lower()) if self._color else None
        return Text(value, style=style or "")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(Text(f"  $ {step}"))


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
