"""Printer: centralizes console output for the remedy CLI.

Rendering is delegated to rich.console.Console; commands only decide what to
show.
"""

from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

STATUS_STYLES = {
    "draft": "dim",
    "iterating": "cyan",
    "pending_approval": "yellow",
    "approved": "green",
    "executing": "cyan",
    "completed": "bold green",
    "rejected": "red",
    "expired": "magenta",
    "failed": "bold red",
    "cancelled": "dim",
    "rolled_back": "magenta",
}


def styled_status(status: str) -> Text:
    return Text(status, style=STATUS_STYLES.get(status, "white"))


def format_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.3f}"
    if isinstance(value, list):
        return ", ".join(str(item) for item in value) or "-"
    return str(value)


class Printer:
    def __init__(self, console: Console | None = None):
        self.console = console or Console(highlight=False)

    def show_success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {escape(message)}", soft_wrap=True)

    def show_error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {escape(message)}", soft_wrap=True)

    def show_warning(self, message: str) -> None:
        self.console.print(f"[yellow]![/yellow] {escape(message)}", soft_wrap=True)

    def show_info(self, message: str) -> None:
        self.console.print(escape(message), soft_wrap=True)

    def show_table(
        self, title: str, columns: list[str], rows: list[list[str | Text]]
    ) -> None:
        table = Table(title=title, box=box.SIMPLE_HEAVY)
        for col in columns:
            table.add_column(col, overflow="fold")

        if not rows:
            table.add_row(*(["-"] * len(columns)))
        else:
            for row in rows:
                table.add_row(*(_cell(value) for value in row))

        self.console.print(table)

    def show_key_values(self, title: str, pairs: list[tuple[str, Any]]) -> None:
        table = Table(title=title, box=box.SIMPLE)
        table.add_column("Field", style="bold")
        table.add_column("Value", overflow="fold")

        for key, value in pairs:
            table.add_row(key, _cell(value))

        self.console.print(table)

    def show_code(self, title: str, code: str | None) -> None:
        if not code:
            return
        self.console.print(f"[bold]{escape(title)}[/bold]")
        self.console.print(Syntax(code, "sql", word_wrap=True))

    def show_rows(self, title: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        columns = list(rows[0])
        self.show_table(
            title, columns, [[format_value(row.get(col)) for col in columns] for row in rows]
        )


def _cell(value: Any) -> Text | str:
    if isinstance(value, Text):
        return value
    return escape(value if isinstance(value, str) else format_value(value))
