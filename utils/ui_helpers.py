import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _status(book: Any) -> str:
    if getattr(book, "on_loan", False):
        return f"on loan to user {book.borrower_id}"
    return "available"


def print_list_result(books: List[Any], empty_message: str = "No books in library.") -> None:
    """Print books in the current output mode.
    - plain: '#ID - Title (author N) [status]' lines, or the empty message
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Status", style="white")
        for b in books:
            table.add_row(str(b.id), b.title, str(b.author_id), _status(b))
        _console.print(table)
    else:
        for b in books:
            print(f"#{b.id} - {b.title} (author {b.author_id}) [{_status(b)}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_books', 0)}")
        print(f"Unique Authors: {stats.get('unique_authors', 0)}")
        print(f"On Loan: {stats.get('on_loan', 0)}")
        print(f"Available: {stats.get('available', 0)}")


def print_report(report: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(report.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        _console.print(Panel.fit(report.to_text(), title="📋 Library summary", border_style="cyan"))
    else:
        print(report.to_text())


def print_error(error: Any) -> None:
    if get_output_mode() == "json":
        print(json.dumps(error.to_dict(), ensure_ascii=False))
    else:
        print(f"Error ({error.kind.value}): {error.message}")
