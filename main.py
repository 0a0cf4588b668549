import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from config import configure_logging, settings
from errors import Result
from library import Library
from utils.ui_helpers import (
    print_error,
    print_list_result,
    print_report,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()


class LibraryManager:
    """Hands out one Library per database file."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.DATABASE_FILE
        # rebuild when the database file changes (e.g. one database per test)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _finish(result: Result):
    """Return the value of a successful result; print the error and exit 1 otherwise."""
    if result.ok:
        return result.value
    print_error(result.error)
    raise typer.Exit(code=1)


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global CLI options (output mode, verbosity)."""
    if output:
        set_output_mode(output)
    configure_logging("DEBUG" if verbose else "WARNING")


@app.command("list")
def cli_list():
    """List every book in the catalog."""
    print_list_result(_finish(LibraryManager.get_instance().list_books()))


@app.command("available")
def cli_available():
    """List books that are not on loan."""
    books = _finish(LibraryManager.get_instance().list_available_books())
    print_list_result(books, empty_message="No books available.")


@app.command("show")
def cli_show(book_id: int):
    """Show one book and its loan status."""
    lib = LibraryManager.get_instance()
    book = _finish(lib.get_book(book_id))
    author = _finish(lib.get_author(book.author_id))
    print("Book Found")
    print(f"Title: {book.title}")
    print(f"Author: {author.name}")
    if book.on_loan:
        print(f"On loan to user {book.borrower_id} since {book.loan_date:%Y-%m-%d %H:%M}")
    else:
        print("Available")


@app.command("add-author")
def cli_add_author(name: str):
    """Add an author to the catalog."""
    author = _finish(LibraryManager.get_instance().create_author(name))
    print(f"Added author #{author.id}: {author.name}")


@app.command("remove-author")
def cli_remove_author(author_id: int):
    """Remove an author and all of their books."""
    _finish(LibraryManager.get_instance().delete_author(author_id))
    print(f"Author #{author_id} and their books have been removed.")


@app.command("add-book")
def cli_add_book(title: str, author_id: int):
    """Add a book by an existing author."""
    book = _finish(LibraryManager.get_instance().create_book(title, author_id))
    print(f"Successfully added: #{book.id} {book.title}")


@app.command("update")
def cli_update(
    book_id: int,
    title: Optional[str] = typer.Option(None, "--title", help="New title"),
    author_id: Optional[int] = typer.Option(None, "--author", help="New author id"),
):
    """Change a book's title and/or author."""
    book = _finish(LibraryManager.get_instance().update_book(book_id, title=title, author_id=author_id))
    print(f"Updated: #{book.id} {book.title} (author {book.author_id})")


@app.command("remove")
def cli_remove(book_id: int):
    """Remove a book that is not on loan."""
    _finish(LibraryManager.get_instance().delete_book(book_id))
    print(f"Book #{book_id} has been removed.")


@app.command("register")
def cli_register(full_name: str, email: str, password: str = typer.Option(..., prompt=True, hide_input=True)):
    """Register a library member."""
    user = _finish(LibraryManager.get_instance().register_user(full_name, email, password))
    print(f"Registered user #{user.id}: {user.full_name} <{user.email}>")


@app.command("token")
def cli_token(email: str, password: str = typer.Option(..., prompt=True, hide_input=True)):
    """Print a bearer token for a registered member."""
    print(_finish(LibraryManager.get_instance().issue_token(email, password)))


@app.command("loan")
def cli_loan(book_id: int, user_id: int):
    """Lend a book to a user."""
    book = _finish(LibraryManager.get_instance().loan_book(book_id, user_id))
    print(f"Book #{book.id} '{book.title}' loaned to user {user_id}.")


@app.command("return")
def cli_return(book_id: int, user_id: int):
    """Take a book back and report whether a fine applies."""
    receipt = _finish(LibraryManager.get_instance().return_book(book_id, user_id))
    print(receipt.message)
    if receipt.fine_payable:
        console.print(f"[bold red]Fine payable[/] after {receipt.days_on_loan} days on loan.")


@app.command("loans")
def cli_loans(user_id: int):
    """List the books a user currently holds."""
    books = _finish(LibraryManager.get_instance().loans_for(user_id))
    print_list_result(books, empty_message=f"User {user_id} holds no books.")


@app.command("stats")
def cli_stats():
    """Show catalog statistics."""
    print_stats_result(_finish(LibraryManager.get_instance().get_statistics()))


@app.command("report")
def cli_report(html: bool = typer.Option(False, "--html", help="Print the HTML rendering")):
    """Print the catalog summary sent by the periodic report."""
    report = _finish(LibraryManager.get_instance().build_report())
    if html:
        print(report.to_html())
    else:
        print_report(report)


@app.command("serve")
def serve(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """Start the HTTP API with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/"
    console.print(f"[green]Starting API on [link={url}]{url}[/link][/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/]")


if __name__ == "__main__":
    app()
