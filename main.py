import os
import subprocess
import sys
from datetime import datetime
from typing import NoReturn, Optional

import typer
from rich.console import Console

from config import configure_logging, settings
from errors import LibraryError
from library import Library
from utils.ui_helpers import (
    print_borrowings,
    print_list_result,
    print_mismatches,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()

app = typer.Typer(help=APP_NAME, no_args_is_help=True)


class CLIState:
    """Per-invocation state: the database path and the lazily opened Library."""

    def __init__(self, db_file: Optional[str]) -> None:
        self.db_file = db_file
        self._library: Optional[Library] = None

    def library(self) -> Library:
        if self._library is None:
            self._library = Library(db_file=self.db_file)
        return self._library

    def close(self) -> None:
        if self._library is not None:
            self._library.close()
            self._library = None


def _state(ctx: typer.Context) -> CLIState:
    return ctx.obj


def _fail(error: LibraryError) -> NoReturn:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(
        None, "--db", envvar="LIBRARY_DB_FILE", help="SQLite database file",
    ),
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
):
    """Global options (output mode, database file)."""
    configure_logging(log_level.upper())
    if output:
        set_output_mode(output)
    state = CLIState(db or settings.db_file)
    ctx.obj = state
    ctx.call_on_close(state.close)


# ------------------------- Books ------------------------- #
@app.command("list")
def cli_list(
    ctx: typer.Context,
    title: Optional[str] = typer.Option(None, "--title", help="Title contains"),
    author: Optional[str] = typer.Option(None, "--author", help="Author contains"),
    status: Optional[str] = typer.Option(None, "--status", help="AVAILABLE|BORROWED|LOST|MAINTENANCE"),
    sort: Optional[str] = typer.Option(None, "--sort", help="field or field:asc|desc"),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(settings.default_page_size, "--limit"),
):
    """List books with optional filters, sorting and paging."""
    try:
        result = _state(ctx).library().list_books(
            title=title, author=author, status=status, sort_by=sort, page=page, limit=limit,
        )
    except LibraryError as e:
        _fail(e)
    print_list_result(result.items, total=result.total_count)


@app.command("add-book")
def cli_add_book(ctx: typer.Context, title: str, author: str, isbn: str):
    """Add a book to the catalogue."""
    try:
        book = _state(ctx).library().add_book(title, author, isbn)
    except LibraryError as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} (id: {book.id})")


@app.command("find")
def cli_find(ctx: typer.Context, book_id: str):
    """Show one book by id."""
    try:
        book = _state(ctx).library().find_book(book_id)
    except LibraryError as e:
        _fail(e)
    if not book:
        print(f"Book {book_id} not found.")
        raise typer.Exit(code=1)
    print("Book Found")
    print(f"Title: {book.title}")
    print(f"Author: {book.author}")
    print(f"ISBN: {book.isbn}")
    print(f"Status: {book.status.value}")


@app.command("remove-book")
def cli_remove_book(ctx: typer.Context, book_id: str):
    """Delete a book (not allowed while it is borrowed)."""
    try:
        removed = _state(ctx).library().remove_book(book_id)
    except LibraryError as e:
        _fail(e)
    if removed:
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")
        raise typer.Exit(code=1)


# ------------------------- Members and authors ------------------------- #
@app.command("add-user")
def cli_add_user(ctx: typer.Context, name: str, email: str):
    """Register a library member."""
    try:
        user = _state(ctx).library().add_user(name, email)
    except LibraryError as e:
        _fail(e)
    print(f"User added: {user.name} <{user.email}> (id: {user.id})")


@app.command("add-author")
def cli_add_author(
    ctx: typer.Context,
    name: str,
    nationality: Optional[str] = typer.Option(None, "--nationality"),
    birth_year: Optional[int] = typer.Option(None, "--birth-year"),
):
    """Register an author."""
    try:
        author = _state(ctx).library().add_author(name, nationality, birth_year)
    except LibraryError as e:
        _fail(e)
    print(f"Author added: {author.name} (id: {author.id})")


# ------------------------- Circulation ------------------------- #
@app.command("borrow")
def cli_borrow(
    ctx: typer.Context,
    book_id: str,
    user_id: str,
    due: Optional[datetime] = typer.Option(
        None, "--due", formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"], help="Due date (UTC)",
    ),
):
    """Lend a book to a user."""
    try:
        borrowing = _state(ctx).library().borrow(book_id, user_id, due)
    except LibraryError as e:
        _fail(e)
    print(f"Borrowed: {borrowing.id} due {borrowing.due_date.date().isoformat()}")


@app.command("return")
def cli_return(ctx: typer.Context, borrowing_id: str):
    """Return a borrowed book by borrowing id."""
    try:
        borrowing = _state(ctx).library().return_borrowing(borrowing_id)
    except LibraryError as e:
        _fail(e)
    print(f"Returned: {borrowing.id} (book {borrowing.book_id} is available)")


@app.command("borrowings")
def cli_borrowings(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", help="ACTIVE|RETURNED|OVERDUE"),
):
    """List borrowings."""
    try:
        items = _state(ctx).library().list_borrowings(status=status)
    except LibraryError as e:
        _fail(e)
    print_borrowings(items)


@app.command("overdue")
def cli_overdue(ctx: typer.Context):
    """List active borrowings past their due date."""
    try:
        items = _state(ctx).library().lifecycle.list_overdue()
    except LibraryError as e:
        _fail(e)
    print_borrowings(items)


# ------------------------- Admin ------------------------- #
@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show catalogue and circulation statistics."""
    try:
        stats = _state(ctx).library().get_statistics()
    except LibraryError as e:
        _fail(e)
    print_stats_result(stats)


@app.command("reconcile")
def cli_reconcile(ctx: typer.Context):
    """Report books whose status disagrees with their borrowings (exit 1 if any)."""
    try:
        mismatches = _state(ctx).library().lifecycle.reconcile()
    except LibraryError as e:
        _fail(e)
    print_mismatches(mismatches)
    if mismatches:
        raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
):
    """Start the REST API with uvicorn."""
    state = _state(ctx)
    url = f"http://{host}:{port}/"
    print(f"Starting API on {url}")
    env = dict(os.environ)
    if state.db_file:
        env["LIBRARY_DB_FILE"] = state.db_file
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, env=env, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Is it installed?")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        print("API stopped.")


if __name__ == "__main__":
    app()
