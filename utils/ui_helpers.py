import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

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


def _table(title: str, columns: List[str], rows: List[List[str]]) -> None:
    table = Table(title=title, show_lines=True, header_style="bold cyan")
    for i, column in enumerate(columns):
        table.add_column(column, style="magenta" if i == 0 else "white", no_wrap=(i == 0))
    for row in rows:
        table.add_row(*[str(v) if v is not None else "" for v in row])
    _console.print(table)


def print_list_result(books: List[Any], total: int | None = None) -> None:
    """Print a page of books in the current output mode.
    - plain: 'id - Title by Author [STATUS]' lines, or 'No books in library.'
    - json: array of book objects
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        _table(
            "📚 Books" + (f" ({total} total)" if total is not None else ""),
            ["ID", "Title", "Author", "ISBN", "Status"],
            [[b.id, b.title, b.author, b.isbn, b.status.value] for b in books],
        )
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.status.value}]")
        if total is not None and total > len(books):
            print(f"Showing {len(books)} of {total} books.")


def print_borrowings(borrowings: List[Any]) -> None:
    mode = get_output_mode()

    if not borrowings:
        print("No borrowings.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in borrowings], ensure_ascii=False))
    elif mode == "rich":
        _table(
            "🔖 Borrowings",
            ["ID", "Book", "User", "Due", "Status"],
            [[b.id, b.book_id, b.user_id, b.due_date.date().isoformat(), b.effective_status().value]
             for b in borrowings],
        )
    else:
        for b in borrowings:
            print(f"{b.id} - book {b.book_id} to user {b.user_id}, "
                  f"due {b.due_date.date().isoformat()} [{b.effective_status().value}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the key metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    by_status = stats.get("books_by_status", {})
    lines = [
        ("Total Books", stats.get("total_books", 0)),
        *[(f"  {status.title()}", count) for status, count in by_status.items()],
        ("Authors", stats.get("total_authors", 0)),
        ("Users", stats.get("total_users", 0)),
        ("Active Borrowings", stats.get("active_borrowings", 0)),
        ("Overdue Borrowings", stats.get("overdue_borrowings", 0)),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")


def print_mismatches(mismatches: List[Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps([m.to_dict() for m in mismatches], ensure_ascii=False))
        return
    if not mismatches:
        print("All books and borrowings are consistent.")
        return
    if mode == "rich":
        _table(
            "⚠️  Mismatches",
            ["Book", "Problem", "Book Status", "Borrowings"],
            [[m.book_id, m.problem, m.book_status, ", ".join(m.borrowing_ids)] for m in mismatches],
        )
    else:
        for m in mismatches:
            ids = ", ".join(m.borrowing_ids) or "-"
            print(f"{m.book_id}: {m.problem} (book status: {m.book_status}, borrowings: {ids})")
