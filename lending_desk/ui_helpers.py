import json
import os
from typing import Any, Dict, List, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .book import Book
from .borrow import LoanView

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_DESK_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Book], title: str = "Books") -> None:
    """Print books in the current output mode.
    - plain: 'id - Title by Author (available/quantity)' lines, or 'No books found.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books found.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=f"📚 {title}", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            style = "red" if b.available == 0 else "green"
            table.add_row(b.id, b.title, b.author, f"[{style}]{b.available}[/]/{b.quantity}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} ({b.available}/{b.quantity})")


def print_loans(loans: List[LoanView], title: str = "Loans") -> None:
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in ("ID", "Book", "Borrower", "Borrowed", "Due", "Returned", "Fine"):
            table.add_column(column)
        for loan in loans:
            r = loan.record
            table.add_row(
                r.id,
                loan.book.title if loan.book else r.book_id,
                loan.user.username if loan.user else r.user_id,
                r.borrow_date.isoformat(),
                r.due_date.isoformat(),
                r.return_date.isoformat() if r.return_date else "-",
                str(r.fine) if r.fine is not None else "-",
            )
        _console.print(table)
    else:
        for loan in loans:
            r = loan.record
            book_title = loan.book.title if loan.book else r.book_id
            borrower = loan.user.username if loan.user else r.user_id
            print(f"{r.id} - {book_title} -> {borrower}, due {r.due_date.isoformat()}")


def print_popular(ranking: List[Tuple[Book, int]]) -> None:
    mode = get_output_mode()

    if not ranking:
        print("No books found.")
        return

    if mode == "json":
        print(json.dumps([{"book": b.to_dict(), "borrowCount": n} for b, n in ranking], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🔥 Popular Books", header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Times Borrowed", justify="right")
        for i, (b, n) in enumerate(ranking, 1):
            table.add_row(str(i), b.title, str(n))
        _console.print(table)
    else:
        for i, (b, n) in enumerate(ranking, 1):
            print(f"{i}. {b.title} - {n} borrows")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard stats in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "available_books": "Available Books",
        "active_borrows": "Active Borrows",
        "overdue_count": "Overdue",
        "low_stock_count": "Low Stock",
        "total_fines": "Total Fines",
        "student_count": "Students",
    }

    if mode == "json":
        print(json.dumps({k: str(v) if k == "total_fines" else v for k, v in stats.items()}, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Dashboard", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
