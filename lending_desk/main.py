import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from . import reports
from .book import Book
from .config import configure_logging, settings
from .errors import LibraryError
from .library import Library
from .ui_helpers import print_books, print_loans, print_popular, print_stats_result, set_output_mode

logger = logging.getLogger(__name__)

console = Console()


class LibraryManager:
    """Lazily created Library shared by all commands of one CLI run."""

    _instance: Optional[Library] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library()
            logger.debug("Library opened on %s store", settings.store_backend)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None


# --- Typer CLI app ---
app = typer.Typer(help="Lending Desk CLI")

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Global CLI options (output mode, logging)."""
    configure_logging("DEBUG" if verbose else "WARNING")
    if output:
        set_output_mode(output)


@app.command("books")
def cli_books(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title, author or ISBN"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
):
    """List the catalog."""
    print_books(LibraryManager.get_instance().list_books(q=query, category=category))

@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    quantity: int = typer.Option(1, "--quantity", "-n", help="Copies owned"),
    isbn: str = typer.Option("", "--isbn"),
    category: str = typer.Option("", "--category"),
    publisher: str = typer.Option("", "--publisher"),
    year: int = typer.Option(0, "--year"),
):
    """Add a title to the catalog."""
    try:
        book = LibraryManager.get_instance().add_book(
            Book(title, author, isbn, quantity=quantity, category=category, publisher=publisher, year=year)
        )
        print(f"Added: {book.title} by {book.author} [{book.id}]")
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)

@app.command("borrow")
def cli_borrow(book_id: str, user_id: str):
    """Lend one copy of a book to a user."""
    try:
        record = LibraryManager.get_instance().borrow(book_id, user_id)
        print(f"Loan {record.id} created, due {record.due_date.isoformat()}")
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)

@app.command("return")
def cli_return(borrow_id: str):
    """Return a borrowed copy and settle its fine."""
    try:
        record = LibraryManager.get_instance().return_book(borrow_id)
        print(f"Loan {record.id} returned on {record.return_date.isoformat()}, fine {record.fine}")
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)

@app.command("loans")
def cli_loans(active: bool = typer.Option(False, "--active", help="Only loans not yet returned")):
    """List loans with their books and borrowers."""
    print_loans(LibraryManager.get_instance().list_borrows(active_only=active))

@app.command("overdue")
def cli_overdue():
    """List overdue loans."""
    print_loans(LibraryManager.get_instance().list_overdue(), title="Overdue Loans")

@app.command("low-stock")
def cli_low_stock():
    """List books at or below the low-stock threshold."""
    print_books(LibraryManager.get_instance().list_low_stock(), title="Low Stock")

@app.command("popular")
def cli_popular(limit: int = typer.Option(settings.default_popular_limit, "--limit", "-l")):
    """Most borrowed books."""
    print_popular(LibraryManager.get_instance().rank_popular(limit))

@app.command("stats")
def cli_stats():
    """Show dashboard statistics."""
    print_stats_result(LibraryManager.get_instance().dashboard_stats())

@app.command("export")
def cli_export(
    report: str = typer.Argument(..., help="Report: overdue | low-stock | popular"),
    output: Optional[Path] = typer.Option(None, "--output-file", "-f", help="Target CSV file"),
):
    """Write a report to a CSV file."""
    lib = LibraryManager.get_instance()
    if report == "overdue":
        today = lib.clock()
        content = reports.overdue_csv(lib.list_overdue(today), today)
    elif report == "low-stock":
        content = reports.low_stock_csv(lib.list_low_stock())
    elif report == "popular":
        content = reports.popular_csv(lib.rank_popular(settings.default_popular_limit))
    else:
        print(f"Unsupported report: {report}. Use one of: {', '.join(reports.REPORT_TYPES)}")
        raise typer.Exit(code=1)
    target = output or Path(f"{report.replace('-', '_')}_books.csv")
    target.write_text(content, encoding="utf-8")
    print(f"Report written to {target}")

@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes")):
    """Run the REST API with uvicorn."""
    url = f"http://{settings.api_host}:{settings.api_port}/"
    console.print(f"Starting API on [bold]{url}[/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending_desk.api:app",
        "--host", settings.api_host,
        "--port", str(settings.api_port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
