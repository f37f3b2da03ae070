"""CSV exports for the alerts & reports screen."""
import csv
import io
from datetime import date
from typing import Iterable, List, Sequence, Tuple

from .book import Book
from .borrow import LoanView

REPORT_TYPES = ("overdue", "low-stock", "popular")


def _render(header: Sequence[str], rows: Iterable[Sequence]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def overdue_csv(loans: List[LoanView], as_of: date) -> str:
    return _render(
        ["Book Title", "Author", "Borrower", "Borrow Date", "Due Date", "Days Overdue"],
        (
            [
                loan.book.title if loan.book else "",
                loan.book.author if loan.book else "",
                loan.user.username if loan.user else "",
                loan.record.borrow_date.isoformat(),
                loan.record.due_date.isoformat(),
                loan.record.days_overdue(as_of),
            ]
            for loan in loans
        ),
    )


def low_stock_csv(books: List[Book]) -> str:
    return _render(
        ["Title", "Author", "Category", "ISBN", "Total Quantity", "Available", "Status"],
        (
            [b.title, b.author, b.category, b.isbn, b.quantity, b.available,
             "Out of Stock" if b.available == 0 else "Low Stock"]
            for b in books
        ),
    )


def popular_csv(ranking: List[Tuple[Book, int]]) -> str:
    return _render(
        ["Title", "Author", "Category", "Times Borrowed"],
        ([b.title, b.author, b.category, count] for b, count in ranking),
    )
