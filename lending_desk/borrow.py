"""Loan records, lending policy and the date arithmetic shared by both.

All lending dates are calendar dates in UTC. Due dates, overdue checks and
fines are computed on ``datetime.date`` values only, so a time of day never
shifts a loan across a day boundary.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .book import Book, generate_id
from .errors import ValidationError
from .user import User
from .validators import TextValidator


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def to_date(value: Any) -> date:
    """Coerce an ISO string, datetime or date to a calendar date."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}") from e
        return to_date(parsed)
    raise ValidationError(f"Invalid date: {value!r}")


def to_money(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Amount must be a non-negative number: {value!r}")
    return amount


def compute_fine(due_date: Any, as_of: Any, fine_per_day: Any) -> Decimal:
    """Fine owed for a loan due on ``due_date`` and settled on ``as_of``.

    Whole days late times the daily rate; zero when returned on or before the
    due date.
    """
    days_late = (to_date(as_of) - to_date(due_date)).days
    if days_late <= 0:
        return Decimal("0")
    return days_late * to_money(fine_per_day)


class LendingSettings:
    """Process-wide lending policy. Changes apply to new loans only."""

    def __init__(self, low_stock_threshold: int = 3, borrowing_period_days: int = 14,
                 fine_per_day: Any = 1) -> None:
        self.low_stock_threshold = TextValidator.require_count(low_stock_threshold, "lowStockThreshold")
        self.borrowing_period_days = TextValidator.require_count(borrowing_period_days, "borrowingPeriodDays")
        self.fine_per_day = to_money(fine_per_day)
        if self.borrowing_period_days < 1:
            raise ValidationError("borrowingPeriodDays must be >= 1")

    def to_dict(self) -> dict:
        return {
            "lowStockThreshold": self.low_stock_threshold,
            "borrowingPeriodDays": self.borrowing_period_days,
            "finePerDay": str(self.fine_per_day),
        }

    @staticmethod
    def from_dict(data: dict) -> "LendingSettings":
        return LendingSettings(
            low_stock_threshold=data.get("lowStockThreshold", 3),
            borrowing_period_days=data.get("borrowingPeriodDays", 14),
            fine_per_day=data.get("finePerDay", 1),
        )


class BorrowRecord:
    """One loan of one copy. Active until ``return_date`` is set."""

    def __init__(self, book_id: str, user_id: str, borrow_date: date, due_date: date,
                 return_date: Optional[date] = None, fine: Optional[Decimal] = None,
                 id: Optional[str] = None) -> None:
        self.id = id or generate_id()
        self.book_id = book_id
        self.user_id = user_id
        self.borrow_date = to_date(borrow_date)
        self.due_date = to_date(due_date)
        self.return_date = to_date(return_date) if return_date is not None else None
        self.fine = to_money(fine) if fine is not None else None

    @classmethod
    def open(cls, book_id: str, user_id: str, now: Any, settings: LendingSettings) -> "BorrowRecord":
        borrow_date = to_date(now)
        due_date = borrow_date + timedelta(days=settings.borrowing_period_days)
        return cls(book_id=book_id, user_id=user_id, borrow_date=borrow_date, due_date=due_date)

    @property
    def is_active(self) -> bool:
        return self.return_date is None

    def is_overdue(self, as_of: Any) -> bool:
        return self.is_active and self.due_date < to_date(as_of)

    def days_overdue(self, as_of: Any) -> int:
        return max(0, (to_date(as_of) - self.due_date).days)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "userId": self.user_id,
            "borrowDate": self.borrow_date.isoformat(),
            "dueDate": self.due_date.isoformat(),
            "returnDate": self.return_date.isoformat() if self.return_date else None,
            "fine": str(self.fine) if self.fine is not None else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowRecord":
        return BorrowRecord(
            id=data["id"],
            book_id=data["bookId"],
            user_id=data["userId"],
            borrow_date=data["borrowDate"],
            due_date=data["dueDate"],
            return_date=data.get("returnDate"),
            fine=data.get("fine"),
        )


class LoanView:
    """Read-side join of a loan with its book and borrower. Never persisted."""

    def __init__(self, record: BorrowRecord, book: Optional[Book], user: Optional[User]) -> None:
        self.record = record
        self.book = book
        self.user = user

    def to_dict(self) -> dict:
        data = self.record.to_dict()
        data["book"] = self.book.to_dict() if self.book else None
        data["user"] = self.user.to_public_dict() if self.user else None
        return data
