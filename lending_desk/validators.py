import re
from decimal import Decimal
from typing import Any, Optional

from .errors import ValidationError


class ISBNValidator:
    """ISBN-10 / ISBN-13 checks. Hyphens and spaces are ignored."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        return re.sub(r"[^0-9X]", "", (raw or "").upper())

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        digits = ISBNValidator.normalize_isbn(isbn)
        if re.fullmatch(r"\d{9}[\dX]", digits):
            # Weights 10..1, X stands for 10 in the check position
            values = [10 if ch == "X" else int(ch) for ch in digits]
            return sum(v * w for v, w in zip(values, range(10, 0, -1))) % 11 == 0
        if re.fullmatch(r"\d{13}", digits):
            # Alternating weights 1 and 3 over all thirteen digits
            return sum(int(ch) * (3 if i % 2 else 1) for i, ch in enumerate(digits)) % 10 == 0
        return False


class TextValidator:
    """Required-field checks for catalog, account and settings input."""

    @staticmethod
    def require_text(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required")
        return str(value).strip()

    @staticmethod
    def require_count(value: Any, field: str) -> int:
        try:
            count = int(value)
            # 2.9 must not quietly become 2
            if isinstance(value, bool) or (isinstance(value, (float, Decimal)) and value != count):
                raise ValueError(value)
        except (TypeError, ValueError, OverflowError) as e:
            raise ValidationError(f"{field} must be an integer") from e
        if count < 0:
            raise ValidationError(f"{field} must be >= 0")
        return count

    @staticmethod
    def check_isbn(isbn: Optional[str]) -> str:
        # An empty ISBN is allowed for items without one
        isbn = (isbn or "").strip()
        if isbn and not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationError(f"Invalid ISBN: {isbn}")
        return isbn
