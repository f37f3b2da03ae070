from __future__ import annotations

import random
import string
import time


def generate_id() -> str:
    """Return a sortable unique id: ``<epoch millis>_<9 base36 chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}_{suffix}"


class Book:
    """Represents a single catalog title and its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, quantity: int = 1, available: int | None = None,
                 category: str = "", publisher: str = "", year: int = 0,
                 description: str | None = None, cover_url: str | None = None,
                 id: str | None = None) -> None:
        self.id = id or generate_id()
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.category = (category or "").strip()
        self.publisher = (publisher or "").strip()
        self.year = int(year or 0)
        self.quantity = int(quantity)
        # A new title starts with every copy on the shelf
        self.available = self.quantity if available is None else int(available)
        self.description = description
        self.cover_url = cover_url

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    @property
    def on_loan(self) -> int:
        return self.quantity - self.available

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "isbn": self.isbn,
            "quantity": self.quantity,
            "available": self.available,
            "publisher": self.publisher,
            "year": self.year,
            "description": self.description,
            "coverUrl": self.cover_url,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn", ""),
            quantity=data.get("quantity", 0),
            available=data.get("available"),
            category=data.get("category", ""),
            publisher=data.get("publisher", ""),
            year=data.get("year") or 0,
            description=data.get("description"),
            cover_url=data.get("coverUrl"),
        )
