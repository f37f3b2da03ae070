import os
from datetime import date

import pytest

# Pick the in-memory store before lending_desk.config reads the environment
os.environ["LIBRARY_STORE"] = "memory"
os.environ.setdefault("SEED_DEMO_DATA", "false")

from lending_desk.book import Book
from lending_desk.database import MemoryStore
from lending_desk.library import Library


class FakeClock:
    """Settable 'today' for ledger tests."""

    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def clock():
    return FakeClock(date(2024, 1, 1))


@pytest.fixture
def lib(clock):
    # Fresh in-memory ledger per test, without the demo data
    library = Library(store=MemoryStore(), clock=clock, seed=False)
    yield library
    library.close()


@pytest.fixture
def student(lib):
    return lib.add_user("alice", "secret", email="alice@example.com")


@pytest.fixture
def book(lib):
    return lib.add_book(Book("Dune", "Frank Herbert", "", quantity=2, category="Science Fiction"))
