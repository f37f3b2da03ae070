import json
from datetime import date

import pytest
from typer.testing import CliRunner

from lending_desk.main import LibraryManager, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_library(lib, monkeypatch):
    monkeypatch.setattr(LibraryManager, "_instance", lib)
    monkeypatch.setenv("LENDING_DESK_OUTPUT", "plain")
    return lib


def test_books_plain_output(book):
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert f"{book.id} - Dune by Frank Herbert (2/2)" in result.stdout

def test_books_empty_search(book):
    result = runner.invoke(app, ["books", "--query", "austen"])
    assert result.exit_code == 0
    assert "No books found." in result.stdout

def test_books_json_output(book):
    result = runner.invoke(app, ["--output", "json", "books"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)[0]["title"] == "Dune"

def test_add_book(lib):
    result = runner.invoke(app, ["add-book", "Emma", "Jane Austen", "-n", "3"])
    assert result.exit_code == 0
    assert "Added: Emma by Jane Austen" in result.stdout
    assert lib.list_books(q="emma")[0].available == 3

def test_add_book_rejects_bad_isbn():
    result = runner.invoke(app, ["add-book", "Emma", "Jane Austen", "--isbn", "123"])
    assert result.exit_code == 1
    assert result.stdout.startswith("Error:")

def test_borrow_and_return(book, student):
    result = runner.invoke(app, ["borrow", book.id, student.id])
    assert result.exit_code == 0
    assert "due 2024-01-15" in result.stdout
    loan_id = result.stdout.split()[1]

    result = runner.invoke(app, ["return", loan_id])
    assert result.exit_code == 0
    assert f"Loan {loan_id} returned on 2024-01-01, fine 0" in result.stdout

    result = runner.invoke(app, ["return", loan_id])
    assert result.exit_code == 1
    assert "already returned" in result.stdout

def test_borrow_unknown_book(student):
    result = runner.invoke(app, ["borrow", "missing", student.id])
    assert result.exit_code == 1
    assert "Error:" in result.stdout

def test_overdue_and_stats(lib, clock, book, student):
    lib.borrow(book.id, student.id)
    clock.today = date(2024, 2, 1)

    result = runner.invoke(app, ["overdue"])
    assert "Dune -> alice, due 2024-01-15" in result.stdout

    result = runner.invoke(app, ["stats"])
    assert "Total Books: 2" in result.stdout
    assert "Active Borrows: 1" in result.stdout
    assert "Overdue: 1" in result.stdout

def test_popular(lib, book, student):
    lib.borrow(book.id, student.id)
    result = runner.invoke(app, ["popular", "--limit", "1"])
    assert result.stdout.strip() == "1. Dune - 1 borrows"

def test_export_low_stock(tmp_path, book):
    target = tmp_path / "low.csv"
    result = runner.invoke(app, ["export", "low-stock", "-f", str(target)])
    assert result.exit_code == 0
    assert target.read_text(encoding="utf-8").splitlines()[0].startswith('"Title","Author"')

def test_export_unknown_report(tmp_path):
    result = runner.invoke(app, ["export", "fines", "-f", str(tmp_path / "x.csv")])
    assert result.exit_code == 1
    assert "Unsupported report" in result.stdout
