from datetime import date

from lending_desk import reports
from lending_desk.book import Book


def test_low_stock_report_marks_out_of_stock(lib):
    empty = lib.add_book(Book("Empty", "Nobody", "", quantity=0))
    lib.add_book(Book("Few", "Someone", "", quantity=2, category="Poetry"))
    content = reports.low_stock_csv(lib.list_low_stock())
    lines = content.splitlines()
    assert lines[0] == '"Title","Author","Category","ISBN","Total Quantity","Available","Status"'
    assert lines[1].startswith(f'"{empty.title}"')
    assert lines[1].endswith('"Out of Stock"')
    assert lines[2].endswith('"Low Stock"')

def test_overdue_report_lists_days_overdue(lib, book, student):
    lib.borrow(book.id, student.id, now=date(2024, 1, 1))
    as_of = date(2024, 1, 20)
    lines = reports.overdue_csv(lib.list_overdue(as_of), as_of).splitlines()
    assert len(lines) == 2
    assert lines[1] == '"Dune","Frank Herbert","alice","2024-01-01","2024-01-15","5"'

def test_popular_report_quotes_titles_with_commas(lib, student):
    b = lib.add_book(Book("Eats, Shoots & Leaves", "Lynne Truss", "", quantity=1))
    lib.borrow(b.id, student.id)
    lines = reports.popular_csv(lib.rank_popular(10)).splitlines()
    assert lines[1] == '"Eats, Shoots & Leaves","Lynne Truss","","1"'
