import pytest

from lending_desk.errors import ValidationError
from lending_desk.validators import ISBNValidator, TextValidator


@pytest.mark.parametrize("isbn", ["978-0-06-112008-4", "0-306-40615-2", "0-8044-2957-X", "080442957x"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)

@pytest.mark.parametrize("isbn", ["", None, "123", "978-0-06-112008-5", "0-306-40615-3", "X-306-40615-2"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)

def test_check_isbn_allows_empty():
    assert TextValidator.check_isbn("  ") == ""
    with pytest.raises(ValidationError):
        TextValidator.check_isbn("123")

def test_require_count():
    assert TextValidator.require_count("4", "quantity") == 4
    assert TextValidator.require_count(3.0, "quantity") == 3
    for bad in (2.5, "2.5", -1, None, True, float("inf")):
        with pytest.raises(ValidationError):
            TextValidator.require_count(bad, "quantity")
