import logging
import threading
from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .book import Book
from .borrow import BorrowRecord, LendingSettings, LoanView, compute_fine, to_date, to_money, utc_today
from .database import (
    BOOK_LIST,
    BORROW_LIST,
    SETTINGS_KEY,
    USER_LIST,
    CatalogStore,
    auth_key,
    book_key,
    borrow_key,
    get_store,
    initialize_database,
    user_key,
)
from .errors import (
    AlreadyReturned,
    AuthenticationError,
    DuplicateUsername,
    NotFound,
    Unavailable,
    ValidationError,
)
from .user import Role, User, hash_password, verify_password
from .validators import TextValidator

logger = logging.getLogger(__name__)

_BOOK_FIELDS = ("title", "author", "category", "isbn", "publisher", "year", "description", "cover_url", "quantity")


class Library:
    """Lending ledger: catalog, accounts, loans and the numbers derived from them.

    Every check-then-write on a book runs under that book's lock and ends in
    a single atomic ``set_many`` on the store, so ``0 <= available <= quantity``
    holds even with concurrent borrows of the last copy.
    """

    def __init__(self, store: Optional[CatalogStore] = None, clock: Callable[[], date] = utc_today,
                 seed: Optional[bool] = None) -> None:
        self.store = store if store is not None else get_store()
        self.clock = clock
        initialize_database(self.store, seed=seed)

        self._book_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Lock order: book lock, then user lock, then index lock
        self._user_lock = threading.Lock()
        self._index_lock = threading.Lock()
        self._settings_lock = threading.Lock()

    # ------------------------- Helpers ------------------------- #
    def _book_lock(self, book_id: str, must_exist: bool = True) -> threading.Lock:
        with self._locks_guard:
            lock = self._book_locks.get(book_id)
            if lock is None:
                # Unknown ids never get a lock
                if must_exist and self.store.get(book_key(book_id)) is None:
                    raise NotFound(f"Book {book_id} not found")
                lock = self._book_locks[book_id] = threading.Lock()
            return lock

    def _index(self, name: str) -> List[str]:
        return list(self.store.get(name) or [])

    def _today(self, now: Any = None) -> date:
        return to_date(now) if now is not None else self.clock()

    def _load_book(self, book_id: str) -> Book:
        data = self.store.get(book_key(book_id))
        if not data:
            raise NotFound(f"Book {book_id} not found")
        return Book.from_dict(data)

    def _load_user(self, user_id: str) -> User:
        data = self.store.get(user_key(user_id))
        if not data:
            raise NotFound(f"User {user_id} not found")
        return User.from_dict(data)

    def _load_record(self, borrow_id: str) -> BorrowRecord:
        data = self.store.get(borrow_key(borrow_id))
        if not data:
            raise NotFound(f"Borrow record {borrow_id} not found")
        return BorrowRecord.from_dict(data)

    def _all_records(self) -> List[BorrowRecord]:
        records = []
        for borrow_id in self._index(BORROW_LIST):
            data = self.store.get(borrow_key(borrow_id))
            if data:
                records.append(BorrowRecord.from_dict(data))
        return records

    def _join(self, records: List[BorrowRecord]) -> List[LoanView]:
        books: Dict[str, Optional[Book]] = {}
        users: Dict[str, Optional[User]] = {}
        views = []
        for record in records:
            if record.book_id not in books:
                data = self.store.get(book_key(record.book_id))
                books[record.book_id] = Book.from_dict(data) if data else None
            if record.user_id not in users:
                data = self.store.get(user_key(record.user_id))
                users[record.user_id] = User.from_dict(data) if data else None
            views.append(LoanView(record, books[record.book_id], users[record.user_id]))
        return views

    # ------------------------- Catalog ------------------------- #
    def list_books(self, q: Optional[str] = None, category: Optional[str] = None) -> List[Book]:
        books = []
        for book_id in self._index(BOOK_LIST):
            data = self.store.get(book_key(book_id))
            if data:
                books.append(Book.from_dict(data))
        if q:
            needle = q.lower()
            books = [b for b in books
                     if needle in b.title.lower() or needle in b.author.lower() or needle in b.isbn.lower()]
        if category:
            books = [b for b in books if b.category.lower() == category.lower()]
        return books

    def get_book(self, book_id: str) -> Book:
        return self._load_book(book_id)

    def add_book(self, book: Book) -> Book:
        """Add a new title. All of its copies start out available."""
        book.title = TextValidator.require_text(book.title, "title")
        book.author = TextValidator.require_text(book.author, "author")
        book.isbn = TextValidator.check_isbn(book.isbn)
        book.quantity = TextValidator.require_count(book.quantity, "quantity")
        book.available = book.quantity

        with self._index_lock:
            if self.store.get(book_key(book.id)):
                raise ValidationError(f"Book {book.id} already exists")
            books = self._index(BOOK_LIST)
            books.append(book.id)
            self.store.set_many({book_key(book.id): book.to_dict(), BOOK_LIST: books})
        logger.info("Added book %s (%s), %d copies", book.id, book.title, book.quantity)
        return book

    def update_book(self, book_id: str, **changes: Any) -> Book:
        """Edit catalog fields. A quantity change moves ``available`` by the same delta."""
        unknown = set(changes) - set(_BOOK_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        with self._book_lock(book_id):
            book = self._load_book(book_id)
            if changes.get("title") is not None:
                book.title = TextValidator.require_text(changes["title"], "title")
            if changes.get("author") is not None:
                book.author = TextValidator.require_text(changes["author"], "author")
            if changes.get("isbn") is not None:
                book.isbn = TextValidator.check_isbn(changes["isbn"])
            for field in ("category", "publisher", "description", "cover_url"):
                if changes.get(field) is not None:
                    setattr(book, field, changes[field])
            if changes.get("year") is not None:
                book.year = TextValidator.require_count(changes["year"], "year")
            if changes.get("quantity") is not None:
                quantity = TextValidator.require_count(changes["quantity"], "quantity")
                on_loan = book.on_loan
                if quantity < on_loan:
                    raise ValidationError(
                        f"quantity {quantity} is below the {on_loan} copies currently on loan"
                    )
                book.available = quantity - on_loan
                book.quantity = quantity
            self.store.set(book_key(book.id), book.to_dict())
        return book

    def remove_book(self, book_id: str) -> None:
        with self._book_lock(book_id):
            book = self._load_book(book_id)
            if book.on_loan > 0:
                raise ValidationError(f"Book {book_id} has {book.on_loan} copies on loan")
            with self._index_lock:
                books = [b for b in self._index(BOOK_LIST) if b != book_id]
                self.store.set_many({BOOK_LIST: books}, deletes=[book_key(book_id)])
            with self._locks_guard:
                self._book_locks.pop(book_id, None)
        logger.info("Removed book %s", book_id)

    # ------------------------- Accounts ------------------------- #
    def list_users(self, role: Optional[Role] = None) -> List[User]:
        users = []
        for user_id in self._index(USER_LIST):
            data = self.store.get(user_key(user_id))
            if data:
                users.append(User.from_dict(data))
        if role is not None:
            users = [u for u in users if u.role == Role(role)]
        return users

    def get_user(self, user_id: str) -> User:
        return self._load_user(user_id)

    def add_user(self, username: str, password: str, role: Role = Role.STUDENT,
                 email: Optional[str] = None) -> User:
        username = TextValidator.require_text(username, "username")
        password = TextValidator.require_text(password, "password")
        user = User(username, hash_password(password), role, email)

        with self._user_lock:
            if self.store.get(auth_key(username)):
                raise DuplicateUsername(f"Username '{username}' already exists")
            with self._index_lock:
                users = self._index(USER_LIST)
                users.append(user.id)
                self.store.set_many({
                    user_key(user.id): user.to_dict(),
                    auth_key(username): user.id,
                    USER_LIST: users,
                })
        logger.info("Created %s account %s", user.role.value, username)
        return user

    def update_user(self, user_id: str, username: Optional[str] = None, password: Optional[str] = None,
                    role: Optional[Role] = None, email: Optional[str] = None) -> User:
        with self._user_lock:
            user = self._load_user(user_id)
            values: Dict[str, Any] = {}
            deletes: List[str] = []
            if username is not None:
                username = TextValidator.require_text(username, "username")
                if username != user.username:
                    owner = self.store.get(auth_key(username))
                    if owner and owner != user_id:
                        raise DuplicateUsername(f"Username '{username}' already exists")
                    deletes.append(auth_key(user.username))
                    values[auth_key(username)] = user_id
                    user.username = username
            if password is not None:
                user.password_hash = hash_password(TextValidator.require_text(password, "password"))
            if role is not None:
                user.role = Role(role)
            if email is not None:
                user.email = email
            values[user_key(user_id)] = user.to_dict()
            self.store.set_many(values, deletes=deletes)
        return user

    def remove_user(self, user_id: str) -> None:
        with self._user_lock:
            user = self._load_user(user_id)
            with self._index_lock:
                users = [u for u in self._index(USER_LIST) if u != user_id]
                self.store.set_many({USER_LIST: users}, deletes=[user_key(user_id), auth_key(user.username)])
        logger.info("Removed account %s", user.username)

    def authenticate(self, username: str, password: str) -> User:
        user_id = self.store.get(auth_key((username or "").strip()))
        if user_id:
            data = self.store.get(user_key(user_id))
            if data:
                user = User.from_dict(data)
                if verify_password(password or "", user.password_hash):
                    return user
        raise AuthenticationError("Invalid credentials")

    # ------------------------- Settings ------------------------- #
    def get_settings(self) -> LendingSettings:
        data = self.store.get(SETTINGS_KEY)
        return LendingSettings.from_dict(data) if data else LendingSettings()

    def update_settings(self, **changes: Any) -> LendingSettings:
        """Merge and validate a partial settings update. Existing loans keep their due dates."""
        with self._settings_lock:
            values = dict(vars(self.get_settings()))
            unknown = set(changes) - set(values)
            if unknown:
                raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
            values.update({k: v for k, v in changes.items() if v is not None})
            merged = LendingSettings(**values)
            self.store.set(SETTINGS_KEY, merged.to_dict())
        logger.info("Lending settings updated: %s", merged.to_dict())
        return merged

    # ------------------------- Lending ------------------------- #
    def borrow(self, book_id: str, user_id: str, now: Any = None,
               settings: Optional[LendingSettings] = None) -> BorrowRecord:
        """Lend one copy. Raises ``NotFound`` or ``Unavailable`` without changing anything."""
        today = self._today(now)
        settings = settings or self.get_settings()
        self._load_user(user_id)

        with self._book_lock(book_id):
            book = self._load_book(book_id)
            if book.available <= 0:
                raise Unavailable(f"Book '{book.title}' is not available")
            record = BorrowRecord.open(book_id, user_id, today, settings)
            book.available -= 1
            with self._index_lock:
                borrows = self._index(BORROW_LIST)
                borrows.append(record.id)
                self.store.set_many({
                    book_key(book.id): book.to_dict(),
                    borrow_key(record.id): record.to_dict(),
                    BORROW_LIST: borrows,
                })
        logger.info("Book %s lent to %s until %s", book_id, user_id, record.due_date)
        return record

    def return_book(self, borrow_id: str, now: Any = None, settings: Optional[LendingSettings] = None,
                    fine: Any = None) -> BorrowRecord:
        """Close an active loan, fix its fine and put the copy back on the shelf.

        ``fine`` overrides the computed amount (e.g. a waiver); it is still
        finalized once and never changes afterwards.
        """
        today = self._today(now)
        settings = settings or self.get_settings()
        book_id = self._load_record(borrow_id).book_id

        with self._book_lock(book_id, must_exist=False):
            record = self._load_record(borrow_id)
            if not record.is_active:
                raise AlreadyReturned(f"Borrow record {borrow_id} was already returned on {record.return_date}")
            if today < record.borrow_date:
                raise ValidationError("Return date cannot precede the borrow date")
            record.return_date = today
            if fine is not None:
                record.fine = to_money(fine)
            else:
                record.fine = compute_fine(record.due_date, today, settings.fine_per_day)

            values: Dict[str, Any] = {borrow_key(record.id): record.to_dict()}
            data = self.store.get(book_key(book_id))
            if data:
                book = Book.from_dict(data)
                book.available = min(book.quantity, book.available + 1)
                values[book_key(book_id)] = book.to_dict()
            else:
                logger.warning("Returned loan %s references missing book %s", borrow_id, book_id)
            self.store.set_many(values)
        logger.info("Loan %s returned on %s, fine %s", borrow_id, today, record.fine)
        return record

    def get_borrow(self, borrow_id: str) -> LoanView:
        return self._join([self._load_record(borrow_id)])[0]

    def list_borrows(self, active_only: bool = False, user_id: Optional[str] = None) -> List[LoanView]:
        records = self._all_records()
        if active_only:
            records = [r for r in records if r.is_active]
        if user_id:
            records = [r for r in records if r.user_id == user_id]
        return self._join(records)

    def outstanding_fine(self, record: BorrowRecord, as_of: Any = None,
                         settings: Optional[LendingSettings] = None) -> Decimal:
        """Fine a loan would carry if settled on ``as_of``; the final fine once returned."""
        if not record.is_active:
            return record.fine or Decimal("0")
        settings = settings or self.get_settings()
        return compute_fine(record.due_date, self._today(as_of), settings.fine_per_day)

    # ------------------------- Alerts & reports ------------------------- #
    def list_overdue(self, as_of: Any = None) -> List[LoanView]:
        today = self._today(as_of)
        return self._join([r for r in self._all_records() if r.is_overdue(today)])

    def list_low_stock(self, settings: Optional[LendingSettings] = None) -> List[Book]:
        settings = settings or self.get_settings()
        return [b for b in self.list_books() if b.available <= settings.low_stock_threshold]

    def rank_popular(self, limit: int = 10) -> List[Tuple[Book, int]]:
        """Books by total loans, most borrowed first.

        Ties keep catalog order, so titles nobody borrowed come out in the
        order they were added.
        """
        if limit < 0:
            raise ValidationError("limit must be >= 0")
        counts = Counter(r.book_id for r in self._all_records())
        ranked = sorted(self.list_books(), key=lambda b: counts[b.id], reverse=True)
        return [(b, counts[b.id]) for b in ranked[:limit]]

    def dashboard_stats(self, as_of: Any = None) -> Dict[str, Any]:
        """Headline numbers. ``total_fines`` counts finalized fines only."""
        today = self._today(as_of)
        settings = self.get_settings()
        books = self.list_books()
        records = self._all_records()
        return {
            "total_books": sum(b.quantity for b in books),
            "available_books": sum(b.available for b in books),
            "active_borrows": sum(1 for r in records if r.is_active),
            "overdue_count": sum(1 for r in records if r.is_overdue(today)),
            "low_stock_count": sum(1 for b in books if b.available <= settings.low_stock_threshold),
            "total_fines": sum((r.fine for r in records if r.fine is not None), Decimal("0")),
            "student_count": len(self.list_users(Role.STUDENT)),
        }

    def close(self) -> None:
        self.store.close()
