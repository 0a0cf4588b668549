import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional

from auth import AccessGuard, hash_password, verify_password
from book import Author, Book
from database import SqliteStore
from errors import ErrorKind, Result, StoreError
from loan_engine import LoanEngine
from reporting import LibraryReport
from user import User
from utils.validators import TITLE_MAX_LENGTH, TITLE_MIN_LENGTH, TextValidator

logger = logging.getLogger(__name__)


def store_guarded(func):
    """Turn store-level exceptions raised inside ``func`` into failed results."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StoreError as exc:
            logger.warning(f"{func.__name__} failed at store level: {exc}")
            return Result.failure(exc.kind, str(exc))
    return wrapper


class Library:
    """Wires a store to the loan engine and handles catalog management.

    The store must implement the catalog, membership and transaction-scope
    contracts from ``stores``; a ``SqliteStore`` on ``db_file`` is used when
    none is given.
    """

    def __init__(self, store: Any = None, db_file: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 guard: Optional[AccessGuard] = None) -> None:
        self.store = store if store is not None else SqliteStore(db_file)
        self.engine = LoanEngine(self.store, self.store, self.store, clock=clock)
        self.guard = guard or AccessGuard()

    # ------------------------- Circulation ------------------------- #
    def loan_book(self, book_id: int, user_id: int, now: Optional[datetime] = None) -> Result:
        return self.engine.loan_book(book_id, user_id, now=now)

    def return_book(self, book_id: int, user_id: int, now: Optional[datetime] = None) -> Result:
        return self.engine.return_book(book_id, user_id, now=now)

    def get_book(self, book_id: int) -> Result:
        return self.engine.get_book(book_id)

    def list_books(self) -> Result:
        return self.engine.list_books()

    def list_available_books(self) -> Result:
        return self.engine.list_available_books()

    def is_on_loan(self, book_id: int) -> Result:
        return self.engine.is_on_loan(book_id)

    def loans_for(self, user_id: int) -> Result:
        return self.engine.loans_for(user_id)

    # ------------------------- Catalog management ------------------------- #
    @store_guarded
    def create_author(self, name: str) -> Result:
        if not TextValidator.validate_name(name):
            return Result.failure(ErrorKind.INVALID, "Author name must not be empty or numeric.", "Author")
        author = self.store.add_author(Author(name=TextValidator.sanitize_text(name)))
        logger.info(f"Author {author.id} created: {author.name}")
        return Result.success(author)

    @store_guarded
    def delete_author(self, author_id: int) -> Result:
        """Delete an author together with all of their books."""
        try:
            deleted = self.store.delete_author(author_id)
        except ValueError as e:
            return Result.failure(ErrorKind.ALREADY_LOANED, str(e), "Book")
        if not deleted:
            return Result.not_found("Author", author_id)
        logger.info(f"Author {author_id} deleted with their books")
        return Result.success(True)

    @staticmethod
    def _invalid_title(title: Optional[str]) -> Optional[Result]:
        if not TextValidator.validate_title(title):
            return Result.failure(
                ErrorKind.INVALID,
                f"Title must be {TITLE_MIN_LENGTH}-{TITLE_MAX_LENGTH} characters long.",
                "Book",
            )
        return None

    @store_guarded
    def create_book(self, title: str, author_id: int) -> Result:
        title = TextValidator.sanitize_text(title)
        invalid = self._invalid_title(title)
        if invalid:
            return invalid
        if self.store.find_author(author_id) is None:
            return Result.failure(
                ErrorKind.NOT_FOUND,
                "The author for this book does not exist, please double check.",
                "Author",
            )
        try:
            book = self.store.add_book(Book(title=title, author_id=author_id))
        except ValueError as e:
            # author removed between the check and the insert
            return Result.failure(ErrorKind.NOT_FOUND, str(e), "Author")
        logger.info(f"Book {book.id} created: {book.title}")
        return Result.success(book)

    @store_guarded
    def update_book(self, book_id: int, title: Optional[str] = None, author_id: Optional[int] = None) -> Result:
        """Change the title and/or author of a book; circulation fields are left alone."""
        if title is None and author_id is None:
            return Result.failure(ErrorKind.INVALID, "Provide a title and/or an author to update.", "Book")
        if title is not None:
            title = TextValidator.sanitize_text(title)
            invalid = self._invalid_title(title)
            if invalid:
                return invalid
        if author_id is not None and self.store.find_author(author_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "This author does not exist.", "Author")

        with self.store.transaction(book_id=book_id):
            book = self.store.find_book(book_id)
            if book is None:
                return Result.not_found("Book", book_id)
            if title is not None:
                book.title = title
            if author_id is not None:
                book.author_id = author_id
            try:
                self.store.save_book(book)
            except ValueError as e:
                return Result.failure(ErrorKind.INVALID, str(e), "Book")
        logger.info(f"Book {book_id} updated")
        return Result.success(book)

    @store_guarded
    def delete_book(self, book_id: int) -> Result:
        book = self.store.find_book(book_id)
        if book is None:
            return Result.not_found("Book", book_id)
        if book.on_loan:
            return Result.failure(ErrorKind.ALREADY_LOANED, f"Book {book_id} is on loan and cannot be deleted.", "Book")
        try:
            deleted = self.store.delete_book(book_id)
        except ValueError as e:
            return Result.failure(ErrorKind.ALREADY_LOANED, str(e), "Book")
        if not deleted:
            return Result.not_found("Book", book_id)
        logger.info(f"Book {book_id} deleted")
        return Result.success(True)

    @store_guarded
    def list_authors(self) -> Result:
        return Result.success(self.store.list_authors())

    @store_guarded
    def get_author(self, author_id: int) -> Result:
        author = self.store.find_author(author_id)
        if author is None:
            return Result.not_found("Author", author_id)
        return Result.success(author)

    @store_guarded
    def books_by_author(self, author_id: int) -> Result:
        """The books written by ``author_id``, ordered by id."""
        if self.store.find_author(author_id) is None:
            return Result.not_found("Author", author_id)
        return Result.success([b for b in self.store.list_books() if b.author_id == author_id])

    # ------------------------- Membership ------------------------- #
    @store_guarded
    def register_user(self, full_name: str, email: str, password: str) -> Result:
        if not TextValidator.validate_name(full_name):
            return Result.failure(ErrorKind.INVALID, "Full name must not be empty or numeric.", "User")
        if not TextValidator.validate_email(email):
            return Result.failure(ErrorKind.INVALID, f"Invalid email address: {email}", "User")
        if not password:
            return Result.failure(ErrorKind.INVALID, "Password must not be empty.", "User")
        user = User(full_name=full_name, email=email, credential_hash=hash_password(password))
        try:
            self.store.add_user(user)
        except ValueError as e:
            return Result.failure(ErrorKind.INVALID, str(e), "User")
        logger.info(f"User {user.id} registered: {user.email}")
        return Result.success(user)

    @store_guarded
    def find_user(self, user_id: int) -> Result:
        user = self.store.find_user(user_id)
        if user is None:
            return Result.not_found("User", user_id)
        return Result.success(user)

    @store_guarded
    def issue_token(self, email: str, password: str) -> Result:
        """Check email/password and hand back a bearer token for the user."""
        user = self.store.find_user_by_email(email)
        if user is None or not verify_password(password, user.credential_hash):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid email or password.")
        return Result.success(self.guard.issue_token(user.id))

    # ------------------------- Reporting ------------------------- #
    @store_guarded
    def get_statistics(self) -> Result:
        books = self.store.list_books()
        on_loan = sum(1 for b in books if b.on_loan)
        stats: Dict[str, int] = {
            "total_books": len(books),
            "unique_authors": len({b.author_id for b in books}),
            "on_loan": on_loan,
            "available": len(books) - on_loan,
        }
        return Result.success(stats)

    @store_guarded
    def build_report(self, now: Optional[datetime] = None) -> Result:
        report = LibraryReport.build(self.store, now=now or self.engine.clock(), loan_period=self.engine.loan_period)
        return Result.success(report)

    def close(self) -> None:
        """Release store resources; connections are per-operation so this is usually a no-op."""
        self.store.close()
