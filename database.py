"""SQLite persistence for the catalog and membership stores."""
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from dotenv import load_dotenv

from book import Author, Book, format_timestamp
from config import settings
from errors import Conflict, StoreUnavailable
from user import User

# Make sure .env is loaded before the default path is read, whatever the import order.
load_dotenv()

DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS authors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        full_name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        credential_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL CHECK (length(title) BETWEEN 3 AND 64),
        author_id INTEGER NOT NULL REFERENCES authors(id) ON DELETE CASCADE,
        on_loan INTEGER NOT NULL DEFAULT 0,
        borrower_id INTEGER REFERENCES users(id),
        loan_date TEXT,
        created_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        CHECK ((on_loan = 1) = (borrower_id IS NOT NULL)),
        CHECK ((on_loan = 1) = (loan_date IS NOT NULL))
    )
    """,
    # one row per held book; book_id is unique so a book has at most one holder,
    # and a held book cannot be deleted
    """
    CREATE TABLE IF NOT EXISTS user_loans (
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        book_id INTEGER NOT NULL UNIQUE REFERENCES books(id),
        position INTEGER NOT NULL,
        PRIMARY KEY (user_id, book_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author_id)",
    "CREATE INDEX IF NOT EXISTS idx_books_on_loan ON books(on_loan)",
)


def get_db_connection(path: Optional[str] = None, timeout: Optional[float] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly."""
    conn = sqlite3.connect(
        path or DATABASE_FILE,
        timeout=settings.db_timeout if timeout is None else timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def create_tables(path: Optional[str] = None) -> None:
    """Create the schema if it does not exist yet."""
    conn = get_db_connection(path)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


def initialize_database(path: Optional[str] = None) -> None:
    create_tables(path)


class SqliteStore:
    """Catalog, membership and transaction scope over one SQLite file.

    ``transaction()`` issues ``BEGIN IMMEDIATE``, which takes the database
    write lock up front: two scopes never interleave their read-validate-write
    sequences, so a Book or a User is never mutated by two scopes at once.
    """

    def __init__(self, path: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.path = path or DATABASE_FILE
        self.timeout = settings.db_timeout if timeout is None else timeout
        self._local = threading.local()
        try:
            initialize_database(self.path)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"Cannot open database {self.path}: {exc}") from exc

    # ------------------------- Connections ------------------------- #
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        scoped = getattr(self._local, "conn", None)
        if scoped is not None:
            try:
                yield scoped
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(str(exc)) from exc
            return
        conn = get_db_connection(self.path, self.timeout)
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self, book_id: Optional[int] = None, user_id: Optional[int] = None) -> Iterator["SqliteStore"]:
        if getattr(self._local, "conn", None) is not None:
            raise RuntimeError("Nested transactions are not supported.")
        conn = get_db_connection(self.path, self.timeout)
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(f"Could not start transaction: {exc}") from exc
            self._local.conn = conn
            try:
                yield self
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(f"Could not commit transaction: {exc}") from exc
        finally:
            self._local.conn = None
            conn.close()

    def ping(self) -> bool:
        with self._connection() as conn:
            conn.execute("SELECT 1")
        return True

    # ------------------------- Catalog ------------------------- #
    def find_book(self, book_id: int) -> Optional[Book]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def find_author(self, author_id: int) -> Optional[Author]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM authors WHERE id = ?", (author_id,)).fetchone()
        return Author.from_dict(dict(row)) if row else None

    def list_books(self, on_loan: Optional[bool] = None) -> List[Book]:
        with self._connection() as conn:
            if on_loan is None:
                rows = conn.execute("SELECT * FROM books ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM books WHERE on_loan = ? ORDER BY id", (int(on_loan),)
                ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def list_authors(self) -> List[Author]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM authors ORDER BY id").fetchall()
        return [Author.from_dict(dict(row)) for row in rows]

    def add_book(self, book: Book) -> Book:
        with self._connection() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO books (title, author_id, on_loan, borrower_id, loan_date, created_at, version) "
                    "VALUES (?, ?, 0, NULL, NULL, ?, 0)",
                    (book.title, book.author_id, format_timestamp(book.created_at)),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Author {book.author_id} does not exist.") from e
        book.id = cursor.lastrowid
        book.version = 0
        return book

    def save_book(self, book: Book) -> None:
        with self._connection() as conn:
            try:
                cursor = conn.execute(
                    """
                    UPDATE books
                       SET title = ?, author_id = ?, on_loan = ?, borrower_id = ?, loan_date = ?,
                           version = version + 1
                     WHERE id = ? AND version = ?
                    """,
                    (book.title, book.author_id, int(book.on_loan), book.borrower_id,
                     format_timestamp(book.loan_date), book.id, book.version),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Book {book.id} violates catalog constraints: {e}") from e
        if cursor.rowcount == 0:
            raise Conflict(f"Book {book.id} was modified or removed concurrently.")
        book.version += 1

    def delete_book(self, book_id: int) -> bool:
        with self._connection() as conn:
            try:
                cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Book {book_id} is on loan.") from e
        return cursor.rowcount > 0

    def add_author(self, author: Author) -> Author:
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT INTO authors (name, created_at) VALUES (?, ?)",
                (author.name, format_timestamp(author.created_at)),
            )
        author.id = cursor.lastrowid
        return author

    def delete_author(self, author_id: int) -> bool:
        # books go with the author through ON DELETE CASCADE
        with self._connection() as conn:
            try:
                cursor = conn.execute("DELETE FROM authors WHERE id = ?", (author_id,))
            except sqlite3.IntegrityError as e:
                raise ValueError(f"A book by author {author_id} is on loan.") from e
        return cursor.rowcount > 0

    # ------------------------- Membership ------------------------- #
    def _load_user(self, conn: sqlite3.Connection, row: sqlite3.Row) -> User:
        data = dict(row)
        loans = conn.execute(
            "SELECT book_id FROM user_loans WHERE user_id = ? ORDER BY position", (data["id"],)
        ).fetchall()
        data["loaned_books"] = [r["book_id"] for r in loans]
        return User.from_dict(data)

    def find_user(self, user_id: int) -> Optional[User]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._load_user(conn, row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
            return self._load_user(conn, row) if row else None

    def add_user(self, user: User) -> User:
        with self._connection() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO users (full_name, email, credential_hash, created_at) VALUES (?, ?, ?, ?)",
                    (user.full_name, user.email, user.credential_hash, format_timestamp(user.created_at)),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"A user with email {user.email} already exists.") from e
        user.id = cursor.lastrowid
        return user

    def save_user(self, user: User) -> None:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE users SET full_name = ?, email = ?, credential_hash = ? WHERE id = ?",
                (user.full_name, user.email, user.credential_hash, user.id),
            )
            if cursor.rowcount == 0:
                raise Conflict(f"User {user.id} no longer exists.")
            try:
                conn.execute("DELETE FROM user_loans WHERE user_id = ?", (user.id,))
                conn.executemany(
                    "INSERT INTO user_loans (user_id, book_id, position) VALUES (?, ?, ?)",
                    [(user.id, book_id, position) for position, book_id in enumerate(user.loaned_books)],
                )
            except sqlite3.IntegrityError as e:
                # another user already holds one of these books
                raise Conflict(f"Loaned books of user {user.id} collide with another holder: {e}") from e

    def close(self) -> None:
        return None
