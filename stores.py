"""Store contracts used by the loan engine, plus an in-memory implementation.

The engine only talks to these protocols, so any persistence technology
that satisfies them is interchangeable. ``SqliteStore`` in ``database.py``
is the stock implementation; ``InMemoryStore`` backs tests and demos.
"""
from __future__ import annotations

import copy
import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Protocol, runtime_checkable

from book import Author, Book
from config import settings
from errors import Conflict, StoreUnavailable
from user import User

logger = logging.getLogger(__name__)


@runtime_checkable
class CatalogStore(Protocol):
    """Persists Book and Author records."""

    def find_book(self, book_id: int) -> Optional[Book]:
        ...

    def find_author(self, author_id: int) -> Optional[Author]:
        ...

    def list_books(self, on_loan: Optional[bool] = None) -> List[Book]:
        """All books ordered by id, optionally filtered on the loan flag."""
        ...

    def list_authors(self) -> List[Author]:
        ...

    def add_book(self, book: Book) -> Book:
        ...

    def save_book(self, book: Book) -> None:
        """Persist the full current state of ``book``.

        Raises ``Conflict`` when the stored version moved since ``book`` was read.
        """
        ...

    def delete_book(self, book_id: int) -> bool:
        ...

    def add_author(self, author: Author) -> Author:
        ...

    def delete_author(self, author_id: int) -> bool:
        """Delete the author and, by cascade, every book they wrote."""
        ...


@runtime_checkable
class MembershipStore(Protocol):
    """Persists User records and their loaned-book sets."""

    def find_user(self, user_id: int) -> Optional[User]:
        ...

    def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    def add_user(self, user: User) -> User:
        ...

    def save_user(self, user: User) -> None:
        ...


@runtime_checkable
class TransactionScope(Protocol):
    def transaction(self, book_id: Optional[int] = None, user_id: Optional[int] = None):
        """Context manager holding the given Book and User exclusively.

        Saves made while the scope is open are committed together when it
        exits normally and discarded when it exits with an exception.
        """
        ...


class InMemoryStore:
    """Dictionary-backed store implementing all three contracts.

    Records are copied on the way in and out, so a caller mutating an object
    it fetched never changes stored state without calling ``save_*``.
    """

    def __init__(self, lock_timeout: Optional[float] = None) -> None:
        self._books: Dict[int, Book] = {}
        self._authors: Dict[int, Author] = {}
        self._users: Dict[int, User] = {}
        self._book_ids = itertools.count(1)
        self._author_ids = itertools.count(1)
        self._user_ids = itertools.count(1)
        self._lock = threading.RLock()
        self._book_locks: Dict[int, threading.Lock] = {}
        self._user_locks: Dict[int, threading.Lock] = {}
        self._local = threading.local()
        self.lock_timeout = settings.lock_timeout if lock_timeout is None else lock_timeout

    # ------------------------- Transactions ------------------------- #
    def _staged(self) -> Optional[dict]:
        return getattr(self._local, "staged", None)

    def _record_lock(self, table: Dict[int, threading.Lock], key: int) -> threading.Lock:
        with self._lock:
            return table.setdefault(key, threading.Lock())

    @contextmanager
    def transaction(self, book_id: Optional[int] = None, user_id: Optional[int] = None) -> Iterator["InMemoryStore"]:
        held: List[threading.Lock] = []
        # fixed order (book, then user) so two scopes never wait on each other in a cycle
        wanted = []
        if book_id is not None:
            wanted.append(("book", self._record_lock(self._book_locks, book_id), book_id))
        if user_id is not None:
            wanted.append(("user", self._record_lock(self._user_locks, user_id), user_id))
        try:
            for name, lock, key in wanted:
                if not lock.acquire(timeout=self.lock_timeout):
                    raise StoreUnavailable(f"Timed out waiting for {name} {key}")
                held.append(lock)
            self._local.staged = {"books": {}, "users": {}}
            yield self
            self._commit(self._local.staged)
        finally:
            self._local.staged = None
            for lock in reversed(held):
                lock.release()

    def _commit(self, staged: dict) -> None:
        with self._lock:
            for book_id in staged["books"]:
                if book_id not in self._books:
                    raise Conflict(f"Book {book_id} was deleted during the transaction.")
            for book_id, book in staged["books"].items():
                self._books[book_id] = book
            for user_id, user in staged["users"].items():
                self._users[user_id] = user

    # ------------------------- Catalog ------------------------- #
    def find_book(self, book_id: int) -> Optional[Book]:
        staged = self._staged()
        if staged and book_id in staged["books"]:
            return copy.deepcopy(staged["books"][book_id])
        with self._lock:
            book = self._books.get(book_id)
            return copy.deepcopy(book) if book else None

    def find_author(self, author_id: int) -> Optional[Author]:
        with self._lock:
            author = self._authors.get(author_id)
            return copy.deepcopy(author) if author else None

    def list_books(self, on_loan: Optional[bool] = None) -> List[Book]:
        with self._lock:
            books = [self._books[k] for k in sorted(self._books)]
            if on_loan is not None:
                books = [b for b in books if b.on_loan == on_loan]
            return copy.deepcopy(books)

    def list_authors(self) -> List[Author]:
        with self._lock:
            return copy.deepcopy([self._authors[k] for k in sorted(self._authors)])

    def add_book(self, book: Book) -> Book:
        with self._lock:
            if book.author_id not in self._authors:
                raise ValueError(f"Author {book.author_id} does not exist.")
            book.id = next(self._book_ids)
            book.version = 0
            self._books[book.id] = copy.deepcopy(book)
        return book

    def save_book(self, book: Book) -> None:
        staged = self._staged()
        with self._lock:
            current = self._books.get(book.id)
            if staged is not None and book.id in staged["books"]:
                current = staged["books"][book.id]
            if current is None:
                raise Conflict(f"Book {book.id} no longer exists.")
            if current.version != book.version:
                raise Conflict(f"Book {book.id} was modified concurrently.")
            if book.author_id not in self._authors:
                raise ValueError(f"Author {book.author_id} does not exist.")
            if book.borrower_id is not None and book.borrower_id not in self._users:
                raise ValueError(f"User {book.borrower_id} does not exist.")
        stored = copy.deepcopy(book)
        stored.version = book.version + 1
        if staged is not None:
            staged["books"][book.id] = stored
        else:
            with self._lock:
                self._books[book.id] = stored
        book.version = stored.version

    def _check_not_held(self, book_ids: List[int]) -> None:
        for user in self._users.values():
            for book_id in book_ids:
                if user.holds(book_id):
                    raise ValueError(f"Book {book_id} is on loan to user {user.id}.")

    def delete_book(self, book_id: int) -> bool:
        with self._lock:
            self._check_not_held([book_id])
            return self._books.pop(book_id, None) is not None

    def add_author(self, author: Author) -> Author:
        with self._lock:
            author.id = next(self._author_ids)
            self._authors[author.id] = copy.deepcopy(author)
        return author

    def delete_author(self, author_id: int) -> bool:
        with self._lock:
            if author_id not in self._authors:
                return False
            book_ids = [k for k, b in self._books.items() if b.author_id == author_id]
            self._check_not_held(book_ids)
            del self._authors[author_id]
            for book_id in book_ids:
                del self._books[book_id]
            return True

    # ------------------------- Membership ------------------------- #
    def find_user(self, user_id: int) -> Optional[User]:
        staged = self._staged()
        if staged and user_id in staged["users"]:
            return copy.deepcopy(staged["users"][user_id])
        with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return copy.deepcopy(user)
        return None

    def add_user(self, user: User) -> User:
        with self._lock:
            if any(u.email == user.email for u in self._users.values()):
                raise ValueError(f"A user with email {user.email} already exists.")
            user.id = next(self._user_ids)
            self._users[user.id] = copy.deepcopy(user)
        return user

    def save_user(self, user: User) -> None:
        with self._lock:
            if user.id not in self._users:
                raise Conflict(f"User {user.id} no longer exists.")
        stored = copy.deepcopy(user)
        staged = self._staged()
        if staged is not None:
            staged["users"][user.id] = stored
        else:
            with self._lock:
                self._users[user.id] = stored

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None
