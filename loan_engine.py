"""Loan lifecycle: lending, returning and the late-return fine rule.

``LoanEngine`` holds no state of its own. Each mutating call is one
read-validate-mutate-persist transaction over a Book and a User, run inside
the store's transaction scope so the two records always move together.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from book import Book, utcnow
from config import settings
from errors import ErrorKind, Result, StoreError
from stores import CatalogStore, MembershipStore, TransactionScope

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
DEFAULT_QUOTA = 3
DEFAULT_LOAN_PERIOD = timedelta(days=7)
ON_TIME_MESSAGE = "Book returned on time."


def fine_payable(loan_date: datetime, returned_at: datetime, loan_period: timedelta = DEFAULT_LOAN_PERIOD) -> bool:
    """True when the book was held strictly longer than the loan period."""
    return (returned_at - loan_date) > loan_period


def fine_message(loan_period: timedelta = DEFAULT_LOAN_PERIOD) -> str:
    days = loan_period.total_seconds() / SECONDS_PER_DAY
    return f"Fine applies for exceeding the {days:g}-day loan period."


@dataclass(frozen=True)
class ReturnReceipt:
    book_id: int
    fine_payable: bool
    message: str
    days_on_loan: float

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "fine_payable": self.fine_payable,
            "message": self.message,
            "days_on_loan": self.days_on_loan,
        }


class LoanEngine:
    """Coordinates loans and returns across the catalog and membership stores."""

    def __init__(self, catalog: CatalogStore, members: MembershipStore, scope: TransactionScope,
                 clock: Optional[Callable[[], datetime]] = None, quota: Optional[int] = None,
                 loan_period: Optional[timedelta] = None) -> None:
        self.catalog = catalog
        self.members = members
        self.scope = scope
        self.clock = clock or utcnow
        self.quota = settings.loan_quota if quota is None else quota
        self.loan_period = loan_period or timedelta(days=settings.loan_period_days)

    # ------------------------- Helpers ------------------------- #
    def _now(self, now: Optional[datetime]) -> datetime:
        when = now or self.clock()
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return when

    @staticmethod
    def _refuse(kind: ErrorKind, message: str, entity: Optional[str] = None) -> Result:
        logger.info(f"Refused ({kind.value}): {message}")
        return Result.failure(kind, message, entity)

    @staticmethod
    def _not_found(entity: str, entity_id) -> Result:
        logger.info(f"Refused (NotFound): {entity} {entity_id} not found.")
        return Result.not_found(entity, entity_id)

    @staticmethod
    def _store_failure(exc: StoreError) -> Result:
        logger.warning(f"Store failure ({exc.kind.value}): {exc}")
        return Result.failure(exc.kind, str(exc))

    # ------------------------- Transitions ------------------------- #
    def loan_book(self, book_id: int, user_id: int, now: Optional[datetime] = None) -> Result:
        """Lend ``book_id`` to ``user_id``; the value is the updated Book."""
        try:
            with self.scope.transaction(book_id=book_id, user_id=user_id):
                # read the clock once both records are held
                when = self._now(now)
                book = self.catalog.find_book(book_id)
                if book is None:
                    return self._not_found("Book", book_id)
                user = self.members.find_user(user_id)
                if user is None:
                    return self._not_found("User", user_id)
                if book.on_loan:
                    return self._refuse(ErrorKind.ALREADY_LOANED, f"Book {book_id} is already on loan.", "Book")
                if len(user.loaned_books) >= self.quota:
                    return self._refuse(
                        ErrorKind.QUOTA_EXCEEDED,
                        f"User {user_id} cannot loan more than {self.quota} books.",
                        "User",
                    )

                book.mark_loaned(user.id, when)
                user.add_loan(book.id)
                self.catalog.save_book(book)
                self.members.save_user(user)
        except StoreError as exc:
            return self._store_failure(exc)

        logger.info(f"Book {book_id} loaned to user {user_id} ({len(user.loaned_books)}/{self.quota} held)")
        return Result.success(book)

    def return_book(self, book_id: int, user_id: int, now: Optional[datetime] = None) -> Result:
        """Take ``book_id`` back from ``user_id``; the value is a ``ReturnReceipt``."""
        try:
            with self.scope.transaction(book_id=book_id, user_id=user_id):
                # read the clock once both records are held
                when = self._now(now)
                book = self.catalog.find_book(book_id)
                if book is None:
                    return self._not_found("Book", book_id)
                user = self.members.find_user(user_id)
                if user is None:
                    return self._not_found("User", user_id)
                if not book.on_loan:
                    return self._refuse(ErrorKind.NOT_ON_LOAN, f"Book {book_id} is not on loan.", "Book")
                if not user.holds(book.id):
                    return self._refuse(
                        ErrorKind.NOT_BORROWER, f"User {user_id} has not loaned book {book_id}.", "User"
                    )

                elapsed = when - book.loan_date
                fined = fine_payable(book.loan_date, when, self.loan_period)
                book.mark_returned()
                user.remove_loan(book.id)
                self.catalog.save_book(book)
                self.members.save_user(user)
        except StoreError as exc:
            return self._store_failure(exc)

        receipt = ReturnReceipt(
            book_id=book_id,
            fine_payable=fined,
            message=fine_message(self.loan_period) if fined else ON_TIME_MESSAGE,
            days_on_loan=round(elapsed.total_seconds() / SECONDS_PER_DAY, 2),
        )
        logger.info(f"Book {book_id} returned by user {user_id} after {receipt.days_on_loan} days (fine={fined})")
        return Result.success(receipt)

    # ------------------------- Queries ------------------------- #
    def get_book(self, book_id: int) -> Result:
        try:
            book = self.catalog.find_book(book_id)
        except StoreError as exc:
            return self._store_failure(exc)
        if book is None:
            return Result.not_found("Book", book_id)
        return Result.success(book)

    def list_books(self) -> Result:
        try:
            return Result.success(self.catalog.list_books())
        except StoreError as exc:
            return self._store_failure(exc)

    def list_available_books(self) -> Result:
        try:
            return Result.success(self.catalog.list_books(on_loan=False))
        except StoreError as exc:
            return self._store_failure(exc)

    def is_on_loan(self, book_id: int) -> Result:
        found = self.get_book(book_id)
        if not found.ok:
            return found
        return Result.success(found.value.on_loan)

    def loans_for(self, user_id: int) -> Result:
        """Books currently held by ``user_id``, in the order they were loaned."""
        try:
            user = self.members.find_user(user_id)
            if user is None:
                return Result.not_found("User", user_id)
            books: List[Book] = []
            for book_id in user.loaned_books:
                book = self.catalog.find_book(book_id)
                if book is not None:
                    books.append(book)
        except StoreError as exc:
            return self._store_failure(exc)
        return Result.success(books)
