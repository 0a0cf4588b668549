from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read a stored timestamp (ISO string or datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Author:
    """A book author. Books reference their author by id."""

    def __init__(self, name: str, id: Optional[int] = None, created_at: Optional[datetime] = None) -> None:
        self.id = id
        self.name = name.strip()
        self.created_at = created_at or utcnow()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return self.name

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "created_at": format_timestamp(self.created_at)}

    @staticmethod
    def from_dict(data: dict) -> "Author":
        return Author(name=data["name"], id=data.get("id"), created_at=parse_timestamp(data.get("created_at")))


class Book:
    """A single catalogued book and its circulation state.

    ``on_loan``, ``borrower_id`` and ``loan_date`` always move together: a book
    is either available (all three cleared) or on loan to exactly one user.
    """

    def __init__(self, title: str, author_id: int, id: Optional[int] = None,
                 on_loan: bool = False, borrower_id: Optional[int] = None,
                 loan_date: Optional[datetime] = None, created_at: Optional[datetime] = None,
                 version: int = 0) -> None:
        self.id = id
        self.title = title.strip()
        self.author_id = author_id
        self.on_loan = bool(on_loan)
        self.borrower_id = borrower_id
        self.loan_date = loan_date
        self.created_at = created_at or utcnow()
        self.version = version

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        state = f"on loan to user {self.borrower_id}" if self.on_loan else "available"
        return f"{self.title} (#{self.id}, {state})"

    def __repr__(self) -> str:
        return f"Book(id={self.id!r}, title={self.title!r}, on_loan={self.on_loan!r}, borrower_id={self.borrower_id!r})"

    def check_invariant(self) -> bool:
        return self.on_loan == (self.borrower_id is not None) == (self.loan_date is not None)

    def mark_loaned(self, user_id: int, when: datetime) -> None:
        self.on_loan = True
        self.borrower_id = user_id
        self.loan_date = when

    def mark_returned(self) -> None:
        self.on_loan = False
        self.borrower_id = None
        self.loan_date = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author_id": self.author_id,
            "on_loan": self.on_loan,
            "borrower_id": self.borrower_id,
            "loan_date": format_timestamp(self.loan_date),
            "created_at": format_timestamp(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # SQLite hands booleans back as 0/1 and timestamps as text
        return Book(
            title=data["title"],
            author_id=data["author_id"],
            id=data.get("id"),
            on_loan=bool(data.get("on_loan", False)),
            borrower_id=data.get("borrower_id"),
            loan_date=parse_timestamp(data.get("loan_date")),
            created_at=parse_timestamp(data.get("created_at")),
            version=data.get("version") or 0,
        )
