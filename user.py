from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from book import format_timestamp, parse_timestamp, utcnow


class User:
    """A registered library member and the books they currently hold."""

    def __init__(self, full_name: str, email: str, credential_hash: str = "",
                 id: Optional[int] = None, created_at: Optional[datetime] = None,
                 loaned_books: Optional[Iterable[int]] = None) -> None:
        self.id = id
        self.full_name = full_name.strip()
        self.email = email.strip().lower()
        self.credential_hash = credential_hash
        self.created_at = created_at or utcnow()
        self.loaned_books: List[int] = []
        for book_id in loaned_books or []:
            self.add_loan(book_id)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.full_name} <{self.email}>"

    def __repr__(self) -> str:
        return f"User(id={self.id!r}, email={self.email!r}, loaned_books={self.loaned_books!r})"

    def holds(self, book_id: int) -> bool:
        return book_id in self.loaned_books

    def add_loan(self, book_id: int) -> None:
        # ordered set: a book is never listed twice
        if book_id not in self.loaned_books:
            self.loaned_books.append(book_id)

    def remove_loan(self, book_id: int) -> None:
        if book_id in self.loaned_books:
            self.loaned_books.remove(book_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "created_at": format_timestamp(self.created_at),
            "loaned_books": list(self.loaned_books),
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            full_name=data["full_name"],
            email=data["email"],
            credential_hash=data.get("credential_hash", ""),
            id=data.get("id"),
            created_at=parse_timestamp(data.get("created_at")),
            loaned_books=data.get("loaned_books") or [],
        )
