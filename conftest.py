from datetime import datetime, timedelta, timezone

import pytest

from library import Library
from stores import InMemoryStore


class FixedClock:
    """Test clock; call it for 'now', ``advance`` to move time forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store():
    return InMemoryStore(lock_timeout=2)


@pytest.fixture
def memory_lib(memory_store, clock):
    return Library(store=memory_store, clock=clock)


@pytest.fixture
def lib(tmp_path, request, clock):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.originalname}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_lib(request, tmp_path, clock):
    """The same Library API over each store implementation."""
    if request.param == "memory":
        return Library(store=InMemoryStore(lock_timeout=2), clock=clock)
    return Library(db_file=str(tmp_path / "circulation.db"), clock=clock)


@pytest.fixture
def catalog(any_lib):
    """One author, four books and two members: returns (lib, book_ids, alice_id, bob_id)."""
    author = any_lib.create_author("Ursula K. Le Guin").unwrap()
    titles = ["A Wizard of Earthsea", "The Left Hand of Darkness", "The Dispossessed", "The Lathe of Heaven"]
    book_ids = [any_lib.create_book(t, author.id).unwrap().id for t in titles]
    alice = any_lib.register_user("Alice Reader", "alice@example.com", "s3cret").unwrap()
    bob = any_lib.register_user("Bob Borrower", "bob@example.com", "hunter2").unwrap()
    return any_lib, book_ids, alice.id, bob.id
