from contextlib import contextmanager
from datetime import timedelta

from errors import ErrorKind
from loan_engine import LoanEngine


def _snapshot(lib, book_ids, user_ids):
    books = [lib.get_book(b).unwrap().to_dict() for b in book_ids]
    users = [lib.find_user(u).unwrap().loaned_books for u in user_ids]
    return books, users


def test_loan_sets_book_and_user(catalog, clock):
    lib, books, alice, _ = catalog
    result = lib.loan_book(books[0], alice)
    assert result.ok
    book = lib.get_book(books[0]).unwrap()
    assert book.on_loan is True
    assert book.borrower_id == alice
    assert book.loan_date == clock.now
    assert lib.find_user(alice).unwrap().loaned_books == [books[0]]
    assert lib.is_on_loan(books[0]).unwrap() is True


def test_quota_scenario(catalog):
    lib, books, alice, _ = catalog
    for book_id in books[:3]:
        assert lib.loan_book(book_id, alice).ok
    assert lib.find_user(alice).unwrap().loaned_books == books[:3]

    before = _snapshot(lib, books, [alice])
    result = lib.loan_book(books[3], alice)
    assert result.kind is ErrorKind.QUOTA_EXCEEDED
    assert _snapshot(lib, books, [alice]) == before
    assert lib.is_on_loan(books[3]).unwrap() is False


def test_loan_of_book_on_loan_is_refused(catalog):
    lib, books, alice, bob = catalog
    assert lib.loan_book(books[0], alice).ok
    before = _snapshot(lib, books, [alice, bob])

    result = lib.loan_book(books[0], bob)
    assert not result.ok
    assert result.kind is ErrorKind.ALREADY_LOANED
    assert _snapshot(lib, books, [alice, bob]) == before

    # same user asking twice is refused the same way
    assert lib.loan_book(books[0], alice).kind is ErrorKind.ALREADY_LOANED


def test_precondition_order(catalog):
    lib, books, alice, _ = catalog
    assert lib.loan_book(999, 12345).kind is ErrorKind.NOT_FOUND
    assert lib.loan_book(999, 12345).error.entity == "Book"
    missing_user = lib.loan_book(books[0], 12345)
    assert missing_user.kind is ErrorKind.NOT_FOUND
    assert missing_user.error.entity == "User"

    lib.loan_book(books[0], alice)
    # user existence is checked before the loan flag
    assert lib.loan_book(books[0], 12345).error.entity == "User"


def test_round_trip_restores_book(catalog, clock):
    lib, books, alice, _ = catalog
    original = lib.get_book(books[1]).unwrap()
    lib.loan_book(books[1], alice).unwrap()
    clock.advance(days=2)
    receipt = lib.return_book(books[1], alice).unwrap()

    assert receipt.fine_payable is False
    restored = lib.get_book(books[1]).unwrap()
    assert restored.on_loan is False
    assert restored.borrower_id is None
    assert restored.loan_date is None
    assert restored.title == original.title
    assert lib.find_user(alice).unwrap().loaned_books == []


def test_return_errors(catalog):
    lib, books, alice, bob = catalog
    assert lib.return_book(999, alice).kind is ErrorKind.NOT_FOUND
    assert lib.return_book(books[0], 999).kind is ErrorKind.NOT_FOUND
    assert lib.return_book(books[0], alice).kind is ErrorKind.NOT_ON_LOAN

    lib.loan_book(books[0], alice)
    before = _snapshot(lib, books, [alice, bob])
    result = lib.return_book(books[0], bob)
    assert result.kind is ErrorKind.NOT_BORROWER
    assert _snapshot(lib, books, [alice, bob]) == before


def test_return_frees_quota(catalog):
    lib, books, alice, _ = catalog
    for book_id in books[:3]:
        lib.loan_book(book_id, alice)
    lib.return_book(books[1], alice).unwrap()
    assert lib.find_user(alice).unwrap().loaned_books == [books[0], books[2]]
    assert lib.loan_book(books[3], alice).ok
    assert lib.find_user(alice).unwrap().loaned_books == [books[0], books[2], books[3]]


def test_invariants_hold_over_a_sequence(catalog, clock):
    lib, books, alice, bob = catalog
    steps = [
        ("loan", 0, alice), ("loan", 1, alice), ("loan", 0, bob), ("loan", 2, bob),
        ("loan", 3, alice), ("return", 0, bob), ("return", 0, alice), ("loan", 0, bob),
        ("loan", 2, alice), ("return", 2, bob), ("loan", 2, alice), ("loan", 1, bob),
    ]
    for op, index, user in steps:
        clock.advance(hours=6)
        if op == "loan":
            lib.loan_book(books[index], user)
        else:
            lib.return_book(books[index], user)

        for user_id in (alice, bob):
            held = lib.find_user(user_id).unwrap().loaned_books
            assert len(held) <= 3
            assert len(held) == len(set(held))
            for book_id in held:
                assert lib.get_book(book_id).unwrap().borrower_id == user_id
        for book in lib.list_books().unwrap():
            assert book.check_invariant()


def test_available_books_excludes_loans(catalog):
    lib, books, alice, _ = catalog
    lib.loan_book(books[2], alice)
    available = [b.id for b in lib.list_available_books().unwrap()]
    assert available == [books[0], books[1], books[3]]
    assert len(lib.list_books().unwrap()) == 4


def test_loans_for_lists_in_loan_order(catalog):
    lib, books, alice, _ = catalog
    lib.loan_book(books[3], alice)
    lib.loan_book(books[0], alice)
    assert [b.id for b in lib.loans_for(alice).unwrap()] == [books[3], books[0]]
    assert lib.loans_for(4242).kind is ErrorKind.NOT_FOUND


def test_get_book_not_found(any_lib):
    result = any_lib.get_book(77)
    assert result.kind is ErrorKind.NOT_FOUND
    assert any_lib.is_on_loan(77).kind is ErrorKind.NOT_FOUND


class _SlowScope:
    """Transaction scope that takes a while to acquire its locks."""

    def __init__(self, store, clock, delay):
        self.store = store
        self.clock = clock
        self.delay = delay

    @contextmanager
    def transaction(self, book_id=None, user_id=None):
        self.clock.advance(**self.delay)
        with self.store.transaction(book_id=book_id, user_id=user_id):
            yield self


def test_loan_date_is_taken_once_locks_are_held(memory_lib, memory_store, clock):
    author = memory_lib.create_author("Frank Herbert").unwrap()
    book = memory_lib.create_book("Dune", author.id).unwrap()
    user = memory_lib.register_user("Paul Reader", "paul@example.com", "pw").unwrap()
    engine = LoanEngine(memory_store, memory_store, _SlowScope(memory_store, clock, {"seconds": 30}), clock=clock)

    start = clock.now
    loaned = engine.loan_book(book.id, user.id).unwrap()
    assert loaned.loan_date == start + timedelta(seconds=30)


def test_return_time_is_taken_once_locks_are_held(memory_lib, memory_store, clock):
    author = memory_lib.create_author("Frank Herbert").unwrap()
    book = memory_lib.create_book("Dune", author.id).unwrap()
    user = memory_lib.register_user("Paul Reader", "paul@example.com", "pw").unwrap()
    memory_lib.loan_book(book.id, user.id).unwrap()
    engine = LoanEngine(memory_store, memory_store, _SlowScope(memory_store, clock, {"seconds": 1}), clock=clock)

    clock.advance(days=7)
    receipt = engine.return_book(book.id, user.id).unwrap()
    assert receipt.fine_payable is True
