import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from errors import (
    BookNotAvailable,
    BookNotBorrowed,
    BookNotFound,
    BorrowingNotActive,
    BorrowingNotFound,
    Conflict,
    NotFound,
    ReconciliationRequired,
    Unavailable,
    UserNotFound,
    ValidationError,
)
from library import Library
from models import BookStatus, Borrowing, BorrowingStatus
from repositories import BookRepository, BorrowingRepository


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def clocked(db_file, clock):
    lib = Library(db_file=db_file, clock=clock, strict_isbn=False)
    yield lib
    lib.close()


@pytest.fixture
def book(lib):
    return lib.add_book("The Left Hand of Darkness", "Ursula K. Le Guin", "9780441478125")


@pytest.fixture
def user(lib):
    return lib.add_user("Ada", "ada@example.com")


def assert_consistent(lib):
    """A book is BORROWED exactly when it has one ACTIVE borrowing."""
    active = lib.lifecycle.list_borrowings(status=BorrowingStatus.ACTIVE)
    for b in lib.list_books(limit=100).items:
        open_loans = [x for x in active if x.book_id == b.id]
        if b.status is BookStatus.BORROWED:
            assert len(open_loans) == 1
        else:
            assert open_loans == []
    assert lib.lifecycle.reconcile() == []


# ------------------------- BeginBorrow ------------------------- #
def test_borrow_then_return_round_trip(lib, book, user):
    borrowing = lib.borrow(book.id, user.id)
    assert borrowing.status is BorrowingStatus.ACTIVE
    assert borrowing.return_date is None
    assert lib.get_book(book.id).status is BookStatus.BORROWED
    assert_consistent(lib)

    returned = lib.return_borrowing(borrowing.id)
    assert returned.status is BorrowingStatus.RETURNED
    assert returned.return_date is not None
    assert returned.return_date >= returned.borrow_date
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE
    assert_consistent(lib)


def test_default_due_date_is_fourteen_days(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")

    borrowing = clocked.borrow(book.id, user.id)

    assert borrowing.borrow_date == clock.now
    assert borrowing.due_date == borrowing.borrow_date + timedelta(days=14)
    stored = clocked.lifecycle.get_borrowing(borrowing.id)
    assert stored.borrow_date == borrowing.borrow_date
    assert stored.due_date == borrowing.due_date


def test_requested_due_date_is_kept(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")
    due = clock.now + timedelta(days=3)

    borrowing = clocked.borrow(book.id, user.id, due)

    assert borrowing.due_date == due


def test_naive_due_date_is_taken_as_utc(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")

    borrowing = clocked.borrow(book.id, user.id, datetime(2026, 3, 9))

    assert borrowing.due_date == datetime(2026, 3, 9, tzinfo=timezone.utc)


def test_due_date_in_the_past_is_rejected(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")

    with pytest.raises(ValidationError) as exc:
        clocked.borrow(book.id, user.id, clock.now - timedelta(days=1))

    assert exc.value.field == "dueDate"
    assert clocked.get_book(book.id).status is BookStatus.AVAILABLE
    assert clocked.list_borrowings() == []


def test_second_borrow_is_rejected(lib, book, user):
    other = lib.add_user("Grace", "grace@example.com")
    first = lib.borrow(book.id, user.id)

    with pytest.raises(BookNotAvailable) as exc:
        lib.borrow(book.id, other.id)

    assert isinstance(exc.value, Conflict)
    assert exc.value.reason == "BookNotAvailable"
    active = lib.lifecycle.list_borrowings(book_id=book.id, status=BorrowingStatus.ACTIVE)
    assert [b.id for b in active] == [first.id]
    assert_consistent(lib)


@pytest.mark.parametrize("status", ["LOST", "MAINTENANCE"])
def test_borrow_of_unavailable_book_is_rejected(lib, user, status):
    book = lib.add_book("Solaris", "Stanislaw Lem", "9780156027601", status=status)

    with pytest.raises(BookNotAvailable):
        lib.borrow(book.id, user.id)

    assert lib.get_book(book.id).status.value == status
    assert lib.list_borrowings() == []


def test_borrow_unknown_book(lib, user):
    with pytest.raises(BookNotFound) as exc:
        lib.borrow("book-404", user.id)

    assert isinstance(exc.value, NotFound)
    assert exc.value.entity == "Book"
    assert exc.value.id == "book-404"
    assert lib.list_borrowings() == []


def test_borrow_unknown_user(lib, book):
    with pytest.raises(UserNotFound) as exc:
        lib.borrow(book.id, "user-404")

    assert exc.value.entity == "User"
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE
    assert lib.list_borrowings() == []


def test_unknown_book_is_reported_before_unknown_user(lib):
    with pytest.raises(BookNotFound):
        lib.borrow("book-404", "user-404")


def test_failed_borrow_leaves_no_partial_state(lib, book, user, monkeypatch):
    def boom(self, borrowing):
        raise RuntimeError("disk full")

    monkeypatch.setattr(BorrowingRepository, "insert", boom)

    with pytest.raises(RuntimeError):
        lib.borrow(book.id, user.id)

    assert lib.get_book(book.id).status is BookStatus.AVAILABLE
    assert lib.list_borrowings() == []


def test_lost_claim_is_retried_once(lib, book, user, monkeypatch):
    original = BookRepository.update_status
    calls = []

    def lose_first_claim(self, book_id, expected, new):
        calls.append(new)
        if len(calls) == 1:
            return False
        return original(self, book_id, expected, new)

    monkeypatch.setattr(BookRepository, "update_status", lose_first_claim)

    borrowing = lib.borrow(book.id, user.id)

    assert calls == [BookStatus.BORROWED, BookStatus.BORROWED]
    monkeypatch.undo()
    assert lib.get_book(book.id).status is BookStatus.BORROWED
    assert [b.id for b in lib.list_borrowings()] == [borrowing.id]
    assert_consistent(lib)


def test_claim_lost_twice_is_not_available(lib, book, user, monkeypatch):
    calls = []

    def always_lose(self, book_id, expected, new):
        calls.append(new)
        return False

    monkeypatch.setattr(BookRepository, "update_status", always_lose)

    with pytest.raises(BookNotAvailable) as exc:
        lib.borrow(book.id, user.id)

    assert len(calls) == 2
    assert exc.value.book_id == book.id
    monkeypatch.undo()
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE
    assert lib.list_borrowings() == []


@pytest.mark.integration
def test_concurrent_borrows_have_one_winner(lib, book):
    users = [lib.add_user(f"Reader {i}", f"reader{i}@example.com") for i in range(8)]
    barrier = threading.Barrier(len(users))
    wins, losses, other = [], [], []

    def attempt(user_id):
        barrier.wait()
        try:
            wins.append(lib.borrow(book.id, user_id))
        except BookNotAvailable:
            losses.append(user_id)
        except Exception as e:  # surfaced through the assertions below
            other.append(e)

    threads = [threading.Thread(target=attempt, args=(u.id,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert other == []
    assert len(wins) == 1
    assert len(losses) == len(users) - 1
    assert lib.get_book(book.id).status is BookStatus.BORROWED
    assert len(lib.lifecycle.list_borrowings(book_id=book.id)) == 1
    assert_consistent(lib)


def test_list_books_page_beyond_store_range(lib, book):
    with pytest.raises(ValidationError) as exc:
        lib.list_books(page=10 ** 19, limit=10)

    assert exc.value.field == "page"


# ------------------------- CompleteReturn ------------------------- #
def test_return_twice_is_rejected(lib, book, user):
    borrowing = lib.borrow(book.id, user.id)
    lib.return_borrowing(borrowing.id)

    with pytest.raises(BorrowingNotActive) as exc:
        lib.return_borrowing(borrowing.id)

    assert exc.value.reason == "BorrowingNotActive"
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE


def test_return_unknown_borrowing(lib):
    with pytest.raises(BorrowingNotFound) as exc:
        lib.return_borrowing("missing")

    assert exc.value.entity == "Borrowing"


def test_book_can_be_borrowed_again_after_return(lib, book, user):
    first = lib.borrow(book.id, user.id)
    lib.return_borrowing(first.id)

    second = lib.borrow(book.id, user.id)

    assert second.id != first.id
    assert len(lib.borrowings_for_book(book.id)) == 2
    assert_consistent(lib)


def test_return_date_uses_clock(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")
    borrowing = clocked.borrow(book.id, user.id)
    clock.advance(days=2)

    returned = clocked.return_borrowing(borrowing.id)

    assert returned.return_date == clock.now


def test_return_date_never_precedes_borrow_date(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")
    borrowing = clocked.borrow(book.id, user.id)
    clock.advance(hours=-1)

    returned = clocked.return_borrowing(borrowing.id)

    assert returned.return_date == borrowing.borrow_date


def test_failed_return_leaves_borrowing_active(lib, book, user, monkeypatch):
    borrowing = lib.borrow(book.id, user.id)
    original = BookRepository.update_status

    def fail_on_release(self, book_id, expected, new):
        if new is BookStatus.AVAILABLE:
            raise RuntimeError("connection reset")
        return original(self, book_id, expected, new)

    monkeypatch.setattr(BookRepository, "update_status", fail_on_release)

    with pytest.raises(RuntimeError):
        lib.return_borrowing(borrowing.id)

    monkeypatch.undo()
    assert lib.lifecycle.get_borrowing(borrowing.id).status is BorrowingStatus.ACTIVE
    assert lib.get_book(book.id).status is BookStatus.BORROWED
    assert_consistent(lib)


def test_return_by_book(lib, book, user):
    borrowing = lib.borrow(book.id, user.id)

    returned = lib.lifecycle.return_book(book.id)

    assert returned.id == borrowing.id
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE


def test_return_by_book_without_active_borrowing(lib, book):
    with pytest.raises(BookNotBorrowed) as exc:
        lib.lifecycle.return_book(book.id)

    assert exc.value.reason == "BookNotBorrowed"
    assert exc.value.message == f"Book {book.id} has no active borrowing to return (status: AVAILABLE)."


# ------------------------- Overdue ------------------------- #
def test_overdue_is_derived_not_stored(clocked, clock):
    book = clocked.add_book("Dune", "Frank Herbert", "9780441013593")
    user = clocked.add_user("Bo", "bo@example.com")
    borrowing = clocked.borrow(book.id, user.id)
    assert clocked.lifecycle.list_overdue() == []

    clock.advance(days=15)

    overdue = clocked.lifecycle.list_overdue()
    assert [b.id for b in overdue] == [borrowing.id]
    assert overdue[0].status is BorrowingStatus.ACTIVE
    assert overdue[0].effective_status(clock.now) is BorrowingStatus.OVERDUE
    assert [b.id for b in clocked.list_borrowings(status="OVERDUE")] == [borrowing.id]
    assert clocked.get_statistics()["overdue_borrowings"] == 1

    returned = clocked.return_borrowing(borrowing.id)
    assert returned.effective_status(clock.now) is BorrowingStatus.RETURNED
    assert clocked.lifecycle.list_overdue() == []


# ------------------------- Reconciliation and availability ------------------------- #
def test_reconcile_reports_borrowed_book_without_borrowing(lib, book):
    with lib.db.transaction() as conn:
        conn.execute("UPDATE books SET status = 'BORROWED' WHERE id = ?", (book.id,))

    mismatches = lib.lifecycle.reconcile()

    assert [(m.book_id, m.problem) for m in mismatches] == [
        (book.id, "borrowed_without_active_borrowing")
    ]
    with pytest.raises(ReconciliationRequired):
        lib.lifecycle.assert_consistent()


def test_borrow_on_legacy_mismatch_requires_reconciliation(lib, book, user, clock):
    legacy = Borrowing(book_id=book.id, user_id=user.id,
                       borrow_date=clock.now, due_date=clock.now + timedelta(days=14))
    with lib.db.transaction() as conn:
        BorrowingRepository(conn).insert(legacy)

    mismatches = lib.lifecycle.reconcile()
    assert [m.problem for m in mismatches] == ["active_borrowing_on_unborrowed_book"]
    assert mismatches[0].borrowing_ids == [legacy.id]

    with pytest.raises(ReconciliationRequired) as exc:
        lib.borrow(book.id, user.id)

    assert exc.value.to_dict()["mismatches"][0]["bookId"] == book.id
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE
    assert len(lib.borrowings_for_book(book.id)) == 1


def test_only_one_active_borrowing_per_book_in_store(lib, book, user, clock):
    def loan():
        return Borrowing(book_id=book.id, user_id=user.id,
                         borrow_date=clock.now, due_date=clock.now + timedelta(days=1))

    with lib.db.transaction() as conn:
        BorrowingRepository(conn).insert(loan())
    with pytest.raises(sqlite3.IntegrityError):
        with lib.db.transaction() as conn:
            BorrowingRepository(conn).insert(loan())


def test_store_lock_past_deadline_is_unavailable(db_file, book, user):
    lib = Library(db_file=db_file, timeout=0.2)
    holder = sqlite3.connect(db_file, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(Unavailable) as exc:
            lib.borrow(book.id, user.id)
    finally:
        holder.execute("ROLLBACK")
        holder.close()
        lib.close()

    assert exc.value.retryable is True
    assert exc.value.rpc_status == "UNAVAILABLE"


def test_closed_store_is_unavailable(lib, book, user):
    lib.close()

    with pytest.raises(Unavailable):
        lib.borrow(book.id, user.id)
