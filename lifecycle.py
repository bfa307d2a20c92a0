"""Borrowing lifecycle: the only place where a book and its borrowings change together.

A book is AVAILABLE ⇄ BORROWED and a borrowing is ACTIVE → RETURNED. Both
transitions of a borrow (or of a return) are committed in one store
transaction, so a book is BORROWED exactly when it has one ACTIVE borrowing.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from database import Database, Deadline
from errors import (
    BookNotAvailable,
    BookNotBorrowed,
    BookNotFound,
    BorrowingNotActive,
    BorrowingNotFound,
    ReconciliationRequired,
    UserNotFound,
    ValidationError,
)
from models import Book, BookStatus, Borrowing, BorrowingStatus, utcnow
from repositories import (
    BookFilter,
    BookRepository,
    BorrowingRepository,
    SortSpec,
    UserRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_LOAN_DAYS = 14

# OFFSET is bound as a signed 64-bit integer
SQLITE_MAX_INT = 2 ** 63 - 1


@dataclass
class BookPage:
    items: List[Book]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total_count + self.limit - 1) // self.limit

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages


@dataclass
class Mismatch:
    """A book/borrowing pairing that breaks the BORROWED ⇔ one ACTIVE borrowing rule."""

    book_id: str
    problem: str
    book_status: Optional[str] = None
    borrowing_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "bookId": self.book_id,
            "problem": self.problem,
            "bookStatus": self.book_status,
            "borrowingIds": list(self.borrowing_ids),
        }


class _ClaimLost(Exception):
    """The conditional book update did not apply; the transaction is rolled back."""


class BorrowingLifecycleManager:
    """Owns ``Book.status`` and ``Borrowing.status`` transitions."""

    def __init__(self, db: Database, loan_days: int = DEFAULT_LOAN_DAYS,
                 timeout: float = 5.0, max_page_size: int = 100,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.loan_days = loan_days
        self.timeout = timeout
        self.max_page_size = max_page_size
        self.clock = clock

    # ------------------------- Transitions ------------------------- #
    def begin_borrow(self, book_id: str, user_id: str,
                     requested_due_date: Optional[datetime] = None) -> Borrowing:
        """Lend an AVAILABLE book to an existing user.

        Creates an ACTIVE borrowing and marks the book BORROWED in one
        transaction. The book is claimed with a conditional update on
        ``status == AVAILABLE``; if the claim does not apply it is retried once
        and then rejected with ``BookNotAvailable``.
        """
        deadline = Deadline(self.timeout)
        now = self.clock()
        due_date = self._resolve_due_date(now, requested_due_date)

        for attempt in (1, 2):
            try:
                with self.db.transaction(timeout=deadline.check("BeginBorrow")) as conn:
                    books = BookRepository(conn)
                    users = UserRepository(conn)
                    borrowings = BorrowingRepository(conn)

                    book = books.find_by_id(book_id)
                    if book is None:
                        raise BookNotFound(book_id)
                    if not users.exists(user_id):
                        raise UserNotFound(user_id)
                    if book.status is not BookStatus.AVAILABLE:
                        raise BookNotAvailable(book_id, book.status.value)

                    if not books.update_status(book_id, BookStatus.AVAILABLE, BookStatus.BORROWED):
                        raise _ClaimLost()
                    try:
                        borrowing = borrowings.insert(Borrowing(
                            book_id=book_id,
                            user_id=user_id,
                            borrow_date=now,
                            due_date=due_date,
                        ))
                    except sqlite3.IntegrityError as e:
                        # An ACTIVE borrowing already exists for a book that was AVAILABLE
                        active = borrowings.find_active(book_id)
                        raise ReconciliationRequired([Mismatch(
                            book_id=book_id,
                            problem="active_borrowing_on_unborrowed_book",
                            book_status=BookStatus.AVAILABLE.value,
                            borrowing_ids=[active.id] if active else [],
                        )]) from e
            except _ClaimLost:
                logger.warning(f"Claim on book {book_id} lost (attempt {attempt})")
                continue
            except (BookNotFound, UserNotFound, BookNotAvailable) as e:
                logger.warning(f"Borrow rejected: {e}")
                raise
            logger.info(f"Book {book_id} borrowed by user {user_id} as {borrowing.id}, due {due_date.isoformat()}")
            return borrowing

        logger.warning(f"Borrow rejected: book {book_id} claimed concurrently")
        raise BookNotAvailable(book_id)

    def complete_return(self, borrowing_id: str) -> Borrowing:
        """Close an ACTIVE borrowing and make its book AVAILABLE again, atomically."""
        deadline = Deadline(self.timeout)
        with self.db.transaction(timeout=deadline.check("CompleteReturn")) as conn:
            books = BookRepository(conn)
            borrowings = BorrowingRepository(conn)

            borrowing = borrowings.find_by_id(borrowing_id)
            if borrowing is None:
                logger.warning(f"Return rejected: borrowing {borrowing_id} not found")
                raise BorrowingNotFound(borrowing_id)
            if not borrowing.is_active:
                logger.warning(f"Return rejected: borrowing {borrowing_id} is {borrowing.status.value}")
                raise BorrowingNotActive(borrowing_id, borrowing.status.value)

            # returnDate never precedes borrowDate, even if the clock stepped back
            return_date = max(self.clock(), borrowing.borrow_date)
            if not borrowings.update_status(borrowing_id, BorrowingStatus.ACTIVE,
                                            BorrowingStatus.RETURNED, return_date):
                raise BorrowingNotActive(borrowing_id)
            if not books.update_status(borrowing.book_id, BookStatus.BORROWED, BookStatus.AVAILABLE):
                book = books.find_by_id(borrowing.book_id)
                logger.error(f"Return of {borrowing_id} found book {borrowing.book_id} out of sync")
                raise ReconciliationRequired([Mismatch(
                    book_id=borrowing.book_id,
                    problem=("active_borrowing_on_missing_book" if book is None
                             else "active_borrowing_on_unborrowed_book"),
                    book_status=book.status.value if book else None,
                    borrowing_ids=[borrowing_id],
                )])

            borrowing.status = BorrowingStatus.RETURNED
            borrowing.return_date = return_date
            returned = borrowings.find_by_id(borrowing_id) or borrowing

        logger.info(f"Borrowing {borrowing_id} returned; book {borrowing.book_id} available")
        return returned

    def return_book(self, book_id: str) -> Borrowing:
        """Return whatever ACTIVE borrowing the book currently has."""
        with self.db.connection() as conn:
            book = BookRepository(conn).find_by_id(book_id)
            if book is None:
                raise BookNotFound(book_id)
            active = BorrowingRepository(conn).find_active(book_id)
        if active is None:
            raise BookNotBorrowed(book_id, book.status.value)
        return self.complete_return(active.id)

    # ------------------------- Reads ------------------------- #
    def list_books(self, filter: Optional[BookFilter] = None, sort: Optional[SortSpec] = None,
                   page: int = 1, limit: int = 10) -> BookPage:
        if page < 1:
            raise ValidationError("page", "Page numbers start at 1.")
        if limit < 1 or limit > self.max_page_size:
            raise ValidationError("limit", f"Limit must be between 1 and {self.max_page_size}.")
        skip = (page - 1) * limit
        if skip > SQLITE_MAX_INT:
            raise ValidationError("page", f"Page {page} is out of range.")
        filter = filter or BookFilter()
        with self.db.connection() as conn:
            books = BookRepository(conn)
            total = books.count(filter)
            items = books.find_many(filter, sort, skip=skip, limit=limit)
        return BookPage(items=items, total_count=total, page=page, limit=limit)

    def get_borrowing(self, borrowing_id: str) -> Borrowing:
        with self.db.connection() as conn:
            borrowing = BorrowingRepository(conn).find_by_id(borrowing_id)
        if borrowing is None:
            raise BorrowingNotFound(borrowing_id)
        return borrowing

    def list_borrowings(self, book_id: Optional[str] = None, user_id: Optional[str] = None,
                        status: Optional[BorrowingStatus] = None) -> List[Borrowing]:
        if status is BorrowingStatus.OVERDUE:
            return self.list_overdue()
        with self.db.connection() as conn:
            return BorrowingRepository(conn).find_many(book_id=book_id, user_id=user_id, status=status)

    def list_overdue(self, now: Optional[datetime] = None) -> List[Borrowing]:
        """ACTIVE borrowings whose due date has passed."""
        now = now or self.clock()
        with self.db.connection() as conn:
            return BorrowingRepository(conn).find_many(status=BorrowingStatus.ACTIVE, due_before=now)

    # ------------------------- Reconciliation ------------------------- #
    def reconcile(self) -> List[Mismatch]:
        """Report every book/borrowing pairing that breaks the lifecycle invariant.

        Nothing is repaired here; each mismatch needs a human decision.
        """
        with self.db.transaction(timeout=self.timeout) as conn:
            books = {b.id: b for b in BookRepository(conn).find_many()}
            active = BorrowingRepository(conn).find_many(status=BorrowingStatus.ACTIVE)

        active_by_book: dict = {}
        for borrowing in active:
            active_by_book.setdefault(borrowing.book_id, []).append(borrowing.id)

        mismatches: List[Mismatch] = []
        for book in books.values():
            ids = active_by_book.get(book.id, [])
            if book.status is BookStatus.BORROWED and not ids:
                mismatches.append(Mismatch(book.id, "borrowed_without_active_borrowing",
                                           book.status.value))
            elif ids and book.status is not BookStatus.BORROWED:
                mismatches.append(Mismatch(book.id, "active_borrowing_on_unborrowed_book",
                                           book.status.value, ids))
            elif len(ids) > 1:
                mismatches.append(Mismatch(book.id, "multiple_active_borrowings",
                                           book.status.value, ids))
        for book_id, ids in active_by_book.items():
            if book_id not in books:
                mismatches.append(Mismatch(book_id, "active_borrowing_on_missing_book", None, ids))

        if mismatches:
            logger.warning(f"Reconciliation found {len(mismatches)} mismatch(es)")
        return mismatches

    def assert_consistent(self) -> None:
        mismatches = self.reconcile()
        if mismatches:
            raise ReconciliationRequired(mismatches)

    # ------------------------- Helpers ------------------------- #
    def _resolve_due_date(self, now: datetime, requested: Optional[datetime]) -> datetime:
        if requested is None:
            return now + timedelta(days=self.loan_days)
        if requested.tzinfo is None:
            requested = requested.replace(tzinfo=timezone.utc)
        if requested <= now:
            raise ValidationError("dueDate", "Due date must be later than the borrow date.")
        return requested
