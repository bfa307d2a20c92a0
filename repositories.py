"""Repositories over the SQLite store.

A repository is bound to one connection. Repositories built on the connection of
``Database.transaction()`` share that transaction, which is how the lifecycle
manager commits a borrowing and its book status together.
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from errors import EmailTaken, IsbnTaken, ValidationError
from models import (
    Author,
    Book,
    BookStatus,
    Borrowing,
    BorrowingStatus,
    User,
    format_dt,
    utcnow,
)


def new_id() -> str:
    return uuid.uuid4().hex


# --------------------------------------------------------------------------- #
# Query types
# --------------------------------------------------------------------------- #
@dataclass
class BookFilter:
    title: Optional[str] = None     # substring, case-insensitive
    author: Optional[str] = None    # substring, case-insensitive
    status: Optional[BookStatus] = None

    def to_sql(self) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if self.title:
            clauses.append("instr(lower(title), lower(?)) > 0")
            params.append(self.title)
        if self.author:
            clauses.append("instr(lower(author), lower(?)) > 0")
            params.append(self.author)
        if self.status is not None:
            clauses.append("status = ?")
            params.append(BookStatus(self.status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params


# API field name -> column
BOOK_SORT_FIELDS: Dict[str, str] = {
    "title": "title",
    "author": "author",
    "isbn": "isbn",
    "status": "status",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
}


@dataclass
class SortSpec:
    field: str = "createdAt"
    descending: bool = False

    def __post_init__(self) -> None:
        if self.field not in BOOK_SORT_FIELDS:
            allowed = ", ".join(sorted(k for k in BOOK_SORT_FIELDS if "_" not in k))
            raise ValidationError("sortBy", f"Invalid sort field '{self.field}'. Allowed: {allowed}")

    @classmethod
    def parse(cls, raw: Optional[str], order: Optional[str] = None) -> Optional["SortSpec"]:
        """Parse ``field`` or ``field:asc|desc``; ``order`` overrides the suffix."""
        if not raw:
            return None
        field, _, direction = raw.strip().partition(":")
        direction = (order or direction or "asc").strip().lower()
        if direction not in ("asc", "desc"):
            raise ValidationError("sortBy", f"Invalid sort order '{direction}'. Allowed: asc, desc")
        return cls(field=field.strip(), descending=direction == "desc")

    def to_sql(self) -> str:
        column = BOOK_SORT_FIELDS[self.field]
        direction = "DESC" if self.descending else "ASC"
        if column in ("title", "author"):
            return f"ORDER BY {column} COLLATE NOCASE {direction}, id ASC"
        return f"ORDER BY {column} {direction}, id ASC"


# --------------------------------------------------------------------------- #
# Books
# --------------------------------------------------------------------------- #
class BookRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_by_id(self, book_id: str) -> Optional[Book]:
        row = self.conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_row(row) if row else None

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        row = self.conn.execute("SELECT * FROM books WHERE isbn = ?", (isbn,)).fetchone()
        return Book.from_row(row) if row else None

    def find_many(self, filter: Optional[BookFilter] = None, sort: Optional[SortSpec] = None,
                  skip: int = 0, limit: Optional[int] = None) -> List[Book]:
        where, params = (filter or BookFilter()).to_sql()
        order = (sort or SortSpec()).to_sql()
        sql = f"SELECT * FROM books {where} {order}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + [limit, skip]
        elif skip:
            sql += " LIMIT -1 OFFSET ?"
            params = params + [skip]
        return [Book.from_row(row) for row in self.conn.execute(sql, params).fetchall()]

    def find_by_author(self, name: str) -> List[Book]:
        rows = self.conn.execute(
            "SELECT * FROM books WHERE author = ? ORDER BY title COLLATE NOCASE, id", (name,)
        ).fetchall()
        return [Book.from_row(row) for row in rows]

    def count(self, filter: Optional[BookFilter] = None) -> int:
        where, params = (filter or BookFilter()).to_sql()
        return self.conn.execute(f"SELECT COUNT(*) FROM books {where}", params).fetchone()[0]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in BookStatus}
        for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM books GROUP BY status"):
            counts[row["status"]] = row["n"]
        return counts

    def insert(self, book: Book) -> Book:
        now = utcnow()
        book.id = book.id or new_id()
        book.created_at = book.created_at or now
        book.updated_at = now
        try:
            self.conn.execute(
                """
                INSERT INTO books (id, title, author, isbn, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (book.id, book.title, book.author, book.isbn, book.status.value,
                 format_dt(book.created_at), format_dt(book.updated_at)),
            )
        except sqlite3.IntegrityError as e:
            raise IsbnTaken(book.isbn) from e
        return book

    def update_fields(self, book_id: str, **fields: Any) -> bool:
        """Update title/author/isbn. Returns False when the book does not exist."""
        allowed = {k: v for k, v in fields.items() if k in ("title", "author", "isbn")}
        if not allowed:
            return self.find_by_id(book_id) is not None
        set_clause = ", ".join(f"{field} = ?" for field in allowed)
        params = list(allowed.values()) + [format_dt(utcnow()), book_id]
        try:
            cursor = self.conn.execute(
                f"UPDATE books SET {set_clause}, updated_at = ? WHERE id = ?", params
            )
        except sqlite3.IntegrityError as e:
            raise IsbnTaken(allowed.get("isbn", "")) from e
        return cursor.rowcount > 0

    def update_status(self, book_id: str, expected: BookStatus, new: BookStatus) -> bool:
        """Conditional update: only applies while the stored status is ``expected``."""
        cursor = self.conn.execute(
            "UPDATE books SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (BookStatus(new).value, format_dt(utcnow()), book_id, BookStatus(expected).value),
        )
        return cursor.rowcount == 1

    def delete(self, book_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        return cursor.rowcount > 0


# --------------------------------------------------------------------------- #
# Borrowings
# --------------------------------------------------------------------------- #
class BorrowingRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_by_id(self, borrowing_id: str) -> Optional[Borrowing]:
        row = self.conn.execute(
            "SELECT * FROM borrowings WHERE id = ?", (borrowing_id,)
        ).fetchone()
        return Borrowing.from_row(row) if row else None

    def find_many(self, book_id: Optional[str] = None, user_id: Optional[str] = None,
                  status: Optional[BorrowingStatus] = None,
                  due_before: Optional[datetime] = None) -> List[Borrowing]:
        clauses: List[str] = []
        params: List[Any] = []
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(BorrowingStatus(status).value)
        if due_before is not None:
            clauses.append("due_date < ?")
            params.append(format_dt(due_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM borrowings {where} ORDER BY borrow_date, id", params
        ).fetchall()
        return [Borrowing.from_row(row) for row in rows]

    def find_active(self, book_id: str) -> Optional[Borrowing]:
        row = self.conn.execute(
            "SELECT * FROM borrowings WHERE book_id = ? AND status = 'ACTIVE'", (book_id,)
        ).fetchone()
        return Borrowing.from_row(row) if row else None

    def count(self, status: Optional[BorrowingStatus] = None,
              due_before: Optional[datetime] = None) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(BorrowingStatus(status).value)
        if due_before is not None:
            clauses.append("due_date < ?")
            params.append(format_dt(due_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self.conn.execute(f"SELECT COUNT(*) FROM borrowings {where}", params).fetchone()[0]

    def insert(self, borrowing: Borrowing) -> Borrowing:
        now = utcnow()
        borrowing.id = borrowing.id or new_id()
        borrowing.created_at = borrowing.created_at or now
        borrowing.updated_at = now
        self.conn.execute(
            """
            INSERT INTO borrowings (id, book_id, user_id, borrow_date, due_date,
                                    return_date, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (borrowing.id, borrowing.book_id, borrowing.user_id,
             format_dt(borrowing.borrow_date), format_dt(borrowing.due_date),
             format_dt(borrowing.return_date), borrowing.status.value,
             format_dt(borrowing.created_at), format_dt(borrowing.updated_at)),
        )
        return borrowing

    def update_status(self, borrowing_id: str, expected: BorrowingStatus, new: BorrowingStatus,
                      return_date: Optional[datetime] = None) -> bool:
        """Conditional update of status (and return date) from ``expected`` to ``new``."""
        cursor = self.conn.execute(
            """
            UPDATE borrowings SET status = ?, return_date = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (BorrowingStatus(new).value, format_dt(return_date), format_dt(utcnow()),
             borrowing_id, BorrowingStatus(expected).value),
        )
        return cursor.rowcount == 1


# --------------------------------------------------------------------------- #
# Users
# --------------------------------------------------------------------------- #
class UserRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_by_id(self, user_id: str) -> Optional[User]:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    def exists(self, user_id: str) -> bool:
        return self.conn.execute(
            "SELECT 1 FROM users WHERE id = ?", (user_id,)
        ).fetchone() is not None

    def find_many(self) -> List[User]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY created_at, id").fetchall()
        return [User.from_row(row) for row in rows]

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def insert(self, user: User) -> User:
        now = utcnow()
        user.id = user.id or new_id()
        user.membership_date = user.membership_date or now
        user.created_at = user.created_at or now
        user.updated_at = now
        try:
            self.conn.execute(
                """
                INSERT INTO users (id, name, email, status, membership_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user.id, user.name, user.email, user.status.value,
                 format_dt(user.membership_date), format_dt(user.created_at),
                 format_dt(user.updated_at)),
            )
        except sqlite3.IntegrityError as e:
            raise EmailTaken(user.email) from e
        return user


# --------------------------------------------------------------------------- #
# Authors
# --------------------------------------------------------------------------- #
class AuthorRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_by_id(self, author_id: str) -> Optional[Author]:
        row = self.conn.execute("SELECT * FROM authors WHERE id = ?", (author_id,)).fetchone()
        return Author.from_row(row) if row else None

    def find_many(self) -> List[Author]:
        rows = self.conn.execute("SELECT * FROM authors ORDER BY name COLLATE NOCASE, id").fetchall()
        return [Author.from_row(row) for row in rows]

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM authors").fetchone()[0]

    def insert(self, author: Author) -> Author:
        now = utcnow()
        author.id = author.id or new_id()
        author.created_at = author.created_at or now
        author.updated_at = now
        self.conn.execute(
            """
            INSERT INTO authors (id, name, nationality, birth_year, biography, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (author.id, author.name, author.nationality, author.birth_year, author.biography,
             format_dt(author.created_at), format_dt(author.updated_at)),
        )
        return author
