from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


class BookStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    LOST = "LOST"
    MAINTENANCE = "MAINTENANCE"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLOCKED = "BLOCKED"


class BorrowingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    # Display-only: an ACTIVE borrowing whose due date has passed.
    OVERDUE = "OVERDUE"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_dt(value: Any) -> Optional[datetime]:
    """Read a timestamp stored by ``format_dt`` (naive values are taken as UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Book:
    """A single title in the catalogue."""

    def __init__(self, title: str, author: str, isbn: str,
                 status: BookStatus | str = BookStatus.AVAILABLE,
                 id: str | None = None,
                 created_at: datetime | None = None,
                 updated_at: datetime | None = None) -> None:
        self.id = id
        self.title = (title or "").strip()
        self.author = (author or "").strip()
        self.isbn = (isbn or "").strip()
        self.status = BookStatus(status)
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, isbn={self.isbn!r}, status={self.status.value})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "status": self.status.value,
            "createdAt": format_dt(self.created_at),
            "updatedAt": format_dt(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            status=row["status"],
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )


class Author:
    """An author record. Books point at authors by name, not by id."""

    def __init__(self, name: str, nationality: str | None = None,
                 birth_year: int | None = None, biography: str | None = None,
                 id: str | None = None,
                 created_at: datetime | None = None,
                 updated_at: datetime | None = None) -> None:
        self.id = id
        self.name = (name or "").strip()
        self.nationality = nationality.strip() if nationality else None
        self.birth_year = birth_year
        self.biography = biography.strip() if biography else None
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover
        return self.name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "nationality": self.nationality,
            "birthYear": self.birth_year,
            "biography": self.biography,
            "createdAt": format_dt(self.created_at),
            "updatedAt": format_dt(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Author":
        return Author(
            id=row["id"],
            name=row["name"],
            nationality=row["nationality"],
            birth_year=row["birth_year"],
            biography=row["biography"],
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )


class User:
    """A library member."""

    def __init__(self, name: str, email: str,
                 status: UserStatus | str = UserStatus.ACTIVE,
                 membership_date: datetime | None = None,
                 id: str | None = None,
                 created_at: datetime | None = None,
                 updated_at: datetime | None = None) -> None:
        self.id = id
        self.name = (name or "").strip()
        self.email = (email or "").strip().lower()
        self.status = UserStatus(status)
        self.membership_date = membership_date
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} <{self.email}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "status": self.status.value,
            "membershipDate": format_dt(self.membership_date),
            "createdAt": format_dt(self.created_at),
            "updatedAt": format_dt(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            status=row["status"],
            membership_date=parse_dt(row["membership_date"]),
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )


class Borrowing:
    """One loan of one book to one user.

    ``status`` is what is stored (ACTIVE or RETURNED). ``effective_status`` adds
    the derived OVERDUE state for display.
    """

    def __init__(self, book_id: str, user_id: str,
                 borrow_date: datetime, due_date: datetime,
                 status: BorrowingStatus | str = BorrowingStatus.ACTIVE,
                 return_date: datetime | None = None,
                 id: str | None = None,
                 created_at: datetime | None = None,
                 updated_at: datetime | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = BorrowingStatus(status)
        self.created_at = created_at
        self.updated_at = updated_at

    def __repr__(self) -> str:  # pragma: no cover
        return (f"Borrowing(id={self.id!r}, book_id={self.book_id!r}, "
                f"user_id={self.user_id!r}, status={self.status.value})")

    @property
    def is_active(self) -> bool:
        return self.status is BorrowingStatus.ACTIVE

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.is_active and now > self.due_date

    def effective_status(self, now: Optional[datetime] = None) -> BorrowingStatus:
        if self.is_overdue(now):
            return BorrowingStatus.OVERDUE
        return self.status

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "userId": self.user_id,
            "borrowDate": format_dt(self.borrow_date),
            "dueDate": format_dt(self.due_date),
            "returnDate": format_dt(self.return_date),
            "status": self.status.value,
            "effectiveStatus": self.effective_status(now).value,
            "createdAt": format_dt(self.created_at),
            "updatedAt": format_dt(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Borrowing":
        return Borrowing(
            id=row["id"],
            book_id=row["book_id"],
            user_id=row["user_id"],
            borrow_date=parse_dt(row["borrow_date"]),
            due_date=parse_dt(row["due_date"]),
            return_date=parse_dt(row["return_date"]),
            status=row["status"],
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )
