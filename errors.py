"""Error taxonomy shared by the repositories, the lifecycle manager and the bindings.

Every error knows how a transport should represent it: ``http_status`` for the
REST binding and ``rpc_status`` (a gRPC status code name) for RPC adapters.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LibraryError(Exception):
    """Base class for every error raised by the library core."""

    http_status: int = 500
    rpc_status: str = "UNKNOWN"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details())
        return payload


# --------------------------------------------------------------------------- #
# Not found
# --------------------------------------------------------------------------- #
class NotFound(LibraryError):
    http_status = 404
    rpc_status = "NOT_FOUND"
    entity = "Entity"

    def __init__(self, id: str, entity: Optional[str] = None) -> None:
        if entity is not None:
            self.entity = entity
        self.id = id
        super().__init__(f"{self.entity} {id} not found.")

    def details(self) -> Dict[str, Any]:
        return {"entity": self.entity, "id": self.id}


class BookNotFound(NotFound):
    entity = "Book"


class UserNotFound(NotFound):
    entity = "User"


class AuthorNotFound(NotFound):
    entity = "Author"


class BorrowingNotFound(NotFound):
    entity = "Borrowing"


# --------------------------------------------------------------------------- #
# Conflicts
# --------------------------------------------------------------------------- #
class Conflict(LibraryError):
    """A uniqueness or state rule rejected the request.

    ``reason`` is the stable, machine-readable name of the rule.
    """

    http_status = 400
    rpc_status = "FAILED_PRECONDITION"
    reason = "Conflict"

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {"reason": self.reason}


class IsbnTaken(Conflict):
    rpc_status = "ALREADY_EXISTS"
    reason = "IsbnTaken"

    def __init__(self, isbn: str) -> None:
        self.isbn = isbn
        super().__init__(f"Book with ISBN {isbn} already exists.")


class EmailTaken(Conflict):
    rpc_status = "ALREADY_EXISTS"
    reason = "EmailTaken"

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"User with email {email} already exists.")


class BookNotAvailable(Conflict):
    reason = "BookNotAvailable"

    def __init__(self, book_id: str, status: Optional[str] = None) -> None:
        self.book_id = book_id
        self.status = status
        suffix = f" (status: {status})" if status else ""
        super().__init__(f"Book {book_id} is not available{suffix}.")


class BorrowingNotActive(Conflict):
    reason = "BorrowingNotActive"

    def __init__(self, borrowing_id: str, status: Optional[str] = None) -> None:
        self.borrowing_id = borrowing_id
        self.status = status
        suffix = f" (status: {status})" if status else ""
        super().__init__(f"Borrowing {borrowing_id} is not active{suffix}.")


class BookNotBorrowed(Conflict):
    reason = "BookNotBorrowed"

    def __init__(self, book_id: str, status: Optional[str] = None) -> None:
        self.book_id = book_id
        self.status = status
        suffix = f" (status: {status})" if status else ""
        super().__init__(f"Book {book_id} has no active borrowing to return{suffix}.")


class BookBorrowed(Conflict):
    reason = "BookBorrowed"

    def __init__(self, book_id: str) -> None:
        self.book_id = book_id
        super().__init__(f"Book {book_id} is currently borrowed and cannot be removed.")


class BookStatusManagedByLifecycle(Conflict):
    reason = "BookStatusManagedByLifecycle"

    def __init__(self, book_id: str) -> None:
        self.book_id = book_id
        super().__init__(
            f"Book {book_id} can only enter or leave BORROWED through borrow and return."
        )


class ReconciliationRequired(Conflict):
    reason = "ReconciliationRequired"

    def __init__(self, mismatches: list) -> None:
        self.mismatches = mismatches
        super().__init__(
            f"{len(mismatches)} book/borrowing pairing(s) need manual resolution."
        )

    def details(self) -> Dict[str, Any]:
        payload = super().details()
        payload["mismatches"] = [m.to_dict() for m in self.mismatches]
        return payload


# --------------------------------------------------------------------------- #
# Validation and availability
# --------------------------------------------------------------------------- #
class ValidationError(LibraryError):
    http_status = 400
    rpc_status = "INVALID_ARGUMENT"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {"field": self.field}


class Unavailable(LibraryError):
    """The store is closed, unreachable or did not answer before the deadline."""

    http_status = 500
    rpc_status = "UNAVAILABLE"
    retryable = True

    def details(self) -> Dict[str, Any]:
        return {"retryable": True}
