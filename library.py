import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config import settings
from database import Database
from errors import (
    AuthorNotFound,
    BookBorrowed,
    BookNotFound,
    BookStatusManagedByLifecycle,
    UserNotFound,
    ValidationError,
)
from lifecycle import BookPage, BorrowingLifecycleManager
from models import Author, Book, BookStatus, Borrowing, BorrowingStatus, User, UserStatus, utcnow
from repositories import (
    AuthorRepository,
    BookFilter,
    BookRepository,
    BorrowingRepository,
    SortSpec,
    UserRepository,
)
from utils.validators import EmailValidator, ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

# Statuses an administrator may set directly; BORROWED belongs to the lifecycle.
ADMIN_BOOK_STATUSES = (BookStatus.AVAILABLE, BookStatus.LOST, BookStatus.MAINTENANCE)


def _coerce_enum(enum_cls, value: Any, field: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(field, f"Invalid {field} '{value}'. Allowed: {allowed}") from None


class Library:
    """Catalogue, members and circulation behind one store handle.

    Plain CRUD lives here; every borrow and return goes through ``self.lifecycle``.
    """

    def __init__(self, db_file: Optional[str] = None, *,
                 loan_days: Optional[int] = None,
                 timeout: Optional[float] = None,
                 strict_isbn: Optional[bool] = None,
                 max_page_size: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.timeout = settings.lifecycle_timeout if timeout is None else timeout
        self.strict_isbn = settings.strict_isbn if strict_isbn is None else strict_isbn
        self.db = Database(db_file or settings.db_file, timeout=self.timeout).open()
        self.lifecycle = BorrowingLifecycleManager(
            self.db,
            loan_days=settings.default_loan_days if loan_days is None else loan_days,
            timeout=self.timeout,
            max_page_size=settings.max_page_size if max_page_size is None else max_page_size,
            clock=clock,
        )

    # ------------------------- Books ------------------------- #
    def add_book(self, title: str, author: str, isbn: str,
                 status: Optional[BookStatus] = None) -> Book:
        """Insert a new book. ISBN must be unique."""
        book = Book(
            title=TextValidator.require("title", title),
            author=TextValidator.require("author", author),
            isbn=self._check_isbn(isbn),
            status=self._admin_status(status) or BookStatus.AVAILABLE,
        )
        with self.db.transaction(timeout=self.timeout) as conn:
            BookRepository(conn).insert(book)
        logger.info(f"Book added: {book.id} ({book.isbn})")
        return book

    def get_book(self, book_id: str) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise BookNotFound(book_id)
        return book

    def find_book(self, book_id: str) -> Optional[Book]:
        with self.db.connection() as conn:
            return BookRepository(conn).find_by_id(book_id)

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        with self.db.connection() as conn:
            return BookRepository(conn).find_by_isbn(isbn.strip())

    def list_books(self, title: Optional[str] = None, author: Optional[str] = None,
                   status: Optional[Any] = None, sort_by: Optional[str] = None,
                   order: Optional[str] = None, page: int = 1,
                   limit: Optional[int] = None) -> BookPage:
        book_filter = BookFilter(
            title=title or None,
            author=author or None,
            status=_coerce_enum(BookStatus, status, "status"),
        )
        sort = SortSpec.parse(sort_by, order)
        return self.lifecycle.list_books(book_filter, sort, page=page,
                                         limit=settings.default_page_size if limit is None else limit)

    def update_book(self, book_id: str, *, title: Optional[str] = None,
                    author: Optional[str] = None, isbn: Optional[str] = None,
                    status: Optional[Any] = None) -> Book:
        """Edit a book's details and, within limits, its status.

        Only AVAILABLE, LOST and MAINTENANCE can be set here, and only on a book
        that is not BORROWED.
        """
        fields: Dict[str, str] = {}
        if title is not None:
            fields["title"] = TextValidator.require("title", title)
        if author is not None:
            fields["author"] = TextValidator.require("author", author)
        if isbn is not None:
            fields["isbn"] = self._check_isbn(isbn)
        new_status = _coerce_enum(BookStatus, status, "status")
        if new_status is BookStatus.BORROWED:
            raise BookStatusManagedByLifecycle(book_id)

        with self.db.transaction(timeout=self.timeout) as conn:
            books = BookRepository(conn)
            current = books.find_by_id(book_id)
            if current is None:
                raise BookNotFound(book_id)
            if fields:
                books.update_fields(book_id, **fields)
            if new_status is not None and new_status is not current.status:
                if current.status is BookStatus.BORROWED:
                    raise BookStatusManagedByLifecycle(book_id)
                if not books.update_status(book_id, current.status, new_status):
                    raise BookStatusManagedByLifecycle(book_id)
            updated = books.find_by_id(book_id)
        logger.info(f"Book updated: {book_id}")
        return updated

    def remove_book(self, book_id: str) -> bool:
        """Administrative delete. A BORROWED book cannot be removed."""
        with self.db.transaction(timeout=self.timeout) as conn:
            books = BookRepository(conn)
            book = books.find_by_id(book_id)
            if book is None:
                return False
            if book.status is BookStatus.BORROWED:
                raise BookBorrowed(book_id)
            books.delete(book_id)
        logger.info(f"Book removed: {book_id}")
        return True

    # ------------------------- Authors ------------------------- #
    def add_author(self, name: str, nationality: Optional[str] = None,
                   birth_year: Optional[int] = None, biography: Optional[str] = None) -> Author:
        author = Author(
            name=TextValidator.require("name", name),
            nationality=TextValidator.optional(nationality),
            birth_year=TextValidator.validate_birth_year(birth_year, utcnow().year),
            biography=TextValidator.optional(biography),
        )
        with self.db.transaction(timeout=self.timeout) as conn:
            AuthorRepository(conn).insert(author)
        logger.info(f"Author added: {author.id} ({author.name})")
        return author

    def get_author(self, author_id: str) -> Author:
        with self.db.connection() as conn:
            author = AuthorRepository(conn).find_by_id(author_id)
        if author is None:
            raise AuthorNotFound(author_id)
        return author

    def list_authors(self) -> List[Author]:
        with self.db.connection() as conn:
            return AuthorRepository(conn).find_many()

    def books_by_author(self, author_id: str) -> List[Book]:
        """Books whose ``author`` text equals the author's name exactly."""
        author = self.get_author(author_id)
        with self.db.connection() as conn:
            return BookRepository(conn).find_by_author(author.name)

    # ------------------------- Users ------------------------- #
    def add_user(self, name: str, email: str, status: Optional[Any] = None) -> User:
        if not EmailValidator.is_valid(email):
            raise ValidationError("email", f"Invalid email address '{email}'.")
        user = User(
            name=TextValidator.require("name", name),
            email=EmailValidator.normalize(email),
            status=_coerce_enum(UserStatus, status, "status") or UserStatus.ACTIVE,
        )
        with self.db.transaction(timeout=self.timeout) as conn:
            UserRepository(conn).insert(user)
        logger.info(f"User added: {user.id} ({user.email})")
        return user

    def get_user(self, user_id: str) -> User:
        with self.db.connection() as conn:
            user = UserRepository(conn).find_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def list_users(self) -> List[User]:
        with self.db.connection() as conn:
            return UserRepository(conn).find_many()

    def borrowings_for_user(self, user_id: str) -> List[Borrowing]:
        self.get_user(user_id)
        return self.lifecycle.list_borrowings(user_id=user_id)

    def borrowings_for_book(self, book_id: str) -> List[Borrowing]:
        self.get_book(book_id)
        return self.lifecycle.list_borrowings(book_id=book_id)

    # ------------------------- Circulation ------------------------- #
    def borrow(self, book_id: str, user_id: str, due_date: Optional[datetime] = None) -> Borrowing:
        return self.lifecycle.begin_borrow(book_id, user_id, due_date)

    def return_borrowing(self, borrowing_id: str) -> Borrowing:
        return self.lifecycle.complete_return(borrowing_id)

    def list_borrowings(self, status: Optional[Any] = None) -> List[Borrowing]:
        return self.lifecycle.list_borrowings(
            status=_coerce_enum(BorrowingStatus, status, "status")
        )

    # ------------------------- Stats ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        now = self.lifecycle.clock()
        with self.db.connection() as conn:
            books = BookRepository(conn)
            borrowings = BorrowingRepository(conn)
            by_status = books.count_by_status()
            return {
                "total_books": sum(by_status.values()),
                "books_by_status": by_status,
                "total_authors": AuthorRepository(conn).count(),
                "total_users": UserRepository(conn).count(),
                "active_borrowings": borrowings.count(status=BorrowingStatus.ACTIVE),
                "overdue_borrowings": borrowings.count(status=BorrowingStatus.ACTIVE, due_before=now),
            }

    # ------------------------- Helpers ------------------------- #
    def _check_isbn(self, isbn: Optional[str]) -> str:
        value = TextValidator.require("isbn", isbn, "ISBN")
        if self.strict_isbn and not ISBNValidator.is_valid_isbn(value):
            raise ValidationError("isbn", f"Invalid ISBN '{value}'.")
        return value

    @staticmethod
    def _admin_status(status: Optional[Any]) -> Optional[BookStatus]:
        value = _coerce_enum(BookStatus, status, "status")
        if value is not None and value not in ADMIN_BOOK_STATUSES:
            raise ValidationError("status", "New books cannot start as BORROWED.")
        return value

    def close(self) -> None:
        self.db.close()
