import logging
import os
import sqlite3
import tempfile
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from errors import Unavailable

logger = logging.getLogger(__name__)


def default_db_file() -> str:
    """Database file used when nothing is configured.

    Priority:
    1) LIBRARY_DB_FILE (explicit override)
    2) LIBRARY_DATA_FILE (legacy name)
    3) a per-process file in the temp directory
    """
    return (
        os.environ.get("LIBRARY_DB_FILE")
        or os.environ.get("LIBRARY_DATA_FILE")
        or os.path.join(tempfile.gettempdir(), f"library_{os.getpid()}.db")
    )


class Deadline:
    """Time budget of a single request, measured on the monotonic clock."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return self._expires_at - time.monotonic()

    def check(self, operation: str) -> float:
        """Return the seconds left, or raise ``Unavailable`` once the budget is spent."""
        left = self.remaining()
        if left <= 0:
            raise Unavailable(f"{operation} did not complete within {self.seconds:g}s.")
        return left


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS books (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'AVAILABLE'
            CHECK (status IN ('AVAILABLE', 'BORROWED', 'LOST', 'MAINTENANCE')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authors (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        nationality TEXT,
        birth_year INTEGER,
        biography TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'ACTIVE'
            CHECK (status IN ('ACTIVE', 'SUSPENDED', 'BLOCKED')),
        membership_date TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # return_date is set iff the borrowing is RETURNED
    """
    CREATE TABLE IF NOT EXISTS borrowings (
        id TEXT PRIMARY KEY,
        book_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        borrow_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE'
            CHECK (status IN ('ACTIVE', 'RETURNED')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK ((status = 'RETURNED') = (return_date IS NOT NULL))
    )
    """,
    # At most one open borrowing per book
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_borrowings_active_book
        ON borrowings(book_id) WHERE status = 'ACTIVE'
    """,
    "CREATE INDEX IF NOT EXISTS idx_borrowings_book_id ON borrowings(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_borrowings_user_id ON borrowings(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_borrowings_status_due ON borrowings(status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_books_status ON books(status)",
    "CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_authors_name ON authors(name)",
)


class Database:
    """Handle on the SQLite store.

    Opened once at process start and closed at shutdown. Every read gets its own
    short-lived connection; writes that must land together go through
    ``transaction()``.
    """

    def __init__(self, path: Optional[str] = None, timeout: float = 5.0) -> None:
        self.path = path or default_db_file()
        self.timeout = timeout
        self._opened = False
        self._lock = threading.Lock()

    # ------------------------- Lifecycle ------------------------- #
    def open(self) -> "Database":
        with self._lock:
            if self._opened:
                return self
            self._opened = True
        try:
            self.create_tables()
        except Exception:
            self._opened = False
            raise
        logger.info(f"Database opened: {self.path}")
        return self

    def close(self) -> None:
        with self._lock:
            if not self._opened:
                return
            self._opened = False
        logger.info(f"Database closed: {self.path}")

    @property
    def is_open(self) -> bool:
        return self._opened

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------- Connections ------------------------- #
    def _connect(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        if not self._opened:
            raise Unavailable("Database is closed.")
        wait = self.timeout if timeout is None else max(timeout, 0.0)
        try:
            # isolation_level=None: transactions are opened explicitly with BEGIN
            conn = sqlite3.connect(self.path, timeout=wait, isolation_level=None,
                                   check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute(f"PRAGMA busy_timeout={int(wait * 1000)};")
        except sqlite3.OperationalError as e:
            logger.error(f"Could not open database {self.path}: {e}")
            raise Unavailable(f"Database unavailable: {e}") from e
        return conn

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for reads and single-statement writes."""
        conn = self._connect(timeout)
        try:
            yield conn
        except sqlite3.OperationalError as e:
            logger.error(f"Database error: {e}")
            raise Unavailable(f"Database unavailable: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction.

        ``BEGIN IMMEDIATE`` takes the write lock up front, so concurrent writers
        are serialized and waiting is bounded by ``timeout``. Any exception rolls
        everything back.
        """
        conn = self._connect(timeout)
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                logger.warning(f"Could not start transaction: {e}")
                raise Unavailable(f"Database busy: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as e:
            logger.error(f"Transaction failed: {e}")
            raise Unavailable(f"Database unavailable: {e}") from e
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except Unavailable:
            return False

    # ------------------------- Schema ------------------------- #
    def create_tables(self) -> None:
        """Create tables and indexes if they do not exist."""
        # journal_mode is persistent and cannot change inside a transaction
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
