import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from config import configure_logging, settings
from errors import BookNotFound, LibraryError, Unavailable
from library import Library
from models import utcnow
from utils import hal

logger = logging.getLogger(__name__)


def create_app(library_factory: Optional[Callable[[], Library]] = None) -> FastAPI:
    """Build the REST application.

    The store is opened when the app starts and closed when it stops;
    ``library_factory`` lets tests point it at their own database file.
    """
    factory = library_factory or Library

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        app.state.library = factory()
        logger.info(f"{settings.app_name} started (db: {app.state.library.db.path})")
        try:
            yield
        finally:
            app.state.library.close()
            logger.info(f"{settings.app_name} stopped")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    _register_routes(app)
    return app


def get_library(request: Request) -> Library:
    return request.app.state.library


# --- Error mapping ---
async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    if isinstance(exc, Unavailable):
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    body = {**exc.to_dict(), "_links": {"self": hal.link(request.url.path)}}
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.http_status, content=body, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": first.get("msg", "Invalid request."),
            "field": field,
            "_links": {"self": hal.link(request.url.path)},
        },
    )


def _created(payload: Dict[str, Any], location: str) -> JSONResponse:
    return JSONResponse(status_code=201, content=payload, headers={"Location": location})


# --- Request models ---
class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    status: Optional[str] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    status: Optional[str] = None


class AuthorCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    nationality: Optional[str] = None
    birth_year: Optional[int] = Field(None, alias="birthYear")
    biography: Optional[str] = None


class UserCreateModel(BaseModel):
    name: str
    email: str
    status: Optional[str] = None


class BorrowRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    due_date: Optional[datetime] = Field(None, alias="dueDate")


class BorrowingCreateModel(BorrowRequestModel):
    book_id: str = Field(..., alias="bookId")


# --- Routes ---
def _register_routes(app: FastAPI) -> None:
    prefix = hal.API_PREFIX

    @app.get("/")
    def read_root():
        return {
            "message": settings.app_name,
            "_links": {
                "self": hal.link("/"),
                "books": hal.link(f"{prefix}/books"),
                "authors": hal.link(f"{prefix}/authors"),
                "users": hal.link(f"{prefix}/users"),
                "borrowings": hal.link(f"{prefix}/borrowings"),
                "stats": hal.link(f"{prefix}/stats"),
                "health": hal.link("/health"),
                "documentation": hal.link("/docs"),
            },
        }

    @app.get("/health")
    def health(library: Library = Depends(get_library)):
        """Lightweight health check: store ping plus a book count."""
        db_ok = library.db.ping()
        payload: Dict[str, Any] = {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": utcnow().isoformat(),
            "db": db_ok,
        }
        if db_ok:
            payload["total_books"] = library.get_statistics()["total_books"]
        return JSONResponse(status_code=200 if db_ok else 503, content=payload)

    # ------------------------- Books ------------------------- #
    @app.get(f"{prefix}/books")
    def list_books(
        title: Optional[str] = Query(None, description="Title contains (case-insensitive)"),
        author: Optional[str] = Query(None, description="Author contains (case-insensitive)"),
        status: Optional[str] = Query(None, description="AVAILABLE|BORROWED|LOST|MAINTENANCE"),
        sortBy: Optional[str] = Query(None, description="field or field:asc|desc"),
        sortOrder: Optional[str] = Query(None, description="asc|desc, overrides the sortBy suffix"),
        page: int = Query(1, description="Page number, starting at 1"),
        limit: int = Query(settings.default_page_size, description="Items per page"),
        library: Library = Depends(get_library),
    ):
        result = library.list_books(title=title, author=author, status=status,
                                    sort_by=sortBy, order=sortOrder, page=page, limit=limit)
        params = {"title": title, "author": author, "status": status,
                  "sortBy": sortBy, "sortOrder": sortOrder}
        links = hal.page_links(f"{prefix}/books", page, limit, result.total_pages, params)
        links["create"] = hal.link(f"{prefix}/books", "POST")
        return hal.collection(
            "books",
            [hal.book_resource(b) for b in result.items],
            links,
            page=hal.page_info(page, limit, result.total_count, result.total_pages),
        )

    @app.post(f"{prefix}/books", status_code=201)
    def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
        book = library.add_book(payload.title, payload.author, payload.isbn, payload.status)
        return _created(hal.book_resource(book), f"{prefix}/books/{book.id}")

    @app.get(f"{prefix}/books/{{book_id}}")
    def get_book(book_id: str, library: Library = Depends(get_library)):
        return hal.book_resource(library.get_book(book_id))

    @app.put(f"{prefix}/books/{{book_id}}")
    def update_book(book_id: str, payload: BookUpdateModel, library: Library = Depends(get_library)):
        book = library.update_book(book_id, title=payload.title, author=payload.author,
                                   isbn=payload.isbn, status=payload.status)
        return hal.book_resource(book)

    @app.delete(f"{prefix}/books/{{book_id}}", status_code=204)
    def delete_book(book_id: str, library: Library = Depends(get_library)):
        if not library.remove_book(book_id):
            raise BookNotFound(book_id)
        return Response(status_code=204)

    @app.get(f"{prefix}/books/{{book_id}}/borrowings")
    def book_borrowings(book_id: str, library: Library = Depends(get_library)):
        items = library.borrowings_for_book(book_id)
        return hal.collection(
            "borrowings",
            [hal.borrowing_resource(b) for b in items],
            {"self": hal.link(f"{prefix}/books/{book_id}/borrowings"),
             "book": hal.link(f"{prefix}/books/{book_id}")},
        )

    @app.post(f"{prefix}/books/{{book_id}}/borrow", status_code=201)
    def borrow_book(book_id: str, payload: BorrowRequestModel, library: Library = Depends(get_library)):
        borrowing = library.borrow(book_id, payload.user_id, payload.due_date)
        return _created(hal.borrowing_resource(borrowing), f"{prefix}/borrowings/{borrowing.id}")

    @app.post(f"{prefix}/books/{{book_id}}/return")
    def return_book(book_id: str, library: Library = Depends(get_library)):
        return hal.borrowing_resource(library.lifecycle.return_book(book_id))

    # ------------------------- Authors ------------------------- #
    @app.get(f"{prefix}/authors")
    def list_authors(library: Library = Depends(get_library)):
        return hal.collection(
            "authors",
            [hal.author_resource(a) for a in library.list_authors()],
            {"self": hal.link(f"{prefix}/authors"),
             "create": hal.link(f"{prefix}/authors", "POST")},
        )

    @app.post(f"{prefix}/authors", status_code=201)
    def create_author(payload: AuthorCreateModel, library: Library = Depends(get_library)):
        author = library.add_author(payload.name, payload.nationality,
                                    payload.birth_year, payload.biography)
        return _created(hal.author_resource(author), f"{prefix}/authors/{author.id}")

    @app.get(f"{prefix}/authors/{{author_id}}")
    def get_author(author_id: str, library: Library = Depends(get_library)):
        return hal.author_resource(library.get_author(author_id))

    @app.get(f"{prefix}/authors/{{author_id}}/books")
    def author_books(author_id: str, library: Library = Depends(get_library)):
        books = library.books_by_author(author_id)
        return hal.collection(
            "books",
            [hal.book_resource(b) for b in books],
            {"self": hal.link(f"{prefix}/authors/{author_id}/books"),
             "author": hal.link(f"{prefix}/authors/{author_id}")},
        )

    # ------------------------- Users ------------------------- #
    @app.get(f"{prefix}/users")
    def list_users(library: Library = Depends(get_library)):
        return hal.collection(
            "users",
            [hal.user_resource(u) for u in library.list_users()],
            {"self": hal.link(f"{prefix}/users"),
             "create": hal.link(f"{prefix}/users", "POST")},
        )

    @app.post(f"{prefix}/users", status_code=201)
    def create_user(payload: UserCreateModel, library: Library = Depends(get_library)):
        user = library.add_user(payload.name, payload.email, payload.status)
        return _created(hal.user_resource(user), f"{prefix}/users/{user.id}")

    @app.get(f"{prefix}/users/{{user_id}}")
    def get_user(user_id: str, library: Library = Depends(get_library)):
        return hal.user_resource(library.get_user(user_id))

    @app.get(f"{prefix}/users/{{user_id}}/borrowings")
    def user_borrowings(user_id: str, library: Library = Depends(get_library)):
        items = library.borrowings_for_user(user_id)
        return hal.collection(
            "borrowings",
            [hal.borrowing_resource(b) for b in items],
            {"self": hal.link(f"{prefix}/users/{user_id}/borrowings"),
             "user": hal.link(f"{prefix}/users/{user_id}")},
        )

    # ------------------------- Borrowings ------------------------- #
    @app.get(f"{prefix}/borrowings")
    def list_borrowings(
        status: Optional[str] = Query(None, description="ACTIVE|RETURNED|OVERDUE"),
        library: Library = Depends(get_library),
    ):
        items = library.list_borrowings(status=status)
        return hal.collection(
            "borrowings",
            [hal.borrowing_resource(b) for b in items],
            {"self": hal.link(f"{prefix}/borrowings"),
             "overdue": hal.link(f"{prefix}/borrowings/overdue"),
             "create": hal.link(f"{prefix}/borrowings", "POST")},
        )

    @app.post(f"{prefix}/borrowings", status_code=201)
    def create_borrowing(payload: BorrowingCreateModel, library: Library = Depends(get_library)):
        borrowing = library.borrow(payload.book_id, payload.user_id, payload.due_date)
        return _created(hal.borrowing_resource(borrowing), f"{prefix}/borrowings/{borrowing.id}")

    @app.get(f"{prefix}/borrowings/overdue")
    def list_overdue(library: Library = Depends(get_library)):
        items = library.lifecycle.list_overdue()
        return hal.collection(
            "borrowings",
            [hal.borrowing_resource(b) for b in items],
            {"self": hal.link(f"{prefix}/borrowings/overdue"),
             "collection": hal.link(f"{prefix}/borrowings")},
        )

    @app.get(f"{prefix}/borrowings/{{borrowing_id}}")
    def get_borrowing(borrowing_id: str, library: Library = Depends(get_library)):
        return hal.borrowing_resource(library.lifecycle.get_borrowing(borrowing_id))

    @app.post(f"{prefix}/borrowings/{{borrowing_id}}/return")
    def return_borrowing(borrowing_id: str, library: Library = Depends(get_library)):
        return hal.borrowing_resource(library.return_borrowing(borrowing_id))

    # ------------------------- Admin ------------------------- #
    @app.get(f"{prefix}/admin/reconcile")
    def reconcile(library: Library = Depends(get_library)):
        mismatches = library.lifecycle.reconcile()
        return {
            "consistent": not mismatches,
            "mismatches": [m.to_dict() for m in mismatches],
            "_links": {"self": hal.link(f"{prefix}/admin/reconcile")},
        }

    @app.get(f"{prefix}/stats")
    def get_stats(library: Library = Depends(get_library)):
        return {**library.get_statistics(), "_links": {"self": hal.link(f"{prefix}/stats")}}


app = create_app()
