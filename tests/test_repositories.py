import pytest

from errors import IsbnTaken, ValidationError
from models import Book, BookStatus
from repositories import BookFilter, BookRepository, SortSpec


@pytest.fixture
def catalogue(lib):
    titles = [
        ("The Witches", "Roald Dahl", "9780142410110"),
        ("Dune", "Frank Herbert", "9780441013593"),
        ("witch World", "Andre Norton", "9780441903627"),
        ("A Witchcraft Primer", "Anon", "9780000000001"),
        ("Wyrd Sisters", "Terry Pratchett", "9780062225740"),
    ]
    return [lib.add_book(*t) for t in titles]


def test_list_books_filters_and_sorts_by_title(lib, catalogue):
    page = lib.list_books(title="witch", sort_by="title:asc", page=1, limit=10)

    titles = [b.title for b in page.items]
    assert titles == ["A Witchcraft Primer", "The Witches", "witch World"]
    assert page.total_count == 3
    assert page.total_pages == 1
    assert page.has_next_page is False


def test_list_books_descending(lib, catalogue):
    page = lib.list_books(title="witch", sort_by="title", order="desc")

    assert [b.title for b in page.items] == ["witch World", "The Witches", "A Witchcraft Primer"]


def test_list_books_pagination(lib, catalogue):
    first = lib.list_books(sort_by="title:asc", page=1, limit=2)
    second = lib.list_books(sort_by="title:asc", page=2, limit=2)
    third = lib.list_books(sort_by="title:asc", page=3, limit=2)

    assert first.total_count == second.total_count == third.total_count == 5
    assert first.total_pages == 3
    assert first.has_next_page and second.has_next_page and not third.has_next_page
    seen = [b.id for b in first.items + second.items + third.items]
    assert len(seen) == len(set(seen)) == 5


def test_list_books_page_past_the_end_is_empty(lib, catalogue):
    page = lib.list_books(page=9, limit=2)

    assert page.items == []
    assert page.total_count == 5


def test_list_books_by_author_and_status(lib, catalogue):
    lib.update_book(catalogue[1].id, status="MAINTENANCE")

    assert [b.title for b in lib.list_books(author="HERBERT").items] == ["Dune"]
    assert [b.title for b in lib.list_books(status="MAINTENANCE").items] == ["Dune"]
    assert lib.list_books(status="AVAILABLE").total_count == 4


def test_list_books_default_order_is_creation_order(lib, catalogue):
    page = lib.list_books(limit=10)

    assert [b.id for b in page.items] == [b.id for b in catalogue]


@pytest.mark.parametrize("page,limit,field", [(0, 10, "page"), (1, 0, "limit"), (1, 101, "limit")])
def test_list_books_rejects_bad_paging(lib, page, limit, field):
    with pytest.raises(ValidationError) as exc:
        lib.list_books(page=page, limit=limit)

    assert exc.value.field == field


def test_list_books_rejects_unknown_status(lib):
    with pytest.raises(ValidationError) as exc:
        lib.list_books(status="SHELVED")

    assert exc.value.field == "status"


def test_sort_spec_parse():
    assert SortSpec.parse(None) is None
    assert SortSpec.parse("title") == SortSpec("title", False)
    assert SortSpec.parse("title:desc") == SortSpec("title", True)
    assert SortSpec.parse("author:desc", "asc") == SortSpec("author", False)


@pytest.mark.parametrize("raw", ["price", "title:sideways"])
def test_sort_spec_rejects_bad_input(raw):
    with pytest.raises(ValidationError) as exc:
        SortSpec.parse(raw)

    assert exc.value.field == "sortBy"


def test_book_filter_builds_parameterised_sql():
    where, params = BookFilter(title="dune", status=BookStatus.BORROWED).to_sql()

    assert "instr(lower(title), lower(?))" in where
    assert "status = ?" in where
    assert params == ["dune", "BORROWED"]


def test_conditional_status_update(lib, catalogue):
    book_id = catalogue[0].id
    with lib.db.transaction() as conn:
        books = BookRepository(conn)
        assert books.update_status(book_id, BookStatus.AVAILABLE, BookStatus.BORROWED) is True
        assert books.update_status(book_id, BookStatus.AVAILABLE, BookStatus.BORROWED) is False
        assert books.find_by_id(book_id).status is BookStatus.BORROWED


def test_duplicate_isbn_is_rejected_by_store(lib, catalogue):
    with pytest.raises(IsbnTaken):
        with lib.db.transaction() as conn:
            BookRepository(conn).insert(Book("Copy", "Someone", catalogue[0].isbn))
