"""HAL-style hypermedia for the REST binding: ``_links`` and ``_embedded``."""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

API_PREFIX = "/api"

Link = Dict[str, str]


def link(href: str, method: Optional[str] = None) -> Link:
    result = {"href": href}
    if method:
        result["method"] = method
    return result


def resource(payload: Dict[str, Any], links: Dict[str, Link]) -> Dict[str, Any]:
    return {**payload, "_links": links}


def collection(name: str, items: List[Dict[str, Any]], links: Dict[str, Link],
               page: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"_embedded": {name: items}, "_links": links}
    if page is not None:
        body["page"] = page
    return body


# ------------------------- Per-resource links ------------------------- #
def book_links(book) -> Dict[str, Link]:
    base = f"{API_PREFIX}/books/{book.id}"
    links = {
        "self": link(base),
        "collection": link(f"{API_PREFIX}/books"),
        "borrowings": link(f"{base}/borrowings"),
    }
    # Only offer the transition the book can take right now
    if book.status.value == "AVAILABLE":
        links["borrow"] = link(f"{base}/borrow", "POST")
    elif book.status.value == "BORROWED":
        links["return"] = link(f"{base}/return", "POST")
    return links


def borrowing_links(borrowing) -> Dict[str, Link]:
    base = f"{API_PREFIX}/borrowings/{borrowing.id}"
    links = {
        "self": link(base),
        "collection": link(f"{API_PREFIX}/borrowings"),
        "book": link(f"{API_PREFIX}/books/{borrowing.book_id}"),
        "user": link(f"{API_PREFIX}/users/{borrowing.user_id}"),
    }
    if borrowing.is_active:
        links["return"] = link(f"{base}/return", "POST")
    return links


def user_links(user) -> Dict[str, Link]:
    base = f"{API_PREFIX}/users/{user.id}"
    return {
        "self": link(base),
        "collection": link(f"{API_PREFIX}/users"),
        "borrowings": link(f"{base}/borrowings"),
    }


def author_links(author) -> Dict[str, Link]:
    base = f"{API_PREFIX}/authors/{author.id}"
    return {
        "self": link(base),
        "collection": link(f"{API_PREFIX}/authors"),
        "books": link(f"{base}/books"),
    }


def book_resource(book) -> Dict[str, Any]:
    return resource(book.to_dict(), book_links(book))


def borrowing_resource(borrowing) -> Dict[str, Any]:
    return resource(borrowing.to_dict(), borrowing_links(borrowing))


def user_resource(user) -> Dict[str, Any]:
    return resource(user.to_dict(), user_links(user))


def author_resource(author) -> Dict[str, Any]:
    return resource(author.to_dict(), author_links(author))


# ------------------------- Pagination ------------------------- #
def page_links(path: str, page: int, limit: int, total_pages: int,
               params: Optional[Dict[str, Any]] = None) -> Dict[str, Link]:
    """self/first/last/prev/next links for a page-numbered collection.

    ``params`` (filters, sort) are carried over to every link.
    """
    extra = {k: v for k, v in (params or {}).items() if v not in (None, "")}

    def href(number: int) -> str:
        query = urlencode({**extra, "page": number, "limit": limit})
        return f"{path}?{query}"

    last = max(total_pages, 1)
    links = {"self": link(href(page))}
    if page > 1:
        links["prev"] = link(href(min(page - 1, last)))
    if page < total_pages:
        links["next"] = link(href(page + 1))
    links["first"] = link(href(1))
    links["last"] = link(href(last))
    return links


def page_info(page: int, limit: int, total: int, total_pages: int) -> Dict[str, int]:
    return {"size": limit, "totalElements": total, "totalPages": total_pages, "number": page}
