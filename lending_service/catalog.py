"""
Catalog aggregate: per-book total_copies / available_copies.

The counters are a materialized view over copy rows. They are only ever
moved by relative SQL updates issued in the same transaction as the copy
change they mirror. There is no setter.
"""

import logging

from sqlalchemy import func, select, update

from .errors import NotFound
from .models import Book, Copy, CopyStatus

logger = logging.getLogger(__name__)


def get_book(session, book_id, for_update=False):
    q = (
        select(Book)
        .where(Book.id == book_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        q = q.with_for_update()
    book = session.execute(q).scalar_one_or_none()
    if book is None:
        raise NotFound(f"Book {book_id} not found")
    return book


def _shift(session, book_id, total=0, available=0):
    values = {}
    if total:
        values["total_copies"] = Book.total_copies + total
    if available:
        values["available_copies"] = Book.available_copies + available
    if not values:
        return
    result = session.execute(
        update(Book)
        .where(Book.id == book_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound(f"Book {book_id} not found")
    logger.debug(
        "Book %s counters shifted total=%+d available=%+d", book_id, total, available
    )


def increment_totals(session, book_id, n):
    _shift(session, book_id, total=n, available=n)


def decrement_totals(session, book_id, n):
    _shift(session, book_id, total=-n, available=-n)


def decrement_available(session, book_id):
    _shift(session, book_id, available=-1)


def increment_available(session, book_id):
    _shift(session, book_id, available=1)


def counters(session, book_id):
    row = session.execute(
        select(Book.total_copies, Book.available_copies).where(Book.id == book_id)
    ).one_or_none()
    if row is None:
        raise NotFound(f"Book {book_id} not found")
    return row.total_copies, row.available_copies


def count_copies(session, book_id, status=None):
    q = select(func.count(Copy.id)).where(Copy.book_id == book_id)
    if status is not None:
        q = q.where(Copy.status == status)
    return session.execute(q).scalar_one()


def count_available_copies(session, book_id):
    return count_copies(session, book_id, CopyStatus.AVAILABLE)


def reconcile(session, book_id):
    """
    Recompute both counters from copy rows. Returns True if they had drifted.
    """
    book = get_book(session, book_id, for_update=True)
    total = count_copies(session, book_id)
    available = count_available_copies(session, book_id)
    drifted = (book.total_copies, book.available_copies) != (total, available)
    if drifted:
        logger.warning(
            "Book %s counters drifted: stored=(%s, %s) actual=(%s, %s)",
            book_id,
            book.total_copies,
            book.available_copies,
            total,
            available,
        )
        session.execute(
            update(Book)
            .where(Book.id == book_id)
            .values(total_copies=total, available_copies=available)
            .execution_options(synchronize_session=False)
        )
    return drifted
