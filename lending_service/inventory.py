import logging

from sqlalchemy import func, select

from . import catalog, copies
from .errors import InsufficientAvailable, InvalidArgument, PreconditionFailed
from .models import Book, Copy, CopyStatus, Loan, OPEN_LOAN_STATUSES

logger = logging.getLogger(__name__)


def _require_count(count):
    if isinstance(count, bool) or not isinstance(count, int):
        raise InvalidArgument("Count must be an integer")
    return count


def _require_status(status):
    if status is None or isinstance(status, CopyStatus):
        return status
    try:
        return CopyStatus(str(status).upper())
    except ValueError:
        choices = ", ".join(s.value for s in CopyStatus)
        raise InvalidArgument(f"Unknown copy status {status!r}, expected one of {choices}") from None


class InventoryService:
    """
    Bulk copy provisioning and removal. Every public method is one atomic
    unit: copy rows and the book's counters change together or not at all.
    """

    def __init__(self, db, max_copies_per_request=100):
        self.db = db
        self.max_copies_per_request = max_copies_per_request

    # ----------------- catalog entries -----------------

    def create_book(self, isbn, title, author=None, publisher=None, year=None, copies=0):
        """
        Upsert a book by ISBN. Counters are never taken from the caller;
        ``copies`` provisions that many new copies in the same transaction.
        """
        if not isbn or not title:
            raise InvalidArgument("isbn and title are required")
        copies_to_add = _require_count(copies)
        if copies_to_add:
            self._check_add_count(copies_to_add)

        with self.db.atomic() as session:
            book = session.execute(
                select(Book).where(Book.isbn == isbn).with_for_update()
            ).scalar_one_or_none()
            created = book is None
            if created:
                book = Book(isbn=isbn, title=title, total_copies=0, available_copies=0)
                session.add(book)
            else:
                book.title = title
            book.author = author
            book.publisher = publisher
            book.year = year
            session.flush()

            if copies_to_add:
                self._provision(session, book.id, copies_to_add)

            logger.info(
                "%s book %s (isbn=%s) with %s new copies",
                "Created" if created else "Updated",
                book.id,
                isbn,
                copies_to_add,
            )
            return self._book_dict(session, book.id), created

    def list_books(self, title=None, author=None):
        with self.db.atomic() as session:
            q = select(Book).order_by(Book.id)
            if title:
                q = q.where(Book.title.ilike(f"%{title}%"))
            if author:
                q = q.where(Book.author.ilike(f"%{author}%"))
            ids = [b.id for b in session.execute(q).scalars()]
            return [self._book_dict(session, book_id) for book_id in ids]

    def get_book(self, book_id):
        with self.db.atomic() as session:
            return self._book_dict(session, book_id)

    # ----------------- copies -----------------

    def add_copies(self, book_id, count):
        count = self._check_add_count(_require_count(count))
        with self.db.atomic() as session:
            book = catalog.get_book(session, book_id, for_update=True)
            self._provision(session, book.id, count)
            logger.info("Added %s copies to book %s (%s)", count, book_id, book.title)
            return self._stats(session, book_id)

    def list_copies(self, book_id, status=None):
        """Copies of one book, oldest first, optionally filtered by status."""
        with self.db.atomic() as session:
            catalog.get_book(session, book_id)
            return copies.list_copies(session, book_id, _require_status(status))

    def get_copy(self, copy_id):
        with self.db.atomic() as session:
            return copies.get_copy(session, copy_id)

    def remove_copies(self, book_id, count):
        count = _require_count(count)
        if count < 1:
            raise InvalidArgument("Count must be at least 1")

        with self.db.atomic() as session:
            book = catalog.get_book(session, book_id, for_update=True)
            if count > book.available_copies:
                raise InsufficientAvailable(count, book.available_copies)

            ids = copies.available_copy_ids(session, book_id, limit=count)
            if len(ids) != count:
                # Counter says yes but copy rows say no: refuse rather than drift.
                logger.error(
                    "Book %s reports %s available but only %s available copies exist",
                    book_id,
                    book.available_copies,
                    len(ids),
                )
                raise InsufficientAvailable(count, len(ids))

            copies.delete_copies(session, ids)
            catalog.decrement_totals(session, book_id, count)
            logger.info(
                "Removed %s copies from book %s (%s)", count, book_id, book.title
            )
            return self._stats(session, book_id)

    def remove_copy(self, copy_id):
        with self.db.atomic() as session:
            book_id = copies.get_copy(session, copy_id).book_id
            catalog.get_book(session, book_id, for_update=True)
            copies.delete_copy(session, copy_id)
            catalog.decrement_totals(session, book_id, 1)
            logger.info("Removed copy %s from book %s", copy_id, book_id)
            return self._stats(session, book_id)

    def report_lost(self, copy_id):
        """Mark an AVAILABLE copy as LOST; it stays counted in total_copies."""
        with self.db.atomic() as session:
            copy = copies.get_copy(session, copy_id)
            if copy.status != CopyStatus.AVAILABLE:
                raise PreconditionFailed(
                    f"Book copy {copy_id} is {copy.status.value.lower()}, "
                    "only available copies can be reported lost"
                )
            # Lock order is always book, then copy
            catalog.get_book(session, copy.book_id, for_update=True)
            copies.set_status(
                session, copy_id, CopyStatus.LOST, expected=CopyStatus.AVAILABLE
            )
            catalog.decrement_available(session, copy.book_id)
            logger.info("Copy %s of book %s reported lost", copy_id, copy.book_id)
            return self._stats(session, copy.book_id)

    # ----------------- reads -----------------

    def get_stats(self, book_id):
        with self.db.atomic() as session:
            catalog.get_book(session, book_id)
            return self._stats(session, book_id)

    def summary(self):
        with self.db.atomic() as session:
            rows = session.execute(
                select(Copy.status, func.count(Copy.id)).group_by(Copy.status)
            ).all()
            by_status = {status: n for status, n in rows}
            return {
                "total": sum(by_status.values()),
                "available": by_status.get(CopyStatus.AVAILABLE, 0),
                "issued": by_status.get(CopyStatus.ISSUED, 0),
                "lost": by_status.get(CopyStatus.LOST, 0),
            }

    def reconcile(self, book_id):
        with self.db.atomic() as session:
            drifted = catalog.reconcile(session, book_id)
            return drifted, self._stats(session, book_id)

    # ----------------- helpers -----------------

    def _check_add_count(self, count):
        if count < 1 or count > self.max_copies_per_request:
            raise InvalidArgument(
                f"Count must be between 1 and {self.max_copies_per_request}"
            )
        return count

    def _provision(self, session, book_id, count):
        for _ in range(count):
            copies.create_copy(session, book_id)
        session.flush()
        catalog.increment_totals(session, book_id, count)

    def _stats(self, session, book_id):
        total, available = catalog.counters(session, book_id)
        issued = session.execute(
            select(func.count(Loan.id))
            .join(Copy, Loan.copy_id == Copy.id)
            .where(Copy.book_id == book_id, Loan.status.in_(OPEN_LOAN_STATUSES))
        ).scalar_one()
        return {
            "book_id": book_id,
            "total_copies": total,
            "available_copies": available,
            "issued_copies": issued,
        }

    def _book_dict(self, session, book_id):
        book = catalog.get_book(session, book_id)
        data = {
            "id": book.id,
            "isbn": book.isbn,
            "title": book.title,
            "author": book.author,
            "publisher": book.publisher,
            "year": book.year,
        }
        data.update(self._stats(session, book_id))
        del data["book_id"]
        return data

