from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from lending_service.db import Database
from lending_service.inventory import InventoryService
from lending_service.lending import LendingService
from lending_service.access import LoanQueries
from lending_service.models import Book, Copy, CopyStatus, Loan, OPEN_LOAN_STATUSES, Role, User


class FakeClock:
    """Settable stand-in for datetime.utcnow."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 30))


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite file database per test."""
    database = Database(f"sqlite:///{tmp_path / 'lending.db'}", timeout=10)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def inventory(db):
    return InventoryService(db)


@pytest.fixture
def lending(db, clock):
    return LendingService(db, clock=clock)


@pytest.fixture
def queries(db, clock):
    return LoanQueries(db, clock=clock)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=Role.STUDENT, name=None):
        counter["n"] += 1
        n = counter["n"]
        with db.atomic() as session:
            user = User(
                external_id=f"user-{n}",
                name=name or f"User {n}",
                email=f"user{n}@example.com",
                role=role,
            )
            session.add(user)
            session.flush()
            return user.id

    return _make


@pytest.fixture
def book(inventory):
    """A book with no copies yet; returns its id."""
    data, _ = inventory.create_book(
        isbn="978-0132350884", title="Clean Code", author="Robert C. Martin"
    )
    return data["id"]


@pytest.fixture
def copy_ids(db):
    def _ids(book_id, status=None):
        with db.atomic() as session:
            q = select(Copy.id).where(Copy.book_id == book_id).order_by(Copy.id)
            if status is not None:
                q = q.where(Copy.status == status)
            return list(session.execute(q).scalars())

    return _ids


@pytest.fixture
def assert_consistent(db):
    """Counters must match copy rows, and no copy has two open loans."""

    def _check(book_id):
        with db.atomic() as session:
            book = session.get(Book, book_id)
            total = session.execute(
                select(func.count(Copy.id)).where(Copy.book_id == book_id)
            ).scalar_one()
            available = session.execute(
                select(func.count(Copy.id)).where(
                    Copy.book_id == book_id, Copy.status == CopyStatus.AVAILABLE
                )
            ).scalar_one()
            open_per_copy = session.execute(
                select(Loan.copy_id, func.count(Loan.id))
                .where(Loan.status.in_(OPEN_LOAN_STATUSES))
                .group_by(Loan.copy_id)
            ).all()

            assert book.total_copies == total
            assert book.available_copies == available
            assert 0 <= book.available_copies <= book.total_copies
            assert all(n == 1 for _, n in open_per_copy)

    return _check
