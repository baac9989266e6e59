"""Tests for the overdue sweep."""

import time
from datetime import timedelta

import pytest

from lending_service.errors import PreconditionFailed, TransientError
from lending_service.models import LoanStatus
from lending_service.overdue import OverdueSweeper, sweep_overdue


@pytest.fixture
def loans(inventory, lending, book, make_user, copy_ids, clock):
    """Three loans issued a day apart: due day 14, 15 and 16."""
    inventory.add_copies(book, 3)
    borrower = make_user()
    issued = []
    for copy_id in copy_ids(book):
        issued.append(lending.issue(borrower, copy_id))
        clock.advance(days=1)
    return issued


def test_sweep_reclassifies_only_lapsed_issued_loans(db, lending, loans, clock):
    first, second, third = loans
    now = second.due_date + timedelta(minutes=1)

    swept = sweep_overdue(db, now)

    assert [loan.id for loan in swept] == [first.id, second.id]
    # Caller sees the loans as they were before the sweep
    assert all(loan.status == LoanStatus.ISSUED for loan in swept)

    with pytest.raises(PreconditionFailed):
        lending.renew(first.id)
    assert lending.renew(third.id).renew_count == 1


def test_sweep_twice_returns_empty_second_time(db, loans):
    now = loans[-1].due_date + timedelta(days=1)

    assert len(sweep_overdue(db, now)) == 3
    assert sweep_overdue(db, now) == []


def test_sweep_uses_strict_due_date_comparison(db, loans):
    assert sweep_overdue(db, loans[0].due_date) == []


def test_sweep_skips_returned_loans(db, lending, loans):
    lending.return_loan(loans[0].id)

    swept = sweep_overdue(db, loans[-1].due_date + timedelta(days=1))

    assert [loan.id for loan in swept] == [loans[1].id, loans[2].id]


def test_sweep_with_nothing_issued(db, clock):
    assert sweep_overdue(db, clock()) == []


def test_sweeper_run_once_uses_clock(db, loans, clock):
    clock.now = loans[-1].due_date + timedelta(hours=1)
    sweeper = OverdueSweeper(db, interval=60, clock=clock)

    assert len(sweeper.run_once()) == 3
    assert sweeper.run_once() == []


def test_sweeper_run_once_survives_transient_errors(db, clock, monkeypatch):
    def locked(*args, **kwargs):
        raise TransientError("database is locked")

    monkeypatch.setattr("lending_service.overdue.sweep_overdue", locked)
    sweeper = OverdueSweeper(db, interval=60, clock=clock)

    assert sweeper.run_once() == []


def test_sweeper_thread_runs_and_stops(db, loans, clock, queries):
    from lending_service.access import Requester
    from lending_service.models import Role

    clock.now = loans[-1].due_date + timedelta(hours=1)
    sweeper = OverdueSweeper(db, interval=0.05, clock=clock)
    sweeper.start()
    try:
        admin = Requester(user_id=1, role=Role.ADMIN)
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            statuses = {loan.status for loan in queries.list_loans(admin)}
            if statuses == {LoanStatus.OVERDUE}:
                break
            time.sleep(0.05)
        assert statuses == {LoanStatus.OVERDUE}
    finally:
        sweeper.stop(timeout=5)
