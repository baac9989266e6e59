"""Tests for role-scoped loan reads."""

from datetime import timedelta

import pytest

from lending_service.access import Requester, can_access, can_access_borrower
from lending_service.errors import Forbidden, NotFound
from lending_service.models import Loan, LoanStatus, Role


@pytest.fixture
def people(make_user):
    return {
        "alice": make_user(Role.STUDENT, "Alice"),
        "bob": make_user(Role.STUDENT, "Bob"),
        "lib": make_user(Role.LIBRARIAN, "Lin"),
        "admin": make_user(Role.ADMIN, "Ada"),
    }


@pytest.fixture
def as_user(people):
    roles = {"alice": Role.STUDENT, "bob": Role.STUDENT, "lib": Role.LIBRARIAN, "admin": Role.ADMIN}

    def _as(name):
        return Requester(user_id=people[name], role=roles[name])

    return _as


@pytest.fixture
def loans(inventory, lending, book, people, copy_ids, clock):
    inventory.add_copies(book, 3)
    a1, a2, b1 = copy_ids(book)
    alice_first = lending.issue(people["alice"], a1)
    clock.advance(days=1)
    bob_loan = lending.issue(people["bob"], b1)
    clock.advance(days=1)
    alice_second = lending.issue(people["alice"], a2)
    lending.return_loan(alice_first.id)
    return {"alice_first": alice_first, "bob": bob_loan, "alice_second": alice_second}


def test_can_access_predicate():
    loan = Loan(user_id=1)
    assert can_access(Requester(1, Role.STUDENT), loan)
    assert not can_access(Requester(2, Role.STUDENT), loan)
    assert can_access(Requester(2, Role.LIBRARIAN), loan)
    assert can_access(Requester(2, Role.ADMIN), loan)
    assert can_access_borrower(Requester(1, Role.STUDENT), 1)
    assert not can_access_borrower(Requester(1, Role.STUDENT), 2)


def test_student_lists_only_own_loans_newest_first(queries, loans, as_user):
    listed = queries.list_loans(as_user("alice"))
    assert [loan.id for loan in listed] == [loans["alice_second"].id, loans["alice_first"].id]


def test_staff_list_all_loans_newest_first(queries, loans, as_user):
    expected = [loans["alice_second"].id, loans["bob"].id, loans["alice_first"].id]
    assert [loan.id for loan in queries.list_loans(as_user("lib"))] == expected
    assert [loan.id for loan in queries.list_loans(as_user("admin"))] == expected


def test_student_cannot_read_other_borrowers_loan(queries, loans, as_user):
    with pytest.raises(Forbidden):
        queries.get_loan(loans["bob"].id, as_user("alice"))


def test_privileged_roles_read_any_loan(queries, loans, as_user):
    assert queries.get_loan(loans["bob"].id, as_user("lib")).user_id == as_user("bob").user_id
    assert queries.get_loan(loans["bob"].id, as_user("admin")).id == loans["bob"].id


def test_student_reads_own_loan(queries, loans, as_user):
    assert queries.get_loan(loans["alice_first"].id, as_user("alice")).status == LoanStatus.RETURNED


def test_get_missing_loan(queries, as_user, people):
    with pytest.raises(NotFound):
        queries.get_loan(404, as_user("admin"))


def test_active_by_borrower_excludes_returned(queries, loans, as_user):
    active = queries.list_active_by_borrower(as_user("alice").user_id, as_user("alice"))
    assert [loan.id for loan in active] == [loans["alice_second"].id]


def test_active_by_borrower_forbidden_for_other_student(queries, loans, as_user):
    with pytest.raises(Forbidden):
        queries.list_active_by_borrower(as_user("bob").user_id, as_user("alice"))


def test_active_by_borrower_for_staff(queries, loans, as_user):
    active = queries.list_active_by_borrower(as_user("bob").user_id, as_user("lib"))
    assert [loan.id for loan in active] == [loans["bob"].id]


def test_active_includes_overdue(queries, loans, as_user, clock):
    clock.now = loans["bob"].due_date + timedelta(days=1)
    queries.list_overdue(as_user("admin"))

    active = queries.list_active_by_borrower(as_user("bob").user_id, as_user("bob"))
    assert [loan.status for loan in active] == [LoanStatus.OVERDUE]


def test_list_overdue_is_staff_only(queries, loans, as_user):
    with pytest.raises(Forbidden):
        queries.list_overdue(as_user("alice"))


def test_list_overdue_sweeps(queries, loans, as_user, clock):
    clock.now = loans["alice_second"].due_date + timedelta(days=1)

    overdue = queries.list_overdue(as_user("lib"))

    assert {loan.id for loan in overdue} == {loans["bob"].id, loans["alice_second"].id}
    assert queries.list_overdue(as_user("lib")) == []
