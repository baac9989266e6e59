"""
Role-scoped reads over loans.

Every entry point goes through ``can_access`` (single loans) or
``scope_query`` (lists) so a student can never reach another borrower's
loans, whichever endpoint they come in through.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from .errors import Forbidden
from .lending import get_loan
from .models import LEAST_PRIVILEGED_ROLE, Loan, OPEN_LOAN_STATUSES, Role
from .overdue import sweep_overdue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Requester:
    user_id: int
    role: Role

    @property
    def is_self_scoped(self) -> bool:
        return self.role == LEAST_PRIVILEGED_ROLE


def can_access(requester: Requester, loan: Loan) -> bool:
    return not requester.is_self_scoped or loan.user_id == requester.user_id


def can_access_borrower(requester: Requester, borrower_id: int) -> bool:
    return not requester.is_self_scoped or borrower_id == requester.user_id


def scope_query(q, requester: Requester):
    if requester.is_self_scoped:
        q = q.where(Loan.user_id == requester.user_id)
    return q


class LoanQueries:
    def __init__(self, db, clock=datetime.utcnow):
        self.db = db
        self.clock = clock

    def list_loans(self, requester: Requester):
        """Newest first; students only see their own."""
        with self.db.atomic() as session:
            q = scope_query(
                select(Loan).order_by(Loan.issue_date.desc(), Loan.id.desc()),
                requester,
            )
            return list(session.execute(q).scalars())

    def get_loan(self, loan_id: int, requester: Requester):
        with self.db.atomic() as session:
            loan = get_loan(session, loan_id)
        if not can_access(requester, loan):
            logger.warning(
                "User %s (%s) denied access to loan %s",
                requester.user_id,
                requester.role.value,
                loan_id,
            )
            raise Forbidden("You can only view your own loans")
        return loan

    def list_active_by_borrower(self, borrower_id: int, requester: Requester):
        if not can_access_borrower(requester, borrower_id):
            logger.warning(
                "User %s (%s) denied access to loans of user %s",
                requester.user_id,
                requester.role.value,
                borrower_id,
            )
            raise Forbidden("You can only view your own loans")
        with self.db.atomic() as session:
            q = scope_query(
                select(Loan)
                .where(Loan.user_id == borrower_id, Loan.status.in_(OPEN_LOAN_STATUSES))
                .order_by(Loan.due_date, Loan.id),
                requester,
            )
            return list(session.execute(q).scalars())

    def list_overdue(self, requester: Requester):
        """Staff only. Sweeps first and returns the loans that just lapsed."""
        if requester.is_self_scoped:
            raise Forbidden("Only staff can list overdue loans")
        return sweep_overdue(self.db, self.clock())
