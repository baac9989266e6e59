import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from . import catalog, copies
from .errors import NotFound, PreconditionFailed
from .models import CopyStatus, Loan, LoanStatus, OPEN_LOAN_STATUSES, User

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def compute_fine(due_date, returned_at, fine_per_day=10):
    """
    Whole days past due and the flat fine for them.

    Returns ``(overdue_days, fine)``; returning early or on time costs nothing.
    """
    overdue_days = max(0, (returned_at - due_date) // ONE_DAY)
    return overdue_days, overdue_days * fine_per_day


def get_loan(session, loan_id, for_update=False):
    q = (
        select(Loan)
        .where(Loan.id == loan_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        q = q.with_for_update()
    loan = session.execute(q).scalar_one_or_none()
    if loan is None:
        raise NotFound(f"Loan {loan_id} not found")
    return loan


class LendingService:
    """
    Issue / return / renew. Each call is one atomic unit over the loan, the
    copy and the owning book's counters; every guard runs before any write.
    Locks are taken book first, then copy, then loan.
    """

    def __init__(
        self,
        db,
        clock=datetime.utcnow,
        loan_period_days=14,
        renewal_days=7,
        max_renewals=1,
        fine_per_day=10,
    ):
        self.db = db
        self.clock = clock
        self.loan_period = timedelta(days=loan_period_days)
        self.renewal_period = timedelta(days=renewal_days)
        self.max_renewals = max_renewals
        self.fine_per_day = fine_per_day

    def issue(self, borrower_id, copy_id):
        with self.db.atomic() as session:
            if session.get(User, borrower_id) is None:
                raise NotFound(f"User {borrower_id} not found")

            copy = copies.get_copy(session, copy_id)
            if copy.status != CopyStatus.AVAILABLE:
                raise PreconditionFailed(f"Book copy {copy_id} is not available")

            book = catalog.get_book(session, copy.book_id, for_update=True)
            if book.available_copies <= 0:
                raise PreconditionFailed(
                    f"No available copies for book {book.id} ({book.title})"
                )

            open_loan = session.execute(
                select(Loan.id).where(
                    Loan.copy_id == copy_id, Loan.status.in_(OPEN_LOAN_STATUSES)
                )
            ).first()
            if open_loan is not None:
                raise PreconditionFailed(
                    f"Book copy {copy_id} already has open loan {open_loan.id}"
                )

            # Fails if another transaction issued this copy after our read
            copies.set_status(
                session, copy_id, CopyStatus.ISSUED, expected=CopyStatus.AVAILABLE
            )
            catalog.decrement_available(session, book.id)

            now = self.clock()
            loan = Loan(
                user_id=borrower_id,
                copy_id=copy_id,
                issue_date=now,
                due_date=now + self.loan_period,
                status=LoanStatus.ISSUED,
                renew_count=0,
            )
            session.add(loan)
            session.flush()

            logger.info(
                "Issued copy %s of book %s to user %s as loan %s, due %s",
                copy_id,
                book.id,
                borrower_id,
                loan.id,
                loan.due_date.isoformat(),
            )
            return loan

    def return_loan(self, loan_id):
        """
        Close a loan. Returns ``(loan, {"overdue_days": n, "fine": amount})``.
        """
        with self.db.atomic() as session:
            loan = get_loan(session, loan_id)
            if not loan.is_open:
                raise PreconditionFailed(f"Loan {loan_id} was already returned")

            copy = copies.get_copy(session, loan.copy_id)
            catalog.get_book(session, copy.book_id, for_update=True)

            # Re-read under the book lock; a concurrent return may have won
            loan = get_loan(session, loan_id, for_update=True)
            if not loan.is_open:
                raise PreconditionFailed(f"Loan {loan_id} was already returned")

            now = self.clock()
            overdue_days, fine = compute_fine(loan.due_date, now, self.fine_per_day)

            copies.set_status(
                session, copy.id, CopyStatus.AVAILABLE, expected=CopyStatus.ISSUED
            )
            catalog.increment_available(session, copy.book_id)

            loan.status = LoanStatus.RETURNED
            loan.return_date = now
            session.flush()

            logger.info(
                "Loan %s returned (copy %s), %s days overdue, fine %s",
                loan_id,
                copy.id,
                overdue_days,
                fine,
            )
            return loan, {"overdue_days": overdue_days, "fine": fine}

    def renew(self, loan_id):
        with self.db.atomic() as session:
            loan = get_loan(session, loan_id, for_update=True)
            if loan.status != LoanStatus.ISSUED:
                raise PreconditionFailed("Only issued books can be renewed")
            if loan.renew_count >= self.max_renewals:
                raise PreconditionFailed("Maximum renewal limit reached")

            loan.due_date = loan.due_date + self.renewal_period
            loan.renew_count = loan.renew_count + 1
            session.flush()

            logger.info(
                "Loan %s renewed (%s), now due %s",
                loan_id,
                loan.renew_count,
                loan.due_date.isoformat(),
            )
            return loan
