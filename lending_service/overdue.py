"""
Overdue sweep: ISSUED loans past their due date become OVERDUE.

Runs on demand (``sweep_overdue``) and, when configured, on a background
thread (``OverdueSweeper``).
"""

import logging
from datetime import datetime
from threading import Event, Thread

from sqlalchemy import select, update

from .errors import TransientError
from .models import Loan, LoanStatus

logger = logging.getLogger(__name__)


def sweep_overdue(db, now):
    """
    Reclassify every ISSUED loan with ``due_date < now`` as OVERDUE in one
    transaction. Returns those loans as they were before the change, so a
    second sweep at the same instant returns an empty list.
    """
    with db.atomic() as session:
        lapsed = list(
            session.execute(
                select(Loan)
                .where(Loan.status == LoanStatus.ISSUED, Loan.due_date < now)
                .order_by(Loan.due_date, Loan.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        )
        if not lapsed:
            return []

        # Core update: the loaded objects keep their pre-sweep status
        session.execute(
            update(Loan)
            .where(
                Loan.id.in_([loan.id for loan in lapsed]),
                Loan.status == LoanStatus.ISSUED,
            )
            .values(status=LoanStatus.OVERDUE)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Marked %s loans overdue: %s",
            len(lapsed),
            ", ".join(str(loan.id) for loan in lapsed),
        )
        return lapsed


class OverdueSweeper:
    """Runs ``sweep_overdue`` every ``interval`` seconds until stopped."""

    def __init__(self, db, interval, clock=datetime.utcnow):
        self.db = db
        self.interval = interval
        self.clock = clock
        self._stop_event = Event()
        self._thread = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._run, name="overdue-sweeper", daemon=True)
        self._thread.start()
        logger.info("Overdue sweeper started (every %ss)", self.interval)

    def stop(self, timeout=None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Overdue sweeper stopped")

    def run_once(self):
        try:
            return sweep_overdue(self.db, self.clock())
        except TransientError as exc:
            # next tick retries
            logger.warning("Overdue sweep failed: %s", exc)
            return []

    def _run(self):
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval)
