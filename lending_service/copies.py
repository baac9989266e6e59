"""
Copy store: individual copy rows and their status.

Every function here runs inside the caller's atomic unit. Nothing commits,
and nothing outside inventory.py / lending.py should call these directly.
"""

import logging

from sqlalchemy import delete, select, update

from .errors import NotFound, PreconditionFailed
from .models import Copy, CopyStatus

logger = logging.getLogger(__name__)


def get_copy(session, copy_id, for_update=False):
    q = (
        select(Copy)
        .where(Copy.id == copy_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        q = q.with_for_update()
    copy = session.execute(q).scalar_one_or_none()
    if copy is None:
        raise NotFound(f"Book copy {copy_id} not found")
    return copy


def create_copy(session, book_id):
    copy = Copy(book_id=book_id, status=CopyStatus.AVAILABLE)
    session.add(copy)
    return copy


def set_status(session, copy_id, new_status, expected=None):
    """
    Move a copy to ``new_status``. With ``expected`` the UPDATE only matches
    a row still in that status, so a concurrent writer that got there first
    turns this call into a PreconditionFailed instead of a lost update.
    """
    stmt = update(Copy).where(Copy.id == copy_id)
    if expected is not None:
        stmt = stmt.where(Copy.status == expected)
    result = session.execute(
        stmt.values(status=new_status).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        exists = session.execute(
            select(Copy.id).where(Copy.id == copy_id)
        ).scalar_one_or_none()
        if expected is not None and exists is not None:
            raise PreconditionFailed(
                f"Book copy {copy_id} is not {expected.value.lower()}"
            )
        raise NotFound(f"Book copy {copy_id} not found")
    logger.debug("Copy %s -> %s", copy_id, new_status.value)


def list_copies(session, book_id, status=None):
    q = (
        select(Copy)
        .where(Copy.book_id == book_id)
        .order_by(Copy.created_at, Copy.id)
        .execution_options(populate_existing=True)
    )
    if status is not None:
        q = q.where(Copy.status == status)
    return list(session.execute(q).scalars())


def available_copy_ids(session, book_id, limit=None):
    """Oldest-created-first ids of AVAILABLE copies for a book."""
    q = (
        select(Copy.id)
        .where(Copy.book_id == book_id, Copy.status == CopyStatus.AVAILABLE)
        .order_by(Copy.created_at, Copy.id)
    )
    if limit is not None:
        q = q.limit(limit)
    return list(session.execute(q).scalars())


def delete_copy(session, copy_id):
    copy = get_copy(session, copy_id)
    if copy.status != CopyStatus.AVAILABLE:
        raise PreconditionFailed(
            f"Book copy {copy_id} is {copy.status.value.lower()} and cannot be removed"
        )
    delete_copies(session, [copy_id])


def delete_copies(session, copy_ids):
    """Delete AVAILABLE copies by id; all of them or none."""
    if not copy_ids:
        return
    result = session.execute(
        delete(Copy)
        .where(Copy.id.in_(copy_ids), Copy.status == CopyStatus.AVAILABLE)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(copy_ids):
        raise PreconditionFailed("Only available copies can be removed")
