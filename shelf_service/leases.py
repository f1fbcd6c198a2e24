"""
Lease store: durable holds on books and the deadline queries over them.

Every status change goes through ``close_lease`` which is a compare-and-set
on ``status = 'active'``. Whoever loses a race against the sweeper or the
committer gets a ``StaleReadError`` and re-runs with fresh state.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from .errors import ConflictError, StaleReadError
from .models import ACTIVE, CANCELLED, COMPLETED, EXPIRED, Lease

TERMINAL = (COMPLETED, EXPIRED, CANCELLED)


def get_lease(session, lease_id, lock=False):
    q = select(Lease).where(Lease.id == lease_id)
    if lock:
        q = q.with_for_update()
    return session.execute(q).scalar_one_or_none()


def active_lease_for_book(session, book_id, lock=False):
    q = select(Lease).where((Lease.book_id == book_id) & (Lease.status == ACTIVE))
    if lock:
        q = q.with_for_update()
    return session.execute(q).scalar_one_or_none()


def latest_lease_for_book(session, book_id):
    q = (
        select(Lease)
        .where(Lease.book_id == book_id)
        .order_by(Lease.created_at.desc(), Lease.id.desc())
        .limit(1)
    )
    return session.execute(q).scalar_one_or_none()


def due_lease_ids(session, now, book_id=None):
    """Ids of active leases whose deadline is strictly before ``now``."""
    q = select(Lease.id).where((Lease.status == ACTIVE) & (Lease.deadline < now))
    if book_id is not None:
        q = q.where(Lease.book_id == book_id)
    return list(session.execute(q.order_by(Lease.deadline, Lease.id)).scalars())


def leases_for_holder(session, holder_id, status=None):
    q = select(Lease).where(Lease.holder_id == holder_id)
    if status:
        q = q.where(Lease.status == status)
    return list(session.execute(q.order_by(Lease.created_at.desc())).scalars())


def open_lease(session, book_id, holder_id, deadline, now, unlock_event_id=None):
    lease = Lease(
        book_id=book_id,
        holder_id=holder_id,
        created_at=now,
        deadline=deadline,
        status=ACTIVE,
        unlock_event_id=unlock_event_id,
    )
    session.add(lease)
    try:
        session.flush()
    except IntegrityError as exc:
        # the partial unique index saw another active lease first
        raise ConflictError(
            "Book already has an active reservation",
            code="already_reserved",
            book_id=book_id,
        ) from exc
    return lease


def close_lease(session, lease, status, now):
    if status not in TERMINAL:
        raise ValueError(f"not a terminal lease status: {status}")
    result = session.execute(
        update(Lease)
        .where((Lease.id == lease.id) & (Lease.status == ACTIVE))
        .values(status=status, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleReadError(
            "Lease is no longer active",
            lease_id=lease.id,
            book_id=lease.book_id,
        )
    set_committed_value(lease, "status", status)
    set_committed_value(lease, "closed_at", now)
    return lease


def set_deadline(session, lease, deadline):
    result = session.execute(
        update(Lease)
        .where((Lease.id == lease.id) & (Lease.status == ACTIVE))
        .values(deadline=deadline)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleReadError(
            "Lease is no longer active", lease_id=lease.id, book_id=lease.book_id
        )
    set_committed_value(lease, "deadline", deadline)
    return lease
