"""
Inventory store: shelves, books, issued records and shelf alerts.
"""

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from .classifier import mass_error
from .errors import ConflictError, StaleReadError
from .models import (
    AVAILABLE,
    ISSUED,
    RESERVED,
    Book,
    IssuedRecord,
    Shelf,
    ShelfAlert,
    WeightReading,
)

MOST_RECENT = "most_recent"
CLOSEST_MASS = "closest_mass"
TIE_BREAKS = (MOST_RECENT, CLOSEST_MASS)


def derive_status(has_active_lease, has_open_issue):
    if has_open_issue:
        return ISSUED
    if has_active_lease:
        return RESERVED
    return AVAILABLE


# ----------------- shelves -----------------

def get_shelf(session, shelf_id, lock=False):
    q = select(Shelf).where(Shelf.id == shelf_id)
    if lock:
        q = q.with_for_update()
    return session.execute(q).scalar_one_or_none()


def apply_reading(session, shelf, new_mass, observed_at):
    """Move the shelf baseline, provided nobody else moved it first."""
    result = session.execute(
        update(Shelf)
        .where((Shelf.id == shelf.id) & (Shelf.current_mass == shelf.current_mass))
        .values(current_mass=new_mass, last_update=observed_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleReadError("Shelf mass changed concurrently", shelf_id=shelf.id)
    set_committed_value(shelf, "current_mass", new_mass)
    set_committed_value(shelf, "last_update", observed_at)


def record_reading(session, classification, outcome, observed_at, now):
    reading = WeightReading(
        shelf_id=classification.shelf_id,
        previous_mass=classification.previous_mass,
        new_mass=classification.new_mass,
        delta=classification.new_mass - classification.previous_mass,
        kind=classification.kind,
        outcome=outcome,
        observed_at=observed_at,
        recorded_at=now,
    )
    session.add(reading)
    return reading


# ----------------- books -----------------

def get_book(session, book_id, lock=False):
    q = select(Book).where(Book.id == book_id)
    if lock:
        q = q.with_for_update()
    return session.execute(q).scalar_one_or_none()


def set_book_status(session, book, expected, new_status, now):
    result = session.execute(
        update(Book)
        .where((Book.id == book.id) & (Book.status == expected))
        .values(status=new_status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleReadError(
            f"Book is no longer {expected}", book_id=book.id, shelf_id=book.shelf_id
        )
    set_committed_value(book, "status", new_status)
    set_committed_value(book, "updated_at", now)
    return book


def _rank(books, delta, preferred, tie_break):
    order = {status: i for i, status in enumerate(preferred)}
    if tie_break == CLOSEST_MASS:
        def key(b):
            return (order.get(b.status, len(order)), mass_error(b.mass, delta), b.id)
    else:
        def key(b):
            return (order.get(b.status, len(order)), -b.updated_at.timestamp(), b.id)
    return sorted(books, key=key)


def matching_books(session, shelf_id, statuses, delta, tolerance, tie_break=MOST_RECENT):
    """
    Books on ``shelf_id`` with one of ``statuses`` whose mass explains
    ``delta``, best match first. ``statuses`` order is the preference order.
    """
    q = select(Book).where(
        (Book.shelf_id == shelf_id)
        & Book.status.in_(statuses)
        & (func.abs(Book.mass - abs(delta)) <= tolerance)
    )
    return _rank(session.execute(q).scalars().all(), delta, statuses, tie_break)


def match_elsewhere(session, shelf_id, statuses, delta, tolerance, tie_break=MOST_RECENT):
    """
    Best ``(book, home_shelf)`` pair matching ``delta`` on any other shelf.
    Plain read, no row locks, so other shelves' commits never wait on it.
    """
    q = (
        select(Book, Shelf)
        .join(Shelf, Book.shelf_id == Shelf.id)
        .where(
            (Book.shelf_id != shelf_id)
            & Book.status.in_(statuses)
            & (func.abs(Book.mass - abs(delta)) <= tolerance)
        )
    )
    rows = session.execute(q).all()
    if not rows:
        return None, None
    homes = {book.id: shelf for book, shelf in rows}
    best = _rank([book for book, _ in rows], delta, statuses, tie_break)[0]
    return best, homes[best.id]


# ----------------- issued records -----------------

def open_issue_for_book(session, book_id, lock=False):
    q = select(IssuedRecord).where(
        (IssuedRecord.book_id == book_id) & IssuedRecord.returned_at.is_(None)
    )
    if lock:
        q = q.with_for_update()
    return session.execute(q).scalar_one_or_none()


def open_issue(session, book, holder_id, lease_id, now, due_at):
    if open_issue_for_book(session, book.id) is not None:
        raise ConflictError(
            "Book already has an open issued record",
            code="already_issued",
            book_id=book.id,
            lease_id=lease_id,
        )
    record = IssuedRecord(
        book_id=book.id,
        holder_id=holder_id,
        lease_id=lease_id,
        issued_at=now,
        due_at=due_at,
    )
    session.add(record)
    try:
        session.flush()
    except IntegrityError as exc:
        raise StaleReadError(
            "Concurrent issuance of the same book", book_id=book.id, lease_id=lease_id
        ) from exc
    return record


def close_issue(session, record, now):
    result = session.execute(
        update(IssuedRecord)
        .where((IssuedRecord.id == record.id) & IssuedRecord.returned_at.is_(None))
        .values(returned_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleReadError(
            "Issued record already closed", book_id=record.book_id, issued_id=record.id
        )
    set_committed_value(record, "returned_at", now)
    return record


def issues_for_book(session, book_id):
    q = select(IssuedRecord).where(IssuedRecord.book_id == book_id)
    return list(session.execute(q.order_by(IssuedRecord.issued_at)).scalars())


# ----------------- alerts -----------------

def add_alert(
    session,
    shelf,
    alert_type,
    direction,
    magnitude,
    message,
    now,
    book=None,
    expected_shelf_number=None,
):
    alert = ShelfAlert(
        shelf_id=shelf.id,
        shelf_number=shelf.shelf_number,
        alert_type=alert_type,
        direction=direction,
        magnitude=magnitude,
        book_id=book.id if book is not None else None,
        expected_shelf_number=expected_shelf_number,
        message=message,
        created_at=now,
    )
    session.add(alert)
    session.flush()
    return alert


def list_alerts(session, unresolved_only=False, shelf_id=None, limit=100):
    q = select(ShelfAlert)
    if unresolved_only:
        q = q.where(ShelfAlert.resolved_at.is_(None))
    if shelf_id is not None:
        q = q.where(ShelfAlert.shelf_id == shelf_id)
    q = q.order_by(ShelfAlert.created_at.desc(), ShelfAlert.id.desc()).limit(limit)
    return list(session.execute(q).scalars())
