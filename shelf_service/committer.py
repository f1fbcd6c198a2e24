"""
Transaction committer: the only code that moves books, leases and issued
records between states.

Each public method is the body of one atomic unit (see ``db.atomic``). It reads
what it needs, re-checks every precondition inside the unit, applies
compare-and-set updates and queues outbox events for the fan-out. Nothing in
here performs network I/O.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update

from . import inventory, leases, notifications
from .classifier import CANDIDATE_REMOVAL, NOISE, classify
from .errors import ConflictError, NotFoundError, NotOwnerError, StaleReadError, ValidationError
from .models import (
    ACTIVE,
    ADDITION,
    AVAILABLE,
    CANCELLED,
    COMPLETED,
    EXPIRED,
    EXPIRED_PICKUP_ATTEMPT,
    ISSUED,
    PICKUP,
    REMOVAL,
    RESERVED,
    RETURN,
    STAFF_ROLES,
    UNAUTHORIZED_PICKUP,
    UNKNOWN_OBJECT,
    WRONG_SHELF,
    UnlockEvent,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

# Outcomes of one weight reading
OUTCOME_NOISE = "noise"
OUTCOME_STALE = "stale"
OUTCOME_SHELF_INACTIVE = "shelf_inactive"
OUTCOME_ISSUED = "issued"
OUTCOME_RETURNED = "returned"
OUTCOME_RESTOCKED = "restocked"
OUTCOME_EXPIRED_PICKUP = EXPIRED_PICKUP_ATTEMPT
OUTCOME_UNAUTHORIZED_PICKUP = UNAUTHORIZED_PICKUP
OUTCOME_WRONG_SHELF = WRONG_SHELF
OUTCOME_UNKNOWN_OBJECT = UNKNOWN_OBJECT

ANOMALIES = (OUTCOME_WRONG_SHELF, OUTCOME_UNKNOWN_OBJECT)


@dataclass
class CommitResult:
    """What one reading did. Anomalies are successful outcomes, not errors."""

    shelf_id: int
    kind: str
    delta: float
    previous_mass: float
    new_mass: float
    outcome: str
    book_id: Optional[int] = None
    lease_id: Optional[int] = None
    issued_id: Optional[int] = None
    alert_id: Optional[int] = None
    details: dict = field(default_factory=dict)

    @property
    def anomaly_detected(self):
        return self.outcome in ANOMALIES

    def to_dict(self):
        data = asdict(self)
        data["anomaly_detected"] = self.anomaly_detected
        return data


class Committer:
    def __init__(self, config, clock=utcnow):
        self.config = config
        self.clock = clock
        self.tie_break = config.MATCH_TIE_BREAK
        if self.tie_break not in inventory.TIE_BREAKS:
            raise ValueError(f"unknown MATCH_TIE_BREAK {self.tie_break!r}")

    # ----------------- weight readings -----------------

    def ingest(self, session, shelf_id, mass, observed_at):
        _check_mass(mass, shelf_id)
        now = self.clock()
        shelf = inventory.get_shelf(session, shelf_id, lock=True)
        if shelf is None:
            raise NotFoundError("Shelf not found", shelf_id=shelf_id)

        c = classify(shelf.id, shelf.current_mass, mass, self.config.NOISE_FLOOR_GRAMS)

        if observed_at > now:
            # sensor clock runs ahead; never let it push last_update into the future
            logger.info(
                "Reading for shelf %s stamped %s, ahead of %s", shelf.shelf_number, observed_at, now
            )
            observed_at = now

        if shelf.last_update is not None and observed_at < shelf.last_update:
            # an older reading arrived late; the stored mass is already newer
            logger.info(
                "Stale reading for shelf %s observed %s < %s",
                shelf.shelf_number,
                observed_at,
                shelf.last_update,
            )
            inventory.record_reading(session, c, OUTCOME_STALE, observed_at, now)
            return _result(c, OUTCOME_STALE)

        if mass > shelf.capacity:
            logger.warning(
                "Shelf %s reports %sg over capacity %sg", shelf.shelf_number, mass, shelf.capacity
            )
        inventory.apply_reading(session, shelf, float(mass), observed_at)

        if not shelf.is_active:
            result = _result(c, OUTCOME_SHELF_INACTIVE)
        elif c.kind == NOISE:
            result = _result(c, OUTCOME_NOISE)
        elif c.kind == CANDIDATE_REMOVAL:
            result = self._removal(session, shelf, c, now)
        else:
            result = self._addition(session, shelf, c, now)

        inventory.record_reading(session, c, result.outcome, observed_at, now)
        return result

    def _removal(self, session, shelf, c, now):
        matches = inventory.matching_books(
            session,
            shelf.id,
            (RESERVED, AVAILABLE),
            c.delta,
            self.config.MASS_TOLERANCE_GRAMS,
            self.tie_break,
        )
        if not matches:
            return self._misplaced_or_unknown(session, shelf, c, REMOVAL, now)

        book = matches[0]
        if book.status == RESERVED:
            lease = leases.active_lease_for_book(session, book.id, lock=True)
            if lease is None:
                book = self._repair_status(session, book, now)
            elif lease.deadline < now:
                return self._reject_expired_pickup(session, shelf, book, lease, c, now)
            else:
                return self._issue(session, shelf, book, lease.holder_id, c, now, lease=lease)
        return self._pickup_without_lease(session, shelf, book, c, now)

    def _issue(self, session, shelf, book, holder_id, c, now, lease=None, unlock=None):
        if lease is not None:
            leases.close_lease(session, lease, COMPLETED, now)
            if lease.unlock_event_id:
                _consume_unlock(session, lease.unlock_event_id, now, strict=False)
        if unlock is not None:
            _consume_unlock(session, unlock.id, now)
        due_at = now + timedelta(days=self.config.LOAN_PERIOD_DAYS)
        record = inventory.open_issue(
            session, book, holder_id, lease.id if lease else None, now, due_at
        )
        inventory.set_book_status(session, book, book.status, ISSUED, now)
        notifications.enqueue(
            session,
            notifications.BOOK_ISSUED,
            _payload(
                session,
                book,
                shelf,
                now,
                lease=lease,
                holder_id=holder_id,
                issued_id=record.id,
                issued_at=now,
                due_at=due_at,
            ),
            now,
        )
        logger.info(
            "Issued book %s (%s) from shelf %s to %s, lease=%s, due %s",
            book.id,
            book.title,
            shelf.shelf_number,
            holder_id,
            lease.id if lease else None,
            due_at,
        )
        return _result(
            c,
            OUTCOME_ISSUED,
            book_id=book.id,
            lease_id=lease.id if lease else None,
            issued_id=record.id,
            details={"holder_id": holder_id, "due_at": due_at.isoformat()},
        )

    def _reject_expired_pickup(self, session, shelf, book, lease, c, now):
        self._expire_lease(session, lease, now)
        alert = inventory.add_alert(
            session,
            shelf,
            EXPIRED_PICKUP_ATTEMPT,
            REMOVAL,
            c.delta,
            f'Attempted pickup of "{book.title}" after reservation {lease.id} '
            f"expired at {lease.deadline.isoformat()}",
            now,
            book=book,
        )
        notifications.enqueue(
            session,
            notifications.EXPIRED_PICKUP_ATTEMPT,
            _payload(
                session,
                book,
                shelf,
                now,
                lease=lease,
                alert_id=alert.id,
                magnitude=c.delta,
                deadline=lease.deadline,
            ),
            now,
        )
        logger.warning(
            "Pickup of book %s on shelf %s denied: lease %s expired at %s",
            book.id,
            shelf.shelf_number,
            lease.id,
            lease.deadline,
        )
        return _result(
            c,
            OUTCOME_EXPIRED_PICKUP,
            book_id=book.id,
            lease_id=lease.id,
            alert_id=alert.id,
        )

    def _pickup_without_lease(self, session, shelf, book, c, now):
        if self.config.ALLOW_WALK_IN:
            unlock = _pending_unlock(session, shelf.id, book.id, PICKUP, now)
            if unlock is not None:
                return self._issue(session, shelf, book, unlock.user_id, c, now, unlock=unlock)

        latest = leases.latest_lease_for_book(session, book.id)
        if latest is not None and latest.status == EXPIRED and not _issued_since(
            session, book.id, latest.closed_at
        ):
            # the sweeper expired the hold before this reading was committed
            alert_type, holder_id = EXPIRED_PICKUP_ATTEMPT, latest.holder_id
            message = (
                f'Attempted pickup of "{book.title}" after reservation {latest.id} '
                f"expired at {latest.deadline.isoformat()}"
            )
        else:
            alert_type, holder_id, latest = UNAUTHORIZED_PICKUP, None, None
            message = f'"{book.title}" removed from Shelf {shelf.shelf_number} without a reservation'

        alert = inventory.add_alert(
            session, shelf, alert_type, REMOVAL, c.delta, message, now, book=book
        )
        notifications.enqueue(
            session,
            alert_type,
            _payload(
                session,
                book,
                shelf,
                now,
                lease=latest,
                holder_id=holder_id,
                alert_id=alert.id,
                magnitude=c.delta,
                deadline=latest.deadline if latest else None,
            ),
            now,
        )
        logger.warning("%s: %s", alert_type, message)
        return _result(
            c,
            alert_type,
            book_id=book.id,
            lease_id=latest.id if latest else None,
            alert_id=alert.id,
        )

    def _addition(self, session, shelf, c, now):
        matches = inventory.matching_books(
            session,
            shelf.id,
            (ISSUED, RESERVED),
            c.delta,
            self.config.MASS_TOLERANCE_GRAMS,
            self.tie_break,
        )
        if not matches:
            return self._misplaced_or_unknown(session, shelf, c, ADDITION, now)

        book = matches[0]
        if book.status == ISSUED:
            record = inventory.open_issue_for_book(session, book.id, lock=True)
            if record is not None:
                return self._return(session, shelf, book, record, c, now)
            book = self._repair_status(session, book, now)

        lease = leases.active_lease_for_book(session, book.id)
        logger.info(
            "Book %s put back on shelf %s without a committed pickup (status %s)",
            book.id,
            shelf.shelf_number,
            book.status,
        )
        return _result(
            c,
            OUTCOME_RESTOCKED,
            book_id=book.id,
            lease_id=lease.id if lease else None,
        )

    def _return(self, session, shelf, book, record, c, now):
        inventory.close_issue(session, record, now)
        unlock = _pending_unlock(session, shelf.id, book.id, RETURN, now, user_id=record.holder_id)
        if unlock is not None:
            _consume_unlock(session, unlock.id, now)
        status = inventory.derive_status(
            leases.active_lease_for_book(session, book.id) is not None, False
        )
        inventory.set_book_status(session, book, ISSUED, status, now)
        notifications.enqueue(
            session,
            notifications.BOOK_RETURNED,
            _payload(
                session,
                book,
                shelf,
                now,
                holder_id=record.holder_id,
                issued_id=record.id,
                issued_at=record.issued_at,
                due_at=record.due_at,
                returned_at=now,
                overdue=now > record.due_at,
            ),
            now,
        )
        logger.info(
            "Returned book %s (%s) to shelf %s, issued record %s",
            book.id,
            book.title,
            shelf.shelf_number,
            record.id,
        )
        return _result(c, OUTCOME_RETURNED, book_id=book.id, issued_id=record.id)

    def _misplaced_or_unknown(self, session, shelf, c, direction, now):
        book, home = inventory.match_elsewhere(
            session,
            shelf.id,
            (ISSUED, RESERVED) if direction == ADDITION else (RESERVED, ISSUED),
            c.delta,
            self.config.MASS_TOLERANCE_GRAMS,
            self.tie_break,
        )
        if book is not None:
            verb = "placed on" if direction == ADDITION else "taken from"
            message = (
                f'Book "{book.title}" (belongs to Shelf {home.shelf_number}) was {verb} '
                f"Shelf {shelf.shelf_number}. Weight: {c.delta:g}g"
            )
            alert = inventory.add_alert(
                session,
                shelf,
                WRONG_SHELF,
                direction,
                c.delta,
                message,
                now,
                book=book,
                expected_shelf_number=home.shelf_number,
            )
            lease = leases.active_lease_for_book(session, book.id)
            record = inventory.open_issue_for_book(session, book.id)
            holder_id = record.holder_id if record else (lease.holder_id if lease else None)
            notifications.enqueue(
                session,
                notifications.WRONG_SHELF,
                _payload(
                    session,
                    book,
                    shelf,
                    now,
                    lease=lease,
                    holder_id=holder_id,
                    alert_id=alert.id,
                    magnitude=c.delta,
                    direction=direction,
                    expected_shelf_number=home.shelf_number,
                    actual_shelf_number=shelf.shelf_number,
                ),
                now,
            )
            logger.warning("wrong_shelf: %s", message)
            return _result(
                c,
                OUTCOME_WRONG_SHELF,
                book_id=book.id,
                alert_id=alert.id,
                details={
                    "expected_shelf_number": home.shelf_number,
                    "actual_shelf_number": shelf.shelf_number,
                },
            )

        message = (
            f"Unknown object ({c.delta:g}g) {direction} on Shelf {shelf.shelf_number}. "
            "Not matching any registered book."
        )
        alert = inventory.add_alert(session, shelf, UNKNOWN_OBJECT, direction, c.delta, message, now)
        notifications.enqueue(
            session,
            notifications.UNKNOWN_OBJECT,
            {
                "shelf_id": shelf.id,
                "shelf_number": shelf.shelf_number,
                "alert_id": alert.id,
                "magnitude": c.delta,
                "direction": direction,
                "occurred_at": now,
            },
            now,
        )
        logger.warning("unknown_object: %s", message)
        return _result(c, OUTCOME_UNKNOWN_OBJECT, alert_id=alert.id)

    def _repair_status(self, session, book, now):
        """Bring a drifted status cache back in line with leases and issued records."""
        status = inventory.derive_status(
            leases.active_lease_for_book(session, book.id) is not None,
            inventory.open_issue_for_book(session, book.id) is not None,
        )
        logger.warning("Book %s status %s drifted; derived %s", book.id, book.status, status)
        if status != book.status:
            inventory.set_book_status(session, book, book.status, status, now)
        return book

    # ----------------- leases -----------------

    def reserve(self, session, book_id, holder_id, ttl):
        if not isinstance(ttl, timedelta) or ttl <= timedelta(0):
            raise ValidationError("ttl must be a positive duration", book_id=book_id)
        now = self.clock()
        holder = _require_user(session, holder_id, book_id=book_id)
        book = inventory.get_book(session, book_id, lock=True)
        if book is None:
            raise NotFoundError("Book not found", book_id=book_id)
        return self._open_reservation(session, book, holder, now + ttl, now)

    def _open_reservation(self, session, book, holder, deadline, now, unlock_event_id=None):
        # on-demand sweep so a lapsed hold never blocks a new one
        for lease_id in leases.due_lease_ids(session, now, book_id=book.id):
            self.expire(session, lease_id, now)

        if inventory.open_issue_for_book(session, book.id) is not None:
            raise ConflictError("Book is currently issued", code="already_issued", book_id=book.id)
        active = leases.active_lease_for_book(session, book.id, lock=True)
        if active is not None:
            raise ConflictError(
                "Book already has an active reservation",
                code="already_reserved",
                book_id=book.id,
                lease_id=active.id,
            )
        if book.status != AVAILABLE:
            self._repair_status(session, book, now)

        lease = leases.open_lease(
            session, book.id, holder.id, deadline, now, unlock_event_id=unlock_event_id
        )
        inventory.set_book_status(session, book, AVAILABLE, RESERVED, now)
        shelf = book.shelf
        notifications.enqueue(
            session,
            notifications.RESERVATION_CREATED,
            _payload(session, book, shelf, now, lease=lease, deadline=deadline),
            now,
        )
        logger.info(
            "Reserved book %s for %s until %s (lease %s)", book.id, holder.id, deadline, lease.id
        )
        return lease

    def cancel(self, session, lease_id, actor_id):
        now = self.clock()
        lease = leases.get_lease(session, lease_id, lock=True)
        if lease is None:
            raise NotFoundError("Reservation not found", lease_id=lease_id)
        if actor_id != lease.holder_id:
            actor = session.get(User, actor_id)
            if actor is None or actor.role not in STAFF_ROLES:
                raise NotOwnerError(
                    "Only the holder or staff may cancel a reservation",
                    lease_id=lease.id,
                    book_id=lease.book_id,
                    actor_id=actor_id,
                )
        if lease.status != ACTIVE:
            raise ConflictError(
                f"Reservation is {lease.status}",
                code="not_active",
                lease_id=lease.id,
                book_id=lease.book_id,
            )
        leases.close_lease(session, lease, CANCELLED, now)
        book = self._release(session, lease.book_id, now)
        notifications.enqueue(
            session,
            notifications.RESERVATION_CANCELLED,
            _payload(session, book, book.shelf, now, lease=lease, actor_id=actor_id),
            now,
        )
        logger.info("Lease %s on book %s cancelled by %s", lease.id, lease.book_id, actor_id)
        return lease

    def expire(self, session, lease_id, now=None):
        """
        Expire one lease if it is still active and past its deadline. Returns
        the lease when this call expired it, ``None`` when there was nothing
        to do.
        """
        now = now or self.clock()
        lease = leases.get_lease(session, lease_id, lock=True)
        if lease is None or lease.status != ACTIVE or not lease.deadline < now:
            return None
        self._expire_lease(session, lease, now)
        return lease

    def _expire_lease(self, session, lease, now):
        leases.close_lease(session, lease, EXPIRED, now)
        book = self._release(session, lease.book_id, now)
        notifications.enqueue(
            session,
            notifications.RESERVATION_EXPIRED,
            _payload(session, book, book.shelf, now, lease=lease, deadline=lease.deadline),
            now,
        )
        logger.info("Lease %s on book %s expired (deadline %s)", lease.id, book.id, lease.deadline)

    def _release(self, session, book_id, now):
        """Return a reserved book to available unless a pickup already won."""
        book = inventory.get_book(session, book_id, lock=True)
        if book.status == RESERVED and inventory.open_issue_for_book(session, book_id) is None:
            inventory.set_book_status(session, book, RESERVED, AVAILABLE, now)
        return book

    # ----------------- access/unlock coordinator -----------------

    def register_unlock(self, session, user_id, shelf_id, action, valid_until, book_id=None):
        if action not in (PICKUP, RETURN):
            raise ValidationError("action must be pickup or return", shelf_id=shelf_id)
        now = self.clock()
        if valid_until is None or valid_until <= now:
            raise ValidationError(
                "valid_until must be in the future", shelf_id=shelf_id, book_id=book_id
            )
        user = _require_user(session, user_id, shelf_id=shelf_id)
        shelf = inventory.get_shelf(session, shelf_id)
        if shelf is None:
            raise NotFoundError("Shelf not found", shelf_id=shelf_id)
        book = None
        if book_id is not None:
            book = inventory.get_book(session, book_id, lock=True)
            if book is None:
                raise NotFoundError("Book not found", book_id=book_id)

        event = UnlockEvent(
            user_id=user.id,
            shelf_id=shelf.id,
            book_id=book_id,
            action=action,
            valid_until=valid_until,
            created_at=now,
        )
        session.add(event)
        session.flush()

        lease = None
        if action == PICKUP and book is not None:
            lease = leases.active_lease_for_book(session, book.id, lock=True)
            if lease is not None and lease.deadline >= now:
                if lease.holder_id != user.id:
                    raise ConflictError(
                        "Book is reserved by another user",
                        code="already_reserved",
                        book_id=book.id,
                        lease_id=lease.id,
                        shelf_id=shelf.id,
                    )
                # the hardware window can only shorten the hold
                if valid_until < lease.deadline:
                    leases.set_deadline(session, lease, valid_until)
            else:
                lease = self._open_reservation(
                    session, book, user, valid_until, now, unlock_event_id=event.id
                )
        logger.info(
            "Unlock %s: user %s at shelf %s for %s until %s",
            event.id,
            user.id,
            shelf.shelf_number,
            action,
            valid_until,
        )
        return event, lease


# ----------------- helpers -----------------

def _check_mass(mass, shelf_id):
    if isinstance(mass, bool) or not isinstance(mass, (int, float)):
        raise ValidationError("mass must be a number", shelf_id=shelf_id)
    if math.isnan(mass) or math.isinf(mass) or mass < 0:
        raise ValidationError("mass must be a finite, non-negative number", shelf_id=shelf_id)


def _require_user(session, user_id, **identifiers):
    user = session.get(User, user_id) if user_id else None
    if user is None:
        raise ValidationError("Unknown user", code="unknown_user", user_id=user_id, **identifiers)
    return user


def _pending_unlock(session, shelf_id, book_id, action, now, user_id=None):
    q = select(UnlockEvent).where(
        (UnlockEvent.shelf_id == shelf_id)
        & (UnlockEvent.action == action)
        & UnlockEvent.consumed_at.is_(None)
        & (UnlockEvent.valid_until >= now)
        & ((UnlockEvent.book_id == book_id) | UnlockEvent.book_id.is_(None))
    )
    if user_id is not None:
        q = q.where(UnlockEvent.user_id == user_id)
    q = q.order_by(UnlockEvent.created_at.desc(), UnlockEvent.id.desc()).limit(1)
    return session.execute(q).scalar_one_or_none()


def _consume_unlock(session, unlock_id, now, strict=True):
    result = session.execute(
        update(UnlockEvent)
        .where((UnlockEvent.id == unlock_id) & UnlockEvent.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if strict and result.rowcount != 1:
        raise StaleReadError("Unlock event already consumed", unlock_event_id=unlock_id)


def _issued_since(session, book_id, since):
    return any(
        r.issued_at >= since for r in inventory.issues_for_book(session, book_id)
    )


def _payload(session, book, shelf, now, lease=None, holder_id=None, **extra):
    """Shared metadata so inbox readers never need a second lookup."""
    holder_id = holder_id or (lease.holder_id if lease else None)
    holder = session.get(User, holder_id) if holder_id else None
    payload = {
        "book_id": book.id,
        "book_title": book.title,
        "book_author": book.author,
        "shelf_id": shelf.id if shelf else None,
        "shelf_number": shelf.shelf_number if shelf else None,
        "lease_id": lease.id if lease else None,
        "holder_id": holder_id,
        "holder_name": holder.name if holder else None,
        "occurred_at": now,
    }
    payload.update(extra)
    return payload


def _result(c, outcome, **kwargs):
    return CommitResult(
        shelf_id=c.shelf_id,
        kind=c.kind,
        delta=c.delta,
        previous_mass=c.previous_mass,
        new_mass=c.new_mass,
        outcome=outcome,
        **kwargs,
    )
