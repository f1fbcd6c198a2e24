"""
Notification fan-out.

State transitions never write notifications directly. They append an
``OutboxEvent`` in their own transaction; ``dispatch_pending`` later turns
each event into one inbox row for the holder and one for every staff user,
all carrying the same metadata, and deletes the event in the same commit.
Real-time push is attempted afterwards and may fail without losing anything:
the inbox is the source of truth.
"""

import json
import logging
from datetime import datetime

import requests
from sqlalchemy import func, select, update

from .errors import NotFoundError, NotOwnerError
from .models import STAFF_ROLES, Notification, OutboxEvent, User, utcnow

logger = logging.getLogger(__name__)

RESERVATION_CREATED = "reservation_created"
RESERVATION_CANCELLED = "reservation_cancelled"
RESERVATION_EXPIRED = "reservation_expired"
BOOK_ISSUED = "book_issued"
BOOK_RETURNED = "book_returned"
WRONG_SHELF = "wrong_shelf"
UNKNOWN_OBJECT = "unknown_object"
EXPIRED_PICKUP_ATTEMPT = "expired_pickup_attempt"
UNAUTHORIZED_PICKUP = "unauthorized_pickup"

HOLDER = "holder"
STAFF = "staff"


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def enqueue(session, event_type, payload, now=None):
    """Queue a committed fact for fan-out. Call inside the transition's unit."""
    evt = OutboxEvent(
        event_type=event_type,
        payload=json.dumps(payload, default=_json_default),
        created_at=now or utcnow(),
    )
    session.add(evt)
    return evt


# ----------------- message templates -----------------

def _book(p):
    return f'"{p.get("book_title") or "Book #%s" % p.get("book_id")}"'


def _who(p):
    return p.get("holder_name") or p.get("holder_id") or "A reader"


def _render(event_type, p, audience):
    shelf = p.get("shelf_number")
    if event_type == RESERVATION_CREATED:
        if audience == HOLDER:
            return (
                "Book Reserved",
                f"You have reserved {_book(p)} on Shelf {shelf}. "
                f"Please collect it before {p.get('deadline')}.",
            )
        return (
            "New Reservation",
            f"{_who(p)} reserved {_book(p)} on Shelf {shelf}. Expires at {p.get('deadline')}.",
        )
    if event_type == RESERVATION_CANCELLED:
        if audience == HOLDER:
            return "Reservation Cancelled", f"Your reservation for {_book(p)} was cancelled."
        return (
            "Reservation Cancelled",
            f"{_who(p)}'s reservation for {_book(p)} was cancelled by {p.get('actor_id')}.",
        )
    if event_type == RESERVATION_EXPIRED:
        if audience == HOLDER:
            return (
                "Reservation Expired",
                f"Your reservation for {_book(p)} has expired. "
                "Please reserve again if still needed.",
            )
        return (
            "Reservation Expired",
            f"{_who(p)}'s reservation for {_book(p)} expired at {p.get('deadline')}.",
        )
    if event_type == BOOK_ISSUED:
        if audience == HOLDER:
            return (
                "Book Issued Successfully",
                f"You have picked up {_book(p)} from Shelf {shelf}. Due date: {p.get('due_at')}.",
            )
        return (
            "Book Picked Up",
            f"{_who(p)} picked up {_book(p)} from Shelf {shelf}. Due: {p.get('due_at')}.",
        )
    if event_type == BOOK_RETURNED:
        if audience == HOLDER:
            return "Book Returned", f"{_book(p)} was returned to Shelf {shelf}. Thank you."
        return "Book Returned", f"{_who(p)} returned {_book(p)} to Shelf {shelf}."
    if event_type == WRONG_SHELF:
        expected = p.get("expected_shelf_number")
        if audience == HOLDER:
            return (
                "Wrong Shelf",
                f"{_book(p)} was detected on Shelf {shelf}, but it belongs on Shelf "
                f"{expected}. Please put it back in the correct location.",
            )
        return (
            "Wrong Shelf Alert",
            f"{_book(p)} (belongs to Shelf {expected}) detected on Shelf {shelf}. "
            f"Weight: {p.get('magnitude')}g.",
        )
    if event_type == UNKNOWN_OBJECT:
        return (
            "Unknown Object Detected",
            f"Unknown object ({p.get('magnitude')}g, {p.get('direction')}) on Shelf "
            f"{shelf}. Not matching any registered book.",
        )
    if event_type == EXPIRED_PICKUP_ATTEMPT:
        if audience == HOLDER:
            return (
                "Pickup Denied",
                f"Your reservation for {_book(p)} expired at {p.get('deadline')}; "
                "the book was not issued.",
            )
        return (
            "Expired Pickup Attempt",
            f"Pickup of {_book(p)} from Shelf {shelf} after its reservation expired "
            f"at {p.get('deadline')}.",
        )
    if event_type == UNAUTHORIZED_PICKUP:
        return (
            "Unreserved Pickup",
            f"{_book(p)} was removed from Shelf {shelf} without a reservation.",
        )
    return event_type.replace("_", " ").title(), json.dumps(p, default=_json_default)


# ----------------- recipients -----------------

class RecipientDirectory:
    """
    Resolves who hears about an event: the holder, if there is one, and
    everyone with a staff role. The staff set is read once per dispatch
    batch instead of once per event.
    """

    def __init__(self, session):
        self.session = session
        self._staff = None

    def staff_ids(self):
        if self._staff is None:
            q = select(User.id).where(User.role.in_(STAFF_ROLES)).order_by(User.id)
            self._staff = list(self.session.execute(q).scalars())
        return self._staff

    def resolve(self, payload):
        recipients = []
        holder = payload.get("holder_id")
        if holder:
            recipients.append((holder, HOLDER))
        for staff_id in self.staff_ids():
            if staff_id != holder:
                recipients.append((staff_id, STAFF))
        return recipients


# ----------------- dispatch -----------------

def dispatch_pending(session, limit=200):
    """
    Fan out up to ``limit`` outbox events. Returns the created notifications;
    the caller commits and then may ``push`` them.
    """
    q = select(OutboxEvent).order_by(OutboxEvent.id).limit(limit)
    events = session.execute(q.with_for_update(skip_locked=True)).scalars().all()
    if not events:
        return []

    directory = RecipientDirectory(session)
    created = []
    for evt in events:
        payload = json.loads(evt.payload)
        for recipient_id, audience in directory.resolve(payload):
            title, body = _render(evt.event_type, payload, audience)
            n = Notification(
                recipient_id=recipient_id,
                type=evt.event_type,
                title=title,
                body=body,
                payload=evt.payload,
                is_read=False,
                created_at=evt.created_at,
            )
            session.add(n)
            created.append(n)
        session.delete(evt)
    session.flush()
    logger.info("Fanned out %d events into %d notifications", len(events), len(created))
    return created


def push(notifications, url, timeout=3):
    """Best-effort real-time delivery. Failures are logged, never raised."""
    if not url:
        return 0
    delivered = 0
    for n in notifications:
        try:
            resp = requests.post(url, json=to_dict(n), timeout=timeout)
            if resp.status_code >= 300:
                raise RuntimeError(f"push endpoint returned {resp.status_code}")
            delivered += 1
        except (requests.RequestException, RuntimeError) as e:
            logger.warning(
                "Push of notification %s to %s failed: %s", n.id, n.recipient_id, e
            )
    return delivered


# ----------------- inbox -----------------

def to_dict(n):
    return {
        "id": n.id,
        "recipient_id": n.recipient_id,
        "type": n.type,
        "title": n.title,
        "body": n.body,
        "metadata": json.loads(n.payload) if n.payload else {},
        "is_read": n.is_read,
        "created_at": n.created_at.isoformat(),
    }


def list_for_user(session, user_id, since=None, cursor=None, limit=50):
    """
    Newest first. ``cursor`` is the id of the last notification of the
    previous page; pass the returned cursor back to continue.
    """
    q = select(Notification).where(Notification.recipient_id == user_id)
    if since is not None:
        q = q.where(Notification.created_at >= since)
    if cursor is not None:
        q = q.where(Notification.id < cursor)
    q = q.order_by(Notification.id.desc()).limit(limit + 1)
    rows = session.execute(q).scalars().all()
    page = rows[:limit]
    next_cursor = page[-1].id if len(rows) > limit else None
    return page, next_cursor


def mark_read(session, notification_id, user_id):
    n = session.get(Notification, notification_id)
    if n is None:
        raise NotFoundError("Notification not found", notification_id=notification_id)
    if n.recipient_id != user_id:
        raise NotOwnerError(
            "Notification belongs to another user",
            notification_id=notification_id,
            user_id=user_id,
        )
    n.is_read = True
    return n


def mark_all_read(session, user_id):
    result = session.execute(
        update(Notification)
        .where((Notification.recipient_id == user_id) & Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def unread_count(session, user_id):
    q = select(func.count(Notification.id)).where(
        (Notification.recipient_id == user_id) & Notification.is_read.is_(False)
    )
    return session.execute(q).scalar_one()
