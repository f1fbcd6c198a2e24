"""
The reservation & transaction engine as one object: wires the session
factory, the committer, the sweeper and the fan-out, and exposes the
operations other services call.
"""

import logging
import threading
from collections import namedtuple
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from . import inventory, leases, notifications
from .committer import Committer
from .config import Config
from .db import atomic, make_engine, make_session_factory
from .errors import NotFoundError, NotOwnerError, StaleReadError, ValidationError
from .models import READER, STAFF_ROLES, Book, Shelf, ShelfAlert, User, utcnow
from .sweeper import sweep_expired

logger = logging.getLogger(__name__)

NotificationPage = namedtuple("NotificationPage", ["items", "next_cursor"])


def to_naive_utc(value):
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError("timestamp must be a datetime")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ReservationEngine:
    def __init__(self, config=Config, clock=utcnow, session_factory=None):
        self.config = config
        self.clock = clock
        if session_factory is None:
            self.db_engine = make_engine(
                config.SQLALCHEMY_DATABASE_URI, echo=config.SQLALCHEMY_ECHO
            )
            session_factory = make_session_factory(self.db_engine)
        else:
            self.db_engine = None
        self.SessionLocal = session_factory
        self.committer = Committer(config, clock)
        self.dispatch_after_commit = getattr(config, "DISPATCH_AFTER_COMMIT", True)
        self._push_threads = []
        self._push_lock = threading.Lock()

    def _atomic(self, work, label):
        return atomic(
            self.SessionLocal, work, retries=self.config.MAX_COMMIT_RETRIES, label=label
        )

    def _read(self, work):
        session = self.SessionLocal()
        try:
            return work(session)
        finally:
            session.close()

    def _after_commit(self):
        if not self.dispatch_after_commit:
            return
        try:
            self.dispatch_notifications(background=True)
        except (StaleReadError, SQLAlchemyError) as e:
            # the outbox still holds the events; the sweeper loop retries
            logger.warning("Deferred notification dispatch: %s", e)

    # ----------------- identity & catalog maintenance -----------------

    def upsert_user(self, user_id, name, email=None, role=READER):
        if not user_id or not name:
            raise ValidationError("user id and name are required", user_id=user_id)

        def work(session):
            user = session.get(User, user_id)
            if user is None:
                user = User(id=user_id, name=name, email=email, role=role, created_at=self.clock())
                session.add(user)
                logger.info("Created user %s (%s)", user_id, role)
            else:
                user.name = name
                user.email = email
                user.role = role
            session.flush()
            return user

        return self._atomic(work, f"upsert user {user_id}")

    def upsert_shelf(self, shelf_number, capacity=None, is_active=None, current_mass=None):
        def work(session):
            q = select(Shelf).where(Shelf.shelf_number == shelf_number).with_for_update()
            shelf = session.execute(q).scalar_one_or_none()
            if shelf is None:
                shelf = Shelf(shelf_number=shelf_number, current_mass=0.0, is_active=True)
                session.add(shelf)
                logger.info("Registered shelf %s", shelf_number)
            if capacity is not None:
                shelf.capacity = capacity
            if is_active is not None:
                shelf.is_active = is_active
            if current_mass is not None:
                # calibration baseline, not a reading
                shelf.current_mass = current_mass
            session.flush()
            return shelf

        return self._atomic(work, f"upsert shelf {shelf_number}")

    def upsert_book(self, title, mass, shelf_id=None, author=None, isbn=None, book_id=None):
        if mass is None or mass <= 0:
            raise ValidationError("book mass must be positive", book_id=book_id)

        def work(session):
            if shelf_id is not None and session.get(Shelf, shelf_id) is None:
                raise NotFoundError("Shelf not found", shelf_id=shelf_id)
            now = self.clock()
            if book_id is None:
                book = Book(created_at=now)
                session.add(book)
            else:
                book = inventory.get_book(session, book_id, lock=True)
                if book is None:
                    raise NotFoundError("Book not found", book_id=book_id)
            book.title = title
            book.author = author
            book.isbn = isbn
            book.mass = mass
            book.shelf_id = shelf_id
            book.updated_at = now
            session.flush()
            return book

        return self._atomic(work, "upsert book")

    # ----------------- reservations -----------------

    def create_reservation(self, book_id, holder_id, ttl=None):
        if ttl is None:
            ttl = timedelta(minutes=self.config.RESERVATION_TTL_MINUTES)
        elif isinstance(ttl, (int, float)) and not isinstance(ttl, bool):
            ttl = timedelta(seconds=ttl)
        lease = self._atomic(
            lambda s: self.committer.reserve(s, book_id, holder_id, ttl),
            f"reserve book {book_id}",
        )
        self._after_commit()
        return lease

    def cancel_reservation(self, lease_id, actor_id):
        lease = self._atomic(
            lambda s: self.committer.cancel(s, lease_id, actor_id),
            f"cancel lease {lease_id}",
        )
        self._after_commit()
        return lease

    def register_unlock(self, user_id, shelf_id, action, valid_until, book_id=None):
        valid_until = to_naive_utc(valid_until)
        result = self._atomic(
            lambda s: self.committer.register_unlock(
                s, user_id, shelf_id, action, valid_until, book_id=book_id
            ),
            f"unlock shelf {shelf_id}",
        )
        self._after_commit()
        return result

    def sweep_expired(self):
        expired = sweep_expired(
            self.SessionLocal, self.committer, retries=self.config.MAX_COMMIT_RETRIES
        )
        if expired:
            self._after_commit()
        return expired

    # ----------------- sensors -----------------

    def ingest_weight_reading(self, shelf_id, mass, observed_at=None):
        observed_at = to_naive_utc(observed_at) or self.clock()
        result = self._atomic(
            lambda s: self.committer.ingest(s, shelf_id, mass, observed_at),
            f"reading on shelf {shelf_id}",
        )
        self._after_commit()
        return result

    # ----------------- notifications -----------------

    def dispatch_notifications(self, background=False):
        """
        Fan pending outbox events out into inboxes, then push them. With
        ``background`` the push runs on a daemon thread so the caller never
        waits on the webhook.
        """
        created = self._atomic(notifications.dispatch_pending, "notification fan-out")
        if created and self.config.PUSH_WEBHOOK_URL:
            if background:
                self._push_in_background(created)
            else:
                notifications.push(
                    created, self.config.PUSH_WEBHOOK_URL, timeout=self.config.PUSH_TIMEOUT_SECONDS
                )
        return created

    def _push_in_background(self, created):
        thread = threading.Thread(
            target=notifications.push,
            args=(created, self.config.PUSH_WEBHOOK_URL),
            kwargs={"timeout": self.config.PUSH_TIMEOUT_SECONDS},
            name="notification-push",
            daemon=True,
        )
        with self._push_lock:
            self._push_threads = [t for t in self._push_threads if t.is_alive()]
            self._push_threads.append(thread)
        thread.start()

    def wait_for_push(self, timeout=None):
        with self._push_lock:
            pending = list(self._push_threads)
        for thread in pending:
            thread.join(timeout)
        return not any(t.is_alive() for t in pending)

    def list_notifications(self, user_id, since=None, cursor=None, limit=50):
        if limit < 1 or limit > 500:
            raise ValidationError("limit must be between 1 and 500", user_id=user_id)
        since = to_naive_utc(since)
        items, next_cursor = self._read(
            lambda s: notifications.list_for_user(s, user_id, since, cursor, limit)
        )
        return NotificationPage(items, next_cursor)

    def mark_read(self, notification_id, user_id):
        return self._atomic(
            lambda s: notifications.mark_read(s, notification_id, user_id),
            f"mark notification {notification_id}",
        )

    def mark_all_read(self, user_id):
        return self._atomic(
            lambda s: notifications.mark_all_read(s, user_id), f"mark all read {user_id}"
        )

    def unread_count(self, user_id):
        return self._read(lambda s: notifications.unread_count(s, user_id))

    # ----------------- alerts & diagnostics -----------------

    def list_alerts(self, unresolved_only=False, shelf_id=None, limit=100):
        return self._read(
            lambda s: inventory.list_alerts(s, unresolved_only, shelf_id, limit)
        )

    def resolve_alert(self, alert_id, actor_id):
        def work(session):
            actor = session.get(User, actor_id)
            if actor is None or actor.role not in STAFF_ROLES:
                raise NotOwnerError(
                    "Only staff may resolve alerts", alert_id=alert_id, actor_id=actor_id
                )
            alert = session.get(ShelfAlert, alert_id)
            if alert is None:
                raise NotFoundError("Alert not found", alert_id=alert_id)
            if alert.resolved_at is None:
                alert.resolved_at = self.clock()
                alert.resolved_by = actor_id
            return alert

        return self._atomic(work, f"resolve alert {alert_id}")

    def book_state(self, book_id):
        def work(session):
            book = session.get(Book, book_id)
            if book is None:
                raise NotFoundError("Book not found", book_id=book_id)
            lease = leases.active_lease_for_book(session, book_id)
            record = inventory.open_issue_for_book(session, book_id)
            return {
                "book_id": book.id,
                "title": book.title,
                "status": book.status,
                "derived_status": inventory.derive_status(lease is not None, record is not None),
                "shelf_id": book.shelf_id,
                "active_lease_id": lease.id if lease else None,
                "open_issued_id": record.id if record else None,
            }

        return self._read(work)

    def dispose(self):
        self.wait_for_push(timeout=self.config.PUSH_TIMEOUT_SECONDS)
        if self.db_engine is not None:
            self.db_engine.dispose()
