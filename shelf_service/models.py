from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Book status
AVAILABLE = "available"
RESERVED = "reserved"
ISSUED = "issued"

# Lease status
ACTIVE = "active"
COMPLETED = "completed"
EXPIRED = "expired"
CANCELLED = "cancelled"

# Roles, as supplied by the identity provider
READER = "reader"
STAFF = "staff"
ADMINISTRATOR = "administrator"
STAFF_ROLES = (STAFF, ADMINISTRATOR)

# Alert types
WRONG_SHELF = "wrong_shelf"
UNKNOWN_OBJECT = "unknown_object"
EXPIRED_PICKUP_ATTEMPT = "expired_pickup_attempt"
UNAUTHORIZED_PICKUP = "unauthorized_pickup"

REMOVAL = "removal"
ADDITION = "addition"

PICKUP = "pickup"
RETURN = "return"


class User(Base):
    """
    Mirror of the identity provider's users. Never edited by the engine.
    """
    __tablename__ = "user"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    role = Column(
        Enum(READER, STAFF, ADMINISTRATOR, name="user_role"),
        nullable=False,
        default=READER,
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Shelf(Base):
    __tablename__ = "shelf"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shelf_number = Column(Integer, unique=True, nullable=False)
    current_mass = Column(Float, nullable=False, default=0.0)
    capacity = Column(Float, nullable=False, default=5000.0)
    is_active = Column(Boolean, nullable=False, default=True)
    last_update = Column(DateTime)


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    isbn = Column(String(20))
    mass = Column(Float, nullable=False)
    status = Column(
        Enum(AVAILABLE, RESERVED, ISSUED, name="book_status"),
        nullable=False,
        default=AVAILABLE,
    )
    shelf_id = Column(Integer, ForeignKey("shelf.id"))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    shelf = relationship("Shelf")


class Lease(Base):
    """
    A time-boxed hold on one book for one user.
    """
    __tablename__ = "lease"
    __table_args__ = (
        # at most one active lease per book
        Index(
            "uq_lease_active_book",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    holder_id = Column(String(100), ForeignKey("user.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    deadline = Column(DateTime, nullable=False)
    status = Column(
        Enum(ACTIVE, COMPLETED, EXPIRED, CANCELLED, name="lease_status"),
        nullable=False,
        default=ACTIVE,
    )
    closed_at = Column(DateTime)
    unlock_event_id = Column(Integer, ForeignKey("unlock_event.id"))

    book = relationship("Book")


class IssuedRecord(Base):
    __tablename__ = "issued_record"
    __table_args__ = (
        Index(
            "uq_issued_open_book",
            "book_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    holder_id = Column(String(100), ForeignKey("user.id"), nullable=False)
    lease_id = Column(Integer, ForeignKey("lease.id"))
    issued_at = Column(DateTime, nullable=False, default=utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)

    book = relationship("Book")


class ShelfAlert(Base):
    """
    Append-only anomaly log. Only the resolution columns change afterwards.
    """
    __tablename__ = "shelf_alert"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shelf_id = Column(Integer, ForeignKey("shelf.id"), nullable=False)
    shelf_number = Column(Integer, nullable=False)
    alert_type = Column(
        Enum(
            WRONG_SHELF,
            UNKNOWN_OBJECT,
            EXPIRED_PICKUP_ATTEMPT,
            UNAUTHORIZED_PICKUP,
            name="alert_type",
        ),
        nullable=False,
    )
    direction = Column(Enum(REMOVAL, ADDITION, name="alert_direction"), nullable=False)
    magnitude = Column(Float, nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"))
    expected_shelf_number = Column(Integer)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(100))


class Notification(Base):
    __tablename__ = "notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(String(100), ForeignKey("user.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    payload = Column("metadata", Text)  # JSON blob
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class UnlockEvent(Base):
    """
    "User U is expected at shelf S (for book B) until T", from the door
    unlock coordinator.
    """
    __tablename__ = "unlock_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), ForeignKey("user.id"), nullable=False)
    shelf_id = Column(Integer, ForeignKey("shelf.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"))
    action = Column(Enum(PICKUP, RETURN, name="unlock_action"), nullable=False)
    valid_until = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    consumed_at = Column(DateTime)


class WeightReading(Base):
    __tablename__ = "weight_reading"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shelf_id = Column(Integer, ForeignKey("shelf.id"), nullable=False, index=True)
    previous_mass = Column(Float, nullable=False)
    new_mass = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    kind = Column(String(30), nullable=False)
    outcome = Column(String(50), nullable=False)
    observed_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)


class OutboxEvent(Base):
    """
    Committed facts waiting to be fanned out into notification inboxes.
    """
    __tablename__ = "outbox_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)  # JSON blob
    created_at = Column(DateTime, nullable=False, default=utcnow)
