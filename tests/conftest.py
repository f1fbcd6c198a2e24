from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from shelf_service.config import Config
from shelf_service.engine import ReservationEngine
from shelf_service.models import Book, IssuedRecord, Lease, OutboxEvent, ShelfAlert

T0 = datetime(2025, 11, 18, 10, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, when):
        self.now = when
        return self.now


def make_config(db_path, **overrides):
    attrs = {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SQLALCHEMY_ECHO": False,
        "SERVICE_API_KEY": "test-key",
        "NOISE_FLOOR_GRAMS": 10.0,
        "MASS_TOLERANCE_GRAMS": 20.0,
        "MATCH_TIE_BREAK": "most_recent",
        "ALLOW_WALK_IN": False,
        "LOAN_PERIOD_DAYS": 14,
        "RESERVATION_TTL_MINUTES": 5,
        "MAX_COMMIT_RETRIES": 8,
        "PUSH_WEBHOOK_URL": "",
        "DISPATCH_AFTER_COMMIT": True,
    }
    attrs.update(overrides)
    return type("TestConfig", (Config,), attrs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_overrides():
    return {}


@pytest.fixture
def test_config(tmp_path, config_overrides):
    return make_config(tmp_path / "shelf.db", **config_overrides)


@pytest.fixture
def engine(test_config, clock):
    eng = ReservationEngine(test_config, clock=clock)
    yield eng
    eng.dispose()


@pytest.fixture
def library(engine):
    """
    Shelf 1 holds one 300g book (so it weighs 300g), shelf 2 is empty.
    Two readers, one librarian, one administrator.
    """
    engine.upsert_user("alice", "Alice Reader", "alice@example.com", "reader")
    engine.upsert_user("bob", "Bob Reader", "bob@example.com", "reader")
    engine.upsert_user("lena", "Lena Librarian", "lena@example.com", "staff")
    engine.upsert_user("ava", "Ava Admin", "ava@example.com", "administrator")
    shelf1 = engine.upsert_shelf(1, current_mass=300.0)
    shelf2 = engine.upsert_shelf(2)
    book = engine.upsert_book(
        "Clean Code", 300.0, shelf_id=shelf1.id, author="Robert C. Martin"
    )
    return SimpleNamespace(engine=engine, shelf1=shelf1, shelf2=shelf2, book=book)


# ----------------- inspection helpers -----------------

def fetch_all(engine, model, *criteria):
    session = engine.SessionLocal()
    try:
        return list(session.execute(select(model).where(*criteria)).scalars())
    finally:
        session.close()


def book_row(engine, book_id):
    return fetch_all(engine, Book, Book.id == book_id)[0]


def lease_row(engine, lease_id):
    return fetch_all(engine, Lease, Lease.id == lease_id)[0]


def issued_rows(engine, book_id):
    return fetch_all(engine, IssuedRecord, IssuedRecord.book_id == book_id)


def alerts(engine, alert_type=None):
    criteria = [ShelfAlert.alert_type == alert_type] if alert_type else []
    return fetch_all(engine, ShelfAlert, *criteria)


def outbox(engine):
    return fetch_all(engine, OutboxEvent)


def assert_invariants(engine):
    """One active lease and one open issue per book; status derivable."""
    for book in fetch_all(engine, Book):
        active = fetch_all(engine, Lease, Lease.book_id == book.id, Lease.status == "active")
        open_issues = [r for r in issued_rows(engine, book.id) if r.returned_at is None]
        assert len(active) <= 1, f"book {book.id} has {len(active)} active leases"
        assert len(open_issues) <= 1, f"book {book.id} has {len(open_issues)} open issues"
        if open_issues:
            expected = "issued"
        elif active:
            expected = "reserved"
        else:
            expected = "available"
        assert book.status == expected, f"book {book.id} is {book.status}, expected {expected}"
