import threading
import time
from datetime import timedelta

import pytest

from shelf_service.db import atomic
from shelf_service.errors import StaleReadError
from shelf_service.models import Book, IssuedRecord, Notification
from shelf_service.sweeper import ExpirySweeper

from conftest import alerts, assert_invariants, book_row, fetch_all, issued_rows, lease_row


def test_sweep_expires_only_due_leases(library, clock):
    engine = library.engine
    other = engine.upsert_book("Refactoring", 450.0, shelf_id=library.shelf2.id)
    short = engine.create_reservation(library.book.id, "alice", timedelta(minutes=1))
    long = engine.create_reservation(other.id, "bob", timedelta(minutes=10))

    clock.advance(minutes=2)
    expired = engine.sweep_expired()

    assert [x.id for x in expired] == [short.id]
    assert lease_row(engine, short.id).closed_at == clock.now
    assert lease_row(engine, long.id).status == "active"
    assert book_row(engine, library.book.id).status == "available"
    assert book_row(engine, other.id).status == "reserved"
    assert_invariants(engine)


def test_sweep_is_idempotent(library, clock):
    engine = library.engine
    engine.create_reservation(library.book.id, "alice")
    clock.advance(minutes=6)

    assert len(engine.sweep_expired()) == 1
    notified = len(fetch_all(engine, Notification))
    assert engine.sweep_expired() == []
    assert len(fetch_all(engine, Notification)) == notified
    assert book_row(engine, library.book.id).status == "available"


def test_expire_leaves_issued_book_alone(library, clock):
    engine = library.engine
    lease = engine.create_reservation(library.book.id, "alice")

    def issue_behind_the_lease(session):
        session.add(
            IssuedRecord(
                book_id=library.book.id,
                holder_id="alice",
                lease_id=lease.id,
                issued_at=clock.now,
                due_at=clock.now + timedelta(days=14),
            )
        )
        book = session.get(Book, library.book.id)
        book.status = "issued"

    atomic(engine.SessionLocal, issue_behind_the_lease)
    clock.advance(minutes=6)
    engine.sweep_expired()

    assert lease_row(engine, lease.id).status == "expired"
    assert book_row(engine, library.book.id).status == "issued"


def test_pickup_then_sweep(library, clock):
    engine = library.engine
    lease = engine.create_reservation(library.book.id, "alice")
    clock.set(lease.deadline)

    assert engine.ingest_weight_reading(library.shelf1.id, 0.0).outcome == "issued"
    clock.advance(seconds=1)
    assert engine.sweep_expired() == []
    assert lease_row(engine, lease.id).status == "completed"
    assert book_row(engine, library.book.id).status == "issued"


def test_sweep_then_late_pickup(library, clock):
    engine = library.engine
    lease = engine.create_reservation(library.book.id, "alice")
    clock.set(lease.deadline + timedelta(microseconds=1))

    assert len(engine.sweep_expired()) == 1
    assert engine.ingest_weight_reading(library.shelf1.id, 0.0).outcome == "expired_pickup_attempt"
    assert issued_rows(engine, library.book.id) == []
    assert_invariants(engine)


def _race(engine, shelf_id):
    barrier = threading.Barrier(2)
    errors = []

    def pickup():
        try:
            barrier.wait()
            engine.ingest_weight_reading(shelf_id, 0.0)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    def sweep():
        try:
            barrier.wait()
            engine.sweep_expired()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=pickup), threading.Thread(target=sweep)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)
    assert errors == []


@pytest.mark.parametrize("late", [False, True])
def test_concurrent_pickup_and_sweep_commit_exactly_one_outcome(library, clock, late):
    engine = library.engine
    lease = engine.create_reservation(library.book.id, "alice")
    clock.set(lease.deadline + timedelta(seconds=1) if late else lease.deadline)

    _race(engine, library.shelf1.id)

    stored = lease_row(engine, lease.id)
    issued = issued_rows(engine, library.book.id)
    if late:
        assert stored.status == "expired"
        assert issued == []
        assert len(alerts(engine, "expired_pickup_attempt")) == 1
        expired_notes = fetch_all(
            engine, Notification, Notification.type == "reservation_expired"
        )
        # one event fanned out to alice, ava and lena
        assert len(expired_notes) == 3
    else:
        assert stored.status == "completed"
        assert len(issued) == 1
    assert_invariants(engine)


def test_sweeper_thread_runs_and_stops(library, clock):
    engine = library.engine
    lease = engine.create_reservation(library.book.id, "alice")
    clock.advance(minutes=10)

    sweeper = ExpirySweeper(engine, interval=0.05)
    sweeper.start()
    deadline = time.monotonic() + 5
    while lease_row(engine, lease.id).status == "active" and time.monotonic() < deadline:
        time.sleep(0.02)
    sweeper.stop(timeout=5)

    assert not sweeper.is_alive()
    assert lease_row(engine, lease.id).status == "expired"


def test_run_once_survives_database_errors(library, caplog):
    class BrokenEngine:
        def sweep_expired(self):
            raise StaleReadError("locked")

        def dispatch_notifications(self):
            raise AssertionError("not reached")

    ExpirySweeper(BrokenEngine()).run_once()
    assert "Sweep cycle failed" in caplog.text
