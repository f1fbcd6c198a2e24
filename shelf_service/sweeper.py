"""
Lease expiry sweeper.

Expires every active lease whose deadline has passed. Each lease is expired in
its own atomic unit that re-checks status and deadline, so a pickup committed
a moment earlier simply turns the sweep for that lease into a no-op. Running
the sweep twice in a row changes nothing the second time.
"""

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from . import leases
from .db import atomic
from .errors import StaleReadError

logger = logging.getLogger(__name__)


def sweep_expired(session_factory, committer, retries=5, now=None):
    now = now or committer.clock()
    session = session_factory()
    try:
        due = leases.due_lease_ids(session, now)
    finally:
        session.close()

    expired = []
    for lease_id in due:
        lease = atomic(
            session_factory,
            lambda s, lid=lease_id: committer.expire(s, lid, now),
            retries=retries,
            label=f"expire lease {lease_id}",
        )
        if lease is not None:
            expired.append(lease)
    if expired:
        logger.info("Sweep at %s expired %d lease(s)", now, len(expired))
    return expired


class ExpirySweeper(threading.Thread):
    """
    Background loop: sweep, then flush pending notifications, then wait at
    most ``interval`` seconds (or until ``stop``).
    """

    def __init__(self, engine, interval=60.0):
        super().__init__(name="lease-expiry-sweeper", daemon=True)
        self.engine = engine
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        logger.info("Lease expiry sweeper started (every %ss)", self.interval)
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval)
        logger.info("Lease expiry sweeper stopped")

    def run_once(self):
        try:
            self.engine.sweep_expired()
            self.engine.dispatch_notifications()
        except (StaleReadError, SQLAlchemyError):
            # next tick retries; the outbox keeps undelivered events
            logger.exception("Sweep cycle failed")

    def stop(self, timeout=None):
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
