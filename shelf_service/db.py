import logging
import time

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from .errors import StaleReadError
from .models import Base

logger = logging.getLogger(__name__)


def make_engine(url, echo=False):
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
    else:
        engine = create_engine(url, echo=echo, future=True, pool_pre_ping=True)
    return engine


def _serialize_sqlite_writers(engine):
    """
    pysqlite defers BEGIN until the first write, so a read-then-write unit is
    not atomic. Take the write lock up front instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, record):
        dbapi_conn.isolation_level = None
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine):
    # Create tables if not present
    Base.metadata.create_all(engine)
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )


def atomic(session_factory, work, retries=5, backoff=0.02, label="transition"):
    """
    Run ``work(session)`` as one transaction. The unit is re-run from scratch
    with fresh state when a precondition went stale, a uniqueness index fired,
    or the database reported lock contention.
    """
    attempt = 0
    while True:
        attempt += 1
        session = session_factory()
        try:
            with session.begin():
                return work(session)
        except (StaleReadError, IntegrityError, OperationalError) as exc:
            if attempt > retries:
                logger.warning("%s gave up after %d attempts: %s", label, attempt, exc)
                if isinstance(exc, StaleReadError):
                    raise
                raise StaleReadError(
                    f"{label} could not be committed: {exc.__class__.__name__}"
                ) from exc
            logger.info("%s retry %d after %s", label, attempt, exc.__class__.__name__)
            time.sleep(backoff * attempt)
        finally:
            session.close()
