import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import PersistenceFailure

logger = logging.getLogger(__name__)


def _sqlite_on_connect(dbapi_conn, _record) -> None:
    # WAL lets readers proceed while a balance write holds the lock
    cur = dbapi_conn.cursor()
    for pragma in ("journal_mode=WAL", "foreign_keys=ON", "busy_timeout=5000"):
        cur.execute(f"PRAGMA {pragma};")
    cur.close()


def build_engine(url: str) -> Engine:
    is_sqlite = url.startswith("sqlite")
    eng = create_engine(
        url, connect_args={"check_same_thread": False} if is_sqlite else {}
    )
    if is_sqlite:
        event.listen(eng, "connect", _sqlite_on_connect)
    return eng


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for scripts: commit on clean exit, roll back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run one logical unit of work: commit everything or nothing.

    Any exception rolls the session back and propagates. Storage errors are
    re-raised as ``PersistenceFailure`` so callers see one generic failure type.
    """
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("atomic_rollback: storage error")
        raise PersistenceFailure(cause=exc) from exc
    except Exception:
        session.rollback()
        raise
