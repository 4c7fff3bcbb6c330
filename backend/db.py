import logging
import time
from datetime import datetime, timezone
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, declarative_base

from config import DATABASE_URL, DB_TIMEOUT_SECONDS, DB_READ_RETRIES

logger = logging.getLogger(__name__)

_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS} if _is_sqlite else {"connect_timeout": int(DB_TIMEOUT_SECONDS)}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# ensure ON DELETE CASCADE is respected at DB level
if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def run_with_retries(db, fn, attempts: int = DB_READ_RETRIES, backoff: float = 0.05):
    """Run a read-only callable, retrying on transient storage errors.

    Only for reads: write paths re-run their own precondition checks instead.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OperationalError:
            db.rollback()
            if attempt == attempts:
                raise
            logger.warning("Transient read failure (attempt %d/%d), retrying", attempt, attempts)
            time.sleep(backoff * attempt)
