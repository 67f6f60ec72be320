from __future__ import annotations
import os
import sys
import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from app.core.config import settings


class Base(DeclarativeBase):
    pass


def _is_testing() -> bool:
    """Detect if the code is running under pytest."""
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return True
    return any(m.startswith("pytest") for m in sys.modules)


def _runtime_sqlite_path() -> Path:
    """Return the sqlite file path for the current runtime (test vs normal)."""
    base = Path(settings.SQLITE_PATH).expanduser().resolve()
    if _is_testing():
        # db.sqlite3 -> db.test.sqlite3
        test_name = (
            f"{base.stem}.test{base.suffix}" if base.suffix else f"{base.name}.test"
        )
        return base.with_name(test_name)
    return base


_db_path = _runtime_sqlite_path()
_db_path.parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(
    f"sqlite+pysqlite:///{_db_path}",
    connect_args={
        # the notification store writes from worker threads
        "check_same_thread": False,
        "timeout": 30,
    },
    pool_pre_ping=True,
    future=True,
)


# WAL lets the history endpoint read while a publish is being stored
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    if isinstance(dbapi_conn, sqlite3.Connection):
        cur = dbapi_conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA busy_timeout=5000;")  # ms
        except sqlite3.DatabaseError:
            pass
        finally:
            cur.close()


SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
