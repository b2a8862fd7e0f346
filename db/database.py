import os
import platform
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

# The cron script and the API can write to the same SQLite file, so the
# database lives in a per-user data dir rather than next to the keystore.
# Override with CERTSYNC_DB_URL (full SQLAlchemy URL) or CERTSYNC_DB_PATH.
if platform.system() == "Windows":
    _DEFAULT_DB_PATH = Path(os.environ.get("APPDATA", Path.home())) / "uc-certsync" / "certsync.db"
else:
    _DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "uc-certsync" / "certsync.db"

# Seconds a writer waits on a locked SQLite file before giving up.
SQLITE_BUSY_TIMEOUT = 30

# Columns added after the first release: table -> {column: DDL type}.
_ADDED_COLUMNS: Dict[str, Dict[str, str]] = {
    "controller_configs": {"verify_url": "VARCHAR(1024)"},
}

_engine = None
_SessionFactory = None


def get_db_url() -> str:
    if url := os.environ.get("CERTSYNC_DB_URL"):
        return url
    db_path = os.environ.get("CERTSYNC_DB_PATH", str(_DEFAULT_DB_PATH))
    return f"sqlite:///{db_path}"


def _sqlite_file(url: str) -> Optional[Path]:
    """Return the database file for a file-backed SQLite URL, else None."""
    prefix = "sqlite:///"
    if not url.startswith(prefix) or url[len(prefix):] in ("", ":memory:"):
        return None
    return Path(url[len(prefix):])


def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)

    engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT * 1000}")
        cursor.close()

    return engine


def init_db(db_url: Optional[str] = None) -> None:
    """Create tables and initialise the session factory.

    Called by every entry point (TUI, cron script, FastAPI lifespan).
    Safe to call more than once; the last URL wins.
    """
    global _engine, _SessionFactory
    url = db_url or get_db_url()
    db_file = _sqlite_file(url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)

    if _engine is not None:
        _engine.dispose()
    _engine = _make_engine(url)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)
    Base.metadata.create_all(_engine)
    _add_missing_columns(_engine)


def _add_missing_columns(engine) -> None:
    """Bring tables created by older releases up to the current columns."""
    insp = inspect(engine)
    for table, columns in _ADDED_COLUMNS.items():
        existing = {c["name"] for c in insp.get_columns(table)}
        missing = {name: ddl for name, ddl in columns.items() if name not in existing}
        if not missing:
            continue
        with engine.begin() as conn:
            for name, ddl in missing.items():
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


def _ensure_init() -> None:
    if _SessionFactory is None:
        init_db()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context manager that yields a database session with auto commit/rollback."""
    _ensure_init()
    session: Session = _SessionFactory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
