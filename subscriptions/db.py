from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]

_SQLITE_PREFIXES = ("sqlite:///", "sqlite+pysqlite:///")
_SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _sqlite_file(url: str) -> Optional[Path]:
    for prefix in _SQLITE_PREFIXES:
        if url.startswith(prefix):
            raw_path = url[len(prefix):].split("?", 1)[0]
            break
    else:
        return None
    if not raw_path or raw_path == ":memory:":
        return None
    path = Path(raw_path).expanduser()
    return path if path.is_absolute() else (Path.cwd() / path).resolve()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def create_db_engine(database_url: str) -> Engine:
    """
    Engine for the subscription store.

    SQLite gets a busy timeout so concurrent webhook deliveries queue on the
    write lock, and foreign keys are switched on so ledger rows always point
    at a tenant.
    """

    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        db_file = _sqlite_file(database_url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        database_url,
        future=True,
        echo=DATABASE_ECHO,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": _SQLITE_BUSY_TIMEOUT_SECONDS} if is_sqlite else {},
    )
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    engine = create_db_engine(database_url)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    return engine, factory


ENGINE, SessionLocal = build_session_factory(DATABASE_URL)


def _requires_postgres(database_url: str) -> bool:
    if str(APP_ENV or "").strip().lower() not in {"prod", "production"}:
        return False
    return not str(database_url or "").strip().lower().startswith("postgresql")


def _alembic_config(database_url: str) -> AlembicConfig:
    root = Path(ROOT_DIR).resolve()
    ini_path = root / "alembic.ini"
    if not ini_path.exists():
        raise RuntimeError(f"missing alembic.ini: {ini_path}")
    alembic_cfg = AlembicConfig(str(ini_path))
    # The service owns logging configuration; env.py must not reset it.
    alembic_cfg.attributes["configure_logger"] = False
    alembic_cfg.set_main_option("script_location", str(root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    return alembic_cfg


def init_subscription_db(engine: Engine | None = None) -> None:
    """Create the schema on an explicit engine, otherwise migrate DATABASE_URL to head."""

    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    if _requires_postgres(DATABASE_URL):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")
    command.upgrade(_alembic_config(DATABASE_URL), "head")


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    """One unit of work: commit on success, roll back on any exception."""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping_database(session_factory: SessionFactory | None = None) -> None:
    """Round-trip `SELECT 1`; raises SQLAlchemyError when the store is unreachable."""
    with session_scope(session_factory) as session:
        session.execute(text("SELECT 1"))
