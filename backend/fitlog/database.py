"""Database configuration and session management."""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

from fitlog.config import settings

# Create Base class for models
Base = declarative_base()


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite connections.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT rollback. The upserter relies on savepoints to isolate a
    failing record from the rest of its page.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine, applying the SQLite tweaks when needed."""
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)

    engine = create_engine(url, **kwargs)
    if is_sqlite:
        enable_sqlite_savepoints(engine)
    return engine


# Create SQLAlchemy engine
engine = build_engine(settings.DATABASE_URL)

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """
    Dependency for getting database sessions.

    Yields:
        Database session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database by creating all tables."""
    # Import models so SQLAlchemy knows about them
    from fitlog.models import User, Activity, ImportRun, ImportPageLog, SyncState  # noqa: F401

    Base.metadata.create_all(bind=engine)
