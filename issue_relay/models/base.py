"""Database base configuration"""
from sqlalchemy import create_engine, event
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from issue_relay.config import settings


def engine_options(database_url: str, timeout: float) -> dict:
    """Keyword arguments for create_engine; every database wait is bounded by ``timeout``."""
    if database_url.startswith("sqlite"):
        # sqlite3 waits up to ``timeout`` seconds for a locked database.
        return {"connect_args": {"check_same_thread": False, "timeout": timeout}, "pool_pre_ping": True}
    return {"pool_timeout": timeout, "pool_pre_ping": True}


engine = create_engine(
    settings.database_url,
    **engine_options(settings.database_url, settings.database_timeout_seconds),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def enable_sqlite_foreign_keys(bind_engine):
    """
    SQLite ships with foreign key enforcement off; without it the
    ON DELETE CASCADE on comment mappings is never applied by the database.
    """
    if bind_engine.dialect.name != "sqlite":
        return

    @event.listens_for(bind_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


enable_sqlite_foreign_keys(engine)


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind_engine=None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import issue_relay.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=bind_engine or engine)
