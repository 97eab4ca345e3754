from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config.settings import get_settings

settings = get_settings()

SQLALCHEMY_DATABASE_URL = settings.database_url.strip()

# Special case for local testing/CI
IS_TEST = settings.is_testing

if (not SQLALCHEMY_DATABASE_URL or not SQLALCHEMY_DATABASE_URL.startswith("postgresql")) and not IS_TEST:
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must be a valid PostgreSQL connection string. "
        "SQLite is only supported with ENVIRONMENT=testing."
    )

if IS_TEST and not SQLALCHEMY_DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test_creditledger.db"


def build_engine(url: str) -> Engine:
    """Create an engine for ``url``. PostgreSQL gets a pooled engine, SQLite a threaded one."""
    if url.startswith("postgresql"):
        return create_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(sqlite_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
        finally:
            cursor.close()

    return sqlite_engine


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(SQLALCHEMY_DATABASE_URL)

# SessionLocal class
SessionLocal = build_session_factory(engine)

# Base class for models
Base = declarative_base()


def run_migrations(bind: Engine | None = None) -> None:
    """Bootstrap the database schema. In production, use Alembic instead."""
    # Models must be registered on Base before create_all.
    from creditledger.core import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)

