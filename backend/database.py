"""
Database configuration and session management.

SQLite for local development, PostgreSQL in production. DATABASE_URL comes
from the environment or backend/.env; settings that pydantic-settings
reads (config.py) do not include it because the engine is built at import.
"""
import os
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

# Variables already in the environment win over the file
load_dotenv(Path(__file__).parent / ".env")


def normalize_database_url(url: str) -> str:
    """Some providers hand out postgres:// URLs; SQLAlchemy wants postgresql://."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", "sqlite:///./test_rides.db"))


def enable_sqlite_foreign_keys(target_engine):
    """SQLite ignores foreign keys unless asked per connection."""
    @event.listens_for(target_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if DATABASE_URL.startswith("sqlite"):
    # The app hands sessions to worker threads
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
    enable_sqlite_foreign_keys(engine)
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for FastAPI to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables. Schema changes go through alembic/versions."""
    from db_models import Base
    Base.metadata.create_all(bind=engine)
