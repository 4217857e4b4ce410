"""Database connection management for the alias/preference store.

Usage:
    from meallog.db.connection import create_db_engine, init_db

    engine = create_db_engine()
    init_db(engine)  # Create tables
    factory = make_session_factory(engine)
    with session_scope(factory) as db:
        db.query(FoodAlias).all()
"""

import os
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from meallog.db.models import Base


def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. MEALLOG_DB_PATH (converted to sqlite URL)
    3. sqlite:///./meallog.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("MEALLOG_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    return "sqlite:///./meallog.db"


def create_db_engine(database_url: str | None = None) -> Engine:
    """Create an engine for the given URL (defaults to get_database_url()).

    Args:
        database_url: Explicit SQLAlchemy URL, e.g. from config.

    Returns:
        Configured SQLAlchemy Engine.
    """
    url = database_url or get_database_url()
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build a session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Commit-or-rollback scope around a session from ``factory``.

    Usage:
        with session_scope(factory) as db:
            db.add(alias)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """Create all tables. Safe to call multiple times."""
    Base.metadata.create_all(bind=engine)
