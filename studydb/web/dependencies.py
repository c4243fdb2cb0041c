"""FastAPI dependency injection for database sessions."""

from typing import Generator

from sqlalchemy.orm import Session

from ..database import get_db, Database


def get_database() -> Database:
    """Get the global Database instance."""
    return get_db()


def get_db_session() -> Generator[Session, None, None]:
    """FastAPI dependency: yields a database session with auto-commit/rollback."""
    db = get_db()
    session = db.SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
