"""
Database connection and session management for StudyDB.
"""

import os
import json
import logging
import threading
from pathlib import Path
from datetime import datetime
from contextlib import contextmanager
from typing import Optional, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

from . import DEFAULT_DB_PATH, DEFAULT_LOG_PATH
from .schema import Base, AuditLog

logger = logging.getLogger(__name__)


def enable_sqlite_savepoints(engine):
    """
    Let SQLAlchemy own transaction boundaries on a pysqlite engine.

    The sqlite3 driver otherwise issues its own BEGIN/COMMIT and breaks
    SAVEPOINT, which push relies on to roll back a single failed mutation.
    """
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """Database connection manager with audit logging."""

    def __init__(self, db_path: Optional[Path] = None, log_path: Optional[Path] = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to $STUDYDB_ROOT/studydb.db
            log_path: Directory for daily change logs. Defaults to $STUDYDB_ROOT/logs
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.log_path = Path(log_path) if log_path else DEFAULT_LOG_PATH

        # Ensure directories exist
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.mkdir(parents=True, exist_ok=True)

        # Create engine and session factory
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            connect_args={"check_same_thread": False}  # FastAPI runs sync routes in a threadpool
        )
        enable_sqlite_savepoints(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Serializes every write transaction in this process
        self._write_lock = threading.RLock()

        # Current user for audit logging
        self._current_user = os.environ.get('USERNAME', os.environ.get('USER', 'unknown'))

    def init_db(self):
        """Create all tables and run migrations."""
        Base.metadata.create_all(self.engine)
        self._run_migrations()
        logger.info("Database initialized at: %s", self.db_path)

    def _run_migrations(self):
        """Check for and add any missing columns to existing tables."""
        from sqlalchemy import text, inspect

        # Define migrations: (table_name, column_name, column_definition)
        migrations = [
            ('experiments', 'baseline_day_offset', 'INTEGER NOT NULL DEFAULT 0'),
            ('experiments', 'endpoint_css_threshold', 'INTEGER'),
            ('experiments', 'endpoint_css_operator', 'VARCHAR(2)'),
            ('samples', 'storage_box', 'VARCHAR(100)'),
            ('samples', 'box_position', 'VARCHAR(10)'),
        ]

        inspector = inspect(self.engine)

        for table_name, column_name, column_def in migrations:
            if table_name not in inspector.get_table_names():
                continue

            existing_columns = [col['name'] for col in inspector.get_columns(table_name)]

            if column_name not in existing_columns:
                try:
                    with self.engine.begin() as conn:
                        conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_def}"))
                    logger.info("Migration: Added %s.%s", table_name, column_name)
                except Exception as e:
                    # Column might already exist or other issue - log but don't fail
                    logger.warning("Migration warning: %s", e)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions with automatic commit/rollback.

        Usage:
            with db.session() as session:
                session.add(...)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def writer(self) -> Generator[Session, None, None]:
        """
        Session for a write transaction, holding the process write lock.

        Sync pushes, direct observation writes and the baseline recalculation
        all go through here, so a recalculation never interleaves with an
        observation write for the same subject.
        """
        with self._write_lock:
            with self.session() as session:
                yield session

    def set_user(self, username: str):
        """Set the current user for audit logging."""
        self._current_user = username

    @property
    def current_user(self) -> str:
        """Get the current user for audit logging."""
        return self._current_user

    def log_change(self, session: Session, action: str, table_name: str,
                   record_id: str, old_values: dict = None, new_values: dict = None):
        """
        Log a data change for audit trail.

        Args:
            session: Active database session
            action: SYNC_PUSH, RECALCULATE, UPDATE, ...
            table_name: Name of the affected table
            record_id: Primary key of the affected record
            old_values: Previous values
            new_values: New values
        """
        log_entry = AuditLog(
            user=self.current_user,
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            old_values=json.dumps(old_values, default=str) if old_values else None,
            new_values=json.dumps(new_values, default=str) if new_values else None,
        )
        session.add(log_entry)

        # Also write to daily log file; the audit_log row is the record of truth
        log_file = self.log_path / f"{datetime.now().strftime('%Y-%m-%d')}_changes.jsonl"
        try:
            with open(log_file, 'a') as f:
                f.write(json.dumps({
                    'timestamp': datetime.now().isoformat(),
                    'user': self.current_user,
                    'action': action,
                    'table': table_name,
                    'record_id': str(record_id),
                    'old': old_values,
                    'new': new_values,
                }, default=str) + '\n')
        except OSError as e:
            logger.warning("Could not append to change log %s: %s", log_file, e)

    def get_stats(self) -> dict:
        """Get database statistics."""
        from .schema import Experiment, TreatmentGroup, Subject, Observation, Sample
        with self.session() as session:
            return {
                'experiments': session.query(Experiment).count(),
                'treatment_groups': session.query(TreatmentGroup).count(),
                'subjects': session.query(Subject).count(),
                'alive_subjects': session.query(Subject).filter(Subject.status == 'alive').count(),
                'observations': session.query(Observation).count(),
                'samples': session.query(Sample).count(),
                'db_path': str(self.db_path),
                'db_size_mb': self.db_path.stat().st_size / (1024 * 1024) if self.db_path.exists() else 0,
            }


# Global database instance
_db: Optional[Database] = None


def get_db(db_path: Optional[Path] = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None or (db_path is not None and _db.db_path != Path(db_path)):
        _db = Database(db_path)
    return _db


def set_db(db: Optional[Database]):
    """Replace the global database instance (used by tests and the CLI)."""
    global _db
    _db = db


def init_database(db_path: Optional[Path] = None) -> Database:
    """Initialize the database and return the instance."""
    db = get_db(db_path)
    db.init_db()
    return db
