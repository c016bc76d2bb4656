# hive_rewards/db.py
"""Database session and connection management"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from hive_rewards.models.db import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_transactions(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs work on pysqlite"""
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """Database connection and session manager"""

    def __init__(self, connection_string: str):
        """Initialize database manager state"""
        self._connection_string = connection_string
        self._engine: Optional[Engine] = None
        self._SessionLocal = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    def init(self, create_tables: bool = True) -> None:
        """
        Initialize database connection and optionally create tables.

        This should be called once at application startup.

        Raises:
            SQLAlchemyError: If database initialization fails
        """
        try:
            self._engine = create_engine(self._connection_string, pool_pre_ping=True)
            if self._engine.dialect.name == 'sqlite':
                _enable_sqlite_transactions(self._engine)
            if create_tables:
                Base.metadata.create_all(self._engine)
            self._SessionLocal = sessionmaker(bind=self._engine, expire_on_commit=False)
            logger.info("Database initialized successfully")

        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e.__class__.__name__}")
            raise

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of database operations.

        Usage:
            with db.session() as session:
                session.add(some_object)

        The transaction commits when the block exits normally and rolls back
        on any exception, so a settlement step is applied whole or not at all.

        Yields:
            Session: SQLAlchemy database session

        Raises:
            RuntimeError: If database not initialized
        """
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """
        Clean up database connections.
        Should be called during application shutdown.
        """
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None
