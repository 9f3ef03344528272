"""
Database Connection Manager

Provides connection management, session handling, transaction utilities and
the small set of table operations the migration core consumes from a source or
target store: row counts, key-ordered paginated reads, and transactional batch
inserts that ignore duplicate primary keys.
"""

import os
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional, List
from urllib.parse import urlparse

from sqlalchemy import create_engine, func, inspect, select, text, insert, delete, Table, MetaData
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.pool import QueuePool

from .exceptions import ConnectionException, DatabaseException

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Centralized database connection and session management

    One instance wraps one store (the legacy source, a per-service target, or
    the audit database). Reflected table definitions are cached per instance.
    """

    def __init__(self, database_url: Optional[str] = None, name: str = "default"):
        """
        Initialize database manager

        Args:
            database_url: Database connection URL. If None, uses DATABASE_URL env var
            name: Label used in log messages
        """
        self.database_url = database_url or os.getenv('DATABASE_URL', 'sqlite:///care_migration.db')
        self.name = name
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self._is_initialized = False
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._lock = threading.RLock()

    def initialize(self) -> None:
        """Initialize database engine and session factory"""
        with self._lock:
            if self._is_initialized:
                return

            try:
                engine_kwargs = self._get_engine_config()
                self.engine = create_engine(self.database_url, **engine_kwargs)

                # Test connection
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))

                self.SessionLocal = sessionmaker(
                    bind=self.engine,
                    autocommit=False,
                    autoflush=False,
                    expire_on_commit=False
                )

                self._is_initialized = True
                logger.info(f"Database '{self.name}' initialized successfully: {self._get_db_type()}")

            except SQLAlchemyError as e:
                logger.error(f"Failed to initialize database '{self.name}': {e}")
                raise ConnectionException(
                    f"Cannot connect to database '{self.name}'",
                    {'url': self._safe_url(), 'error': str(e)}
                ) from e

    def _get_engine_config(self) -> Dict[str, Any]:
        """Get engine configuration based on database type"""
        db_type = self._get_db_type()

        base_config = {
            'echo': os.getenv('SQL_ECHO', 'false').lower() == 'true',
            'pool_pre_ping': True,  # Verify connections before use
        }

        if db_type == 'sqlite':
            base_config.update({
                'connect_args': {
                    'check_same_thread': False,
                    'timeout': 30,
                },
            })
        else:
            base_config.update({
                'poolclass': QueuePool,
                'pool_size': 10,
                'max_overflow': 20,
                'pool_timeout': 30,
                'pool_recycle': 3600,
                'connect_args': {
                    'connect_timeout': int(os.getenv('DB_CONNECTION_TIMEOUT', '30')),
                }
            })

        return base_config

    def _get_db_type(self) -> str:
        """Get database type from URL"""
        parsed = urlparse(self.database_url)
        return parsed.scheme.split('+')[0]  # Handle dialects like postgresql+psycopg2

    def _safe_url(self) -> str:
        return self.database_url.split('@')[-1] if '@' in self.database_url else self.database_url

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic cleanup

        Yields:
            SQLAlchemy session
        """
        if not self._is_initialized:
            self.initialize()

        session = self.SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic transaction management

        Commits on success, rolls back on any exception and re-raises it.

        Usage:
            with db_manager.transaction() as session:
                db_manager.insert_ignore(session, "residents", rows)
        """
        with self.get_session() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    # Table reflection

    def get_table(self, table_name: str) -> Table:
        """
        Reflect (and cache) a table definition

        Raises:
            DatabaseException: If the table does not exist
        """
        with self._lock:
            if table_name in self._tables:
                return self._tables[table_name]

            if not self._is_initialized:
                self.initialize()

            try:
                table = Table(table_name, self._metadata, autoload_with=self.engine)
            except NoSuchTableError as e:
                raise DatabaseException(
                    f"Table '{table_name}' not found in database '{self.name}'",
                    {'table': table_name}
                ) from e

            self._tables[table_name] = table
            return table

    def forget_table(self, table_name: str) -> None:
        """Drop a cached table definition so the next access re-reflects it"""
        with self._lock:
            table = self._tables.pop(table_name, None)
            if table is not None:
                self._metadata.remove(table)

    def primary_key_columns(self, table_name: str) -> List[str]:
        """Primary key column names, in declaration order"""
        table = self.get_table(table_name)
        return [column.name for column in table.primary_key.columns]

    def column_names(self, table_name: str) -> List[str]:
        table = self.get_table(table_name)
        return [column.name for column in table.columns]

    def list_tables(self) -> List[str]:
        """
        Get list of all tables in the database

        Returns:
            List of table names
        """
        if not self._is_initialized:
            self.initialize()

        return inspect(self.engine).get_table_names()

    def table_exists(self, table_name: str) -> bool:
        return table_name in self.list_tables()

    # Row operations used by the migration core

    def count_rows(self, table_name: str, session: Optional[Session] = None) -> int:
        """Row count for a table; errors propagate to the caller"""
        table = self.get_table(table_name)
        query = select(func.count()).select_from(table)

        if session is not None:
            return int(session.execute(query).scalar_one())

        with self.get_session() as own_session:
            return int(own_session.execute(query).scalar_one())

    def fetch_batch(self, table_name: str, limit: int, offset: int) -> List[Dict[str, Any]]:
        """
        Fetch one page of rows ordered by primary key ascending

        Tables without a primary key are ordered by every column so that
        repeated reads against a quiesced source return the same pages.
        """
        table = self.get_table(table_name)
        order_columns = list(table.primary_key.columns) or list(table.columns)
        query = select(table).order_by(*order_columns).limit(limit).offset(offset)

        with self.get_session() as session:
            return [dict(row) for row in session.execute(query).mappings()]

    def fetch_all(self, table_name: str, session: Optional[Session] = None) -> List[Dict[str, Any]]:
        """Fetch every row of a table ordered by primary key"""
        table = self.get_table(table_name)
        order_columns = list(table.primary_key.columns) or list(table.columns)
        query = select(table).order_by(*order_columns)

        if session is not None:
            return [dict(row) for row in session.execute(query).mappings()]

        with self.get_session() as own_session:
            return [dict(row) for row in own_session.execute(query).mappings()]

    def insert_ignore(self, session: Session, table_name: str, rows: List[Dict[str, Any]]) -> int:
        """
        Insert rows inside the caller's transaction, skipping duplicate keys

        Args:
            session: Session owning the open transaction
            table_name: Target table
            rows: Records keyed by column name

        Returns:
            Number of rows submitted
        """
        if not rows:
            return 0

        table = self.get_table(table_name)
        db_type = self._get_db_type()

        if db_type == 'sqlite':
            statement = sqlite.insert(table).on_conflict_do_nothing()
        elif db_type == 'postgresql':
            statement = postgresql.insert(table).on_conflict_do_nothing()
        elif db_type in ('mysql', 'mariadb'):
            statement = mysql.insert(table).prefix_with('IGNORE')
        else:
            logger.warning(f"No duplicate-ignore insert for dialect '{db_type}', using plain INSERT")
            statement = insert(table)

        session.execute(statement, rows)
        return len(rows)

    def insert_rows(self, session: Session, table_name: str, rows: List[Dict[str, Any]]) -> int:
        """Plain insert inside the caller's transaction; duplicate keys raise"""
        if not rows:
            return 0

        table = self.get_table(table_name)
        session.execute(insert(table), rows)
        return len(rows)

    def sorted_table_names(self, exclude: Optional[List[str]] = None) -> List[str]:
        """All tables ordered so that referenced tables come before referencing ones"""
        if not self._is_initialized:
            self.initialize()

        reflected = MetaData()
        reflected.reflect(bind=self.engine)
        skipped = set(exclude or [])
        return [table.name for table in reflected.sorted_tables if table.name not in skipped]

    def delete_all(self, session: Session, table_name: str) -> None:
        table = self.get_table(table_name)
        session.execute(delete(table))

    def drop_table(self, session: Session, table_name: str) -> None:
        """Drop a table inside the caller's transaction"""
        preparer = self.engine.dialect.identifier_preparer
        session.execute(text(f"DROP TABLE IF EXISTS {preparer.quote(table_name)}"))
        self.forget_table(table_name)

    def close(self) -> None:
        """Close database connections and cleanup resources"""
        with self._lock:
            if self.engine:
                self.engine.dispose()
                logger.info(f"Database '{self.name}' connections closed")

            self._tables.clear()
            self._metadata = MetaData()
            self._is_initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
