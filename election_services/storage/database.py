"""
PostgreSQL connection pool and transaction handling.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2 import errors, pool
from psycopg2.extensions import cursor as Cursor

from ..config import Settings, settings as default_settings
from ..shared.errors import BallotError, TransientStoreFailure

logger = logging.getLogger(__name__)

# Failures after which the whole operation may be retried safely
TRANSIENT_ERRORS = (
    errors.LockNotAvailable,
    errors.QueryCanceled,
    errors.SerializationFailure,
    errors.DeadlockDetected,
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
    pool.PoolError,
)


class Database:
    """PostgreSQL connection pool and transaction scopes."""

    def __init__(self, config: Optional[Settings] = None):
        """Initialize database connection pool."""
        self.config = config or default_settings
        self.connection_pool = None
        self._init_connection_pool()

    def _init_connection_pool(self):
        """Create database connection pool."""
        try:
            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                self.config.POSTGRES_POOL_MIN_SIZE,
                self.config.POSTGRES_POOL_MAX_SIZE,
                host=self.config.POSTGRES_HOST,
                port=self.config.POSTGRES_PORT,
                database=self.config.POSTGRES_DB,
                user=self.config.POSTGRES_USER,
                password=self.config.POSTGRES_PASSWORD,
                connect_timeout=self.config.POSTGRES_CONNECT_TIMEOUT
            )
            logger.info(
                f"Database connection pool created: "
                f"{self.config.POSTGRES_HOST}:{self.config.POSTGRES_PORT}/{self.config.POSTGRES_DB}"
            )
        except psycopg2.Error as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise TransientStoreFailure(f"Connection pool creation failed: {e}") from e

    @contextmanager
    def get_connection(self) -> Iterator['psycopg2.extensions.connection']:
        """
        Context manager for database connections.

        Yields:
            Connection object from the pool.

        Raises:
            TransientStoreFailure: If no connection could be obtained.
        """
        try:
            connection = self.connection_pool.getconn()
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Could not obtain a database connection: {e}")
            raise TransientStoreFailure(f"Database unavailable: {e}") from e

        try:
            yield connection
        finally:
            self.connection_pool.putconn(connection, close=bool(connection.closed))

    @contextmanager
    def transaction(self, read_only: bool = False) -> Iterator[Cursor]:
        """
        Run a block inside one database transaction.

        Commits when the block completes, rolls back on any exception.
        Driver failures that leave nothing committed are re-raised as
        TransientStoreFailure.

        Args:
            read_only: Open a REPEATABLE READ READ ONLY transaction so every
                query in the block sees the same committed snapshot.

        Yields:
            A cursor bound to the transaction.
        """
        with self.get_connection() as conn:
            try:
                with conn.cursor() as cursor:
                    if read_only:
                        cursor.execute(
                            "SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY"
                        )
                    yield cursor
                conn.commit()
            except BallotError:
                self._rollback(conn)
                raise
            except TRANSIENT_ERRORS as e:
                self._rollback(conn)
                logger.warning(f"Transaction aborted by the database: {e}")
                raise TransientStoreFailure(f"Database operation failed: {e}") from e
            except Exception:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn) -> None:
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.error(f"Rollback failed: {e}")

    def health_check(self) -> bool:
        """
        Check database health.

        Returns:
            True if database is healthy, False otherwise
        """
        try:
            with self.transaction(read_only=True) as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except (TransientStoreFailure, psycopg2.Error) as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self):
        """Close all connections in the pool."""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connection pool closed")
