"""
Database Manager Module - QR Attendance Token Service

This module handles all database operations for the attendance service.
It manages SQLite connections, schema creation, queries and transactions for
the tables the token scheme relies on: class sessions, class rosters, attendance
records (redemptions) and the QR usage audit log.

Features:
- Thread-local SQLite connection management
- Bounded busy timeout on every connection
- Idempotent schema creation
- Uniqueness constraint on (session_id, student_id) redemptions
- Transaction support
- Translation of lock/timeout failures into StoreUnavailableError
"""

import sqlite3
import logging
from contextlib import contextmanager
import threading
import os


class StoreUnavailableError(RuntimeError):
    """Raised when the data store cannot be reached or times out."""


class DatabaseManager:
    """
    Database management class for the attendance service.
    Handles connection management, schema creation and data manipulation
    with transaction support.
    """

    def __init__(self, db_path, timeout: float = 5.0):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file, or ':memory:'
            timeout (float): Seconds to wait on a locked database
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        # Ensure database directory exists
        directory = os.path.dirname(self.db_path)
        if self.db_path != ':memory:' and directory:
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=self.timeout
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ':memory:':
            # WAL lets readers proceed while a scan is being committed
            connection.execute("PRAGMA journal_mode = WAL")
        with self._connections_lock:
            self._connections.append(connection)
        return connection

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object

        Raises:
            StoreUnavailableError: The database is locked, unreachable or timed out
        """
        try:
            if not hasattr(self._local, 'connection'):
                self._local.connection = self._connect()
        except sqlite3.OperationalError as e:
            self.logger.error(f"Database connection failed: {str(e)}")
            raise StoreUnavailableError(str(e)) from e

        try:
            yield self._local.connection
        except sqlite3.OperationalError as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            self._local.connection.rollback()
            raise

    def initialize_database(self):
        """
        Create all necessary tables for the attendance service.
        This method is idempotent and can be called multiple times safely.
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS class_sessions (
                    id VARCHAR(64) PRIMARY KEY,
                    class_id VARCHAR(64) NOT NULL,
                    start_time TIMESTAMP NOT NULL,
                    end_time TIMESTAMP,
                    is_active BOOLEAN DEFAULT 1,
                    attendance_count INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    ended_at TIMESTAMP
                )
            """)

            # One redemption per student per session
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS attendance_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id VARCHAR(64) NOT NULL,
                    student_id VARCHAR(64) NOT NULL,
                    scanned_at TIMESTAMP NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'present',
                    minutes_late INTEGER DEFAULT 0,
                    device_fingerprint TEXT,
                    ip_address VARCHAR(64),
                    FOREIGN KEY (session_id) REFERENCES class_sessions(id),
                    UNIQUE(session_id, student_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS qr_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id VARCHAR(64) NOT NULL,
                    nonce VARCHAR(64) NOT NULL,
                    used_by VARCHAR(64) NOT NULL,
                    used_at TIMESTAMP NOT NULL,
                    device_fingerprint TEXT,
                    FOREIGN KEY (session_id) REFERENCES class_sessions(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS enrollments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    class_id VARCHAR(64) NOT NULL,
                    student_id VARCHAR(64) NOT NULL,
                    enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(class_id, student_id)
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_session ON attendance_records(session_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance_records(student_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_qr_usage_session ON qr_usage(session_id)")

            conn.commit()
            self.logger.info("Database initialized successfully")

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())

            if fetch_all:
                return [dict(row) for row in cursor.fetchall()]
            result = cursor.fetchone()
            return dict(result) if result else None

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters

        Returns:
            int: Number of affected rows or last inserted row ID
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())
            conn.commit()

            # Return last inserted row ID for INSERT statements
            if query.strip().upper().startswith('INSERT'):
                return cursor.lastrowid
            return cursor.rowcount

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.

        Yields:
            sqlite3.Cursor: Cursor bound to the transaction
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            if not conn.in_transaction:
                # Take the write lock up front; waits up to the busy timeout
                cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.debug(f"Transaction rolled back: {str(e)}")
                raise

    def close_all_connections(self):
        """Close every connection opened by this manager, across threads."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                connection.close()
            except sqlite3.Error as e:
                self.logger.error(f"Error closing connection: {str(e)}")
        if hasattr(self._local, 'connection'):
            del self._local.connection
