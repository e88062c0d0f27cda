"""SQLite state store with one connection per thread"""
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from ..exceptions import StoreUnavailable
from ..models import (
    MonitoredPrefix, PrefixSource, RouteHistoryEntry, RouteSnapshot, RouteStatus, utcnow
)
from .base import StateStore, token_digest

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1


def _to_db(dt):
    return dt.astimezone(timezone.utc).isoformat()


def _from_db(value):
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SqliteStateStore(StateStore):
    """Thread-safe SQLite store; each thread gets its own connection"""

    def __init__(self, db_path):
        self.db_path = str(db_path)
        self._local = threading.local()
        # (owning thread, connection) pairs
        self._connections = []
        self._lock = threading.Lock()

        directory = os.path.dirname(os.path.abspath(self.db_path))
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create database directory {directory}: {e}")
        self._init_database()

    def _get_connection(self):
        """Get thread-local database connection"""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')
            self._local.conn = conn
            with self._lock:
                self._release_finished_threads()
                self._connections.append((threading.current_thread(), conn))
        return conn

    def _release_finished_threads(self):
        """Close connections of worker threads that have exited. Caller holds the lock."""
        alive = []
        for thread, conn in self._connections:
            if thread.is_alive():
                alive.append((thread, conn))
            else:
                conn.close()
        self._connections = alive

    @property
    def open_connections(self):
        with self._lock:
            return len(self._connections)

    @contextmanager
    def _errors(self, action):
        try:
            yield
        except sqlite3.Error as e:
            logger.error(f"SQLite error while trying to {action}: {e}")
            raise StoreUnavailable(f"Failed to {action} in {self.db_path}: {e}") from e

    @contextmanager
    def transaction(self):
        """Context manager for atomic writes"""
        conn = self._get_connection()
        with self._errors('write'):
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _init_database(self):
        with self._errors('initialize schema'):
            conn = self._get_connection()
            current_version = conn.execute('PRAGMA user_version').fetchone()[0]
            if current_version < SCHEMA_VERSION:
                self._migrate_schema(conn, current_version)
                conn.execute(f'PRAGMA user_version={SCHEMA_VERSION}')
                conn.commit()
                logger.info(f"Database {self.db_path} initialized at version {SCHEMA_VERSION}")

    def _migrate_schema(self, conn, from_version):
        """Run schema migrations"""
        if from_version < 1:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS route_current (
                    prefix TEXT PRIMARY KEY,
                    description TEXT,
                    path TEXT NOT NULL,
                    as_path TEXT,
                    resolved_path TEXT,
                    status TEXT NOT NULL
                        CHECK(status IN ('active', 'not_in_table', 'error')),
                    last_checked TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS route_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    prefix TEXT NOT NULL,
                    description TEXT,
                    previous_path TEXT,
                    current_path TEXT,
                    status TEXT NOT NULL,
                    as_path TEXT,
                    resolved_path TEXT,
                    detected_at TIMESTAMP NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_history_prefix ON route_history(prefix);
                CREATE INDEX IF NOT EXISTS idx_history_detected_at ON route_history(detected_at);
                CREATE INDEX IF NOT EXISTS idx_history_status ON route_history(status);

                CREATE TABLE IF NOT EXISTS monitored_prefixes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    prefix TEXT NOT NULL UNIQUE,
                    description TEXT,
                    token_name TEXT CHECK(length(token_name) <= 100),
                    token_hash TEXT,
                    created_at TIMESTAMP NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                );

                CREATE INDEX IF NOT EXISTS idx_monitored_token ON monitored_prefixes(token_hash);
            ''')
            logger.info("Applied migration: initial schema")

    def ping(self):
        with self._errors('reach the database'):
            self._get_connection().execute('SELECT 1').fetchone()

    # --- Route state ---
    def get_current_route(self, prefix):
        with self._errors(f'read current route for {prefix}'):
            row = self._get_connection().execute(
                'SELECT * FROM route_current WHERE prefix = ?', (prefix,)
            ).fetchone()
        if row is None:
            return None
        return RouteSnapshot(
            prefix=row['prefix'],
            description=row['description'] or '',
            path=row['path'],
            status=row['status'],
            as_path=row['as_path'],
            resolved_path=row['resolved_path'],
            last_checked=_from_db(row['last_checked']),
        )

    def upsert_current_route(self, snapshot):
        with self.transaction() as conn:
            conn.execute(
                '''INSERT OR REPLACE INTO route_current
                   (prefix, description, path, as_path, resolved_path, status, last_checked)
                   VALUES (?, ?, ?, ?, ?, ?, ?)''',
                (snapshot.prefix, snapshot.description, snapshot.path, snapshot.as_path,
                 snapshot.resolved_path, snapshot.status.value, _to_db(snapshot.last_checked))
            )

    def append_history(self, entry):
        with self.transaction() as conn:
            conn.execute(
                '''INSERT INTO route_history
                   (prefix, description, previous_path, current_path, status,
                    as_path, resolved_path, detected_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
                (entry.prefix, entry.description, entry.previous_path, entry.current_path,
                 entry.status.value, entry.as_path, entry.resolved_path, _to_db(entry.detected_at))
            )

    def get_history(self, prefix=None, limit=50):
        query = 'SELECT * FROM route_history'
        params = []
        if prefix:
            query += ' WHERE prefix = ?'
            params.append(prefix)
        query += ' ORDER BY detected_at DESC, id DESC LIMIT ?'
        params.append(int(limit))

        with self._errors('read route history'):
            rows = self._get_connection().execute(query, params).fetchall()
        return [
            RouteHistoryEntry(
                prefix=row['prefix'],
                description=row['description'] or '',
                previous_path=row['previous_path'],
                current_path=row['current_path'],
                status=RouteStatus(row['status']),
                as_path=row['as_path'],
                resolved_path=row['resolved_path'],
                detected_at=_from_db(row['detected_at']),
            )
            for row in rows
        ]

    # --- Prefix registry ---
    @staticmethod
    def _row_to_prefix(row):
        return MonitoredPrefix(
            prefix=row['prefix'],
            description=row['description'] or '',
            source=PrefixSource.REGISTERED,
            active=bool(row['is_active']),
            added_by=row['token_name'],
        )

    def list_monitored_prefixes(self, active_only=True):
        query = 'SELECT * FROM monitored_prefixes'
        if active_only:
            query += ' WHERE is_active = 1'
        query += ' ORDER BY prefix'
        with self._errors('list monitored prefixes'):
            rows = self._get_connection().execute(query).fetchall()
        return [self._row_to_prefix(row) for row in rows]

    def add_monitored_prefix(self, prefix, description, token_name, token):
        with self.transaction() as conn:
            conn.execute(
                '''INSERT INTO monitored_prefixes
                   (prefix, description, token_name, token_hash, created_at, is_active)
                   VALUES (?, ?, ?, ?, ?, 1)
                   ON CONFLICT(prefix) DO UPDATE SET
                       description = excluded.description,
                       token_name = excluded.token_name,
                       token_hash = excluded.token_hash,
                       is_active = 1''',
                (prefix, description, token_name, token_digest(token), _to_db(utcnow()))
            )
        return MonitoredPrefix(prefix, description, PrefixSource.REGISTERED, True, token_name)

    def deactivate_prefix(self, prefix, token=None):
        query = 'UPDATE monitored_prefixes SET is_active = 0 WHERE prefix = ? AND is_active = 1'
        params = [prefix]
        if token is not None:
            query += ' AND token_hash = ?'
            params.append(token_digest(token))
        with self.transaction() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount > 0

    def get_prefixes_by_token(self, token):
        with self._errors('list prefixes by token'):
            rows = self._get_connection().execute(
                'SELECT * FROM monitored_prefixes WHERE token_hash = ? AND is_active = 1 ORDER BY prefix',
                (token_digest(token),)
            ).fetchall()
        return [self._row_to_prefix(row) for row in rows]

    def close(self):
        with self._lock:
            for _, conn in self._connections:
                conn.close()
            self._connections = []
        self._local = threading.local()
