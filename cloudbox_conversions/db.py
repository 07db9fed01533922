import sqlite3
import logging
import re
from contextlib import contextmanager
from typing import Any, List, Optional, Tuple

from cloudbox_conversions.core.config import settings

logger = logging.getLogger(__name__)

# Global Connection Pool
pg_pool = None

# ─── PostgreSQL Wrapper ──────────────────────────────────────────────────────
class PostgresCursor:
    """Wraps psycopg2 cursor so callers can keep writing '?' placeholders"""
    def __init__(self, cursor):
        self.cursor = cursor

    def execute(self, sql: str, params: Tuple = ()) -> Any:
        def replace_placeholder(match):
            if match.group(1): return match.group(1)
            return "%s"
        pattern = r"(\'[^\']*\'|\"[^\"]*\")|\?"
        pg_sql = re.sub(pattern, replace_placeholder, sql)
        return self.cursor.execute(pg_sql, params)

    def fetchone(self) -> Optional[Any]:
        return self.cursor.fetchone()

    def fetchall(self) -> List[Any]:
        return self.cursor.fetchall()

    def close(self):
        self.cursor.close()

    def __getattr__(self, name):
        return getattr(self.cursor, name)

class PostgresConnection:
    """Wraps psycopg2 connection with the sqlite3-style execute() shortcut"""
    def __init__(self, conn, pool=None):
        self.conn = conn
        self.pool = pool

    def cursor(self):
        return PostgresCursor(self.conn.cursor())

    def execute(self, sql: str, params: Tuple = ()) -> PostgresCursor:
        cursor = self.cursor()
        cursor.execute(sql, params)
        return cursor

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    def close(self):
        if self.pool:
            self.pool.putconn(self.conn)
        else:
            self.conn.close()

    def __getattr__(self, name):
        return getattr(self.conn, name)

# ─── Dialect Helpers ─────────────────────────────────────────────────────────
def is_postgres() -> bool:
    return bool(settings.DATABASE_URL)

def claim_lock_clause() -> str:
    """Row lock for the claim subquery. SQLite serializes writers already."""
    return "FOR UPDATE SKIP LOCKED" if is_postgres() else ""

def unavailable_errors() -> Tuple[type, ...]:
    """Exceptions meaning 'the backend cannot be reached right now'."""
    errors: List[type] = [sqlite3.OperationalError]
    if is_postgres():
        import psycopg2
        from psycopg2 import pool
        errors.extend([psycopg2.OperationalError, psycopg2.InterfaceError, pool.PoolError])
    return tuple(errors)

def integrity_errors() -> Tuple[type, ...]:
    errors: List[type] = [sqlite3.IntegrityError]
    if is_postgres():
        import psycopg2
        errors.append(psycopg2.IntegrityError)
    return tuple(errors)

def row_to_dict(row) -> dict:
    return dict(row) if row is not None else {}

# ─── Initialization ──────────────────────────────────────────────────────────
def init_db():
    """Schema creation - runs on API startup and worker startup"""
    if settings.DATABASE_URL:
        _init_postgres_sync()
    else:
        _init_sqlite_sync()

def close_db():
    global pg_pool
    if pg_pool:
        pg_pool.closeall()
        pg_pool = None
        logger.info("PostgreSQL Pool closed.")

def _init_sqlite_sync():
    conn = sqlite3.connect(settings.SQLITE_PATH)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        cursor = conn.cursor()
        _create_schema(cursor)
        conn.commit()
    finally:
        conn.close()

def _init_postgres_sync():
    global pg_pool
    try:
        import psycopg2
        from psycopg2 import pool
        from psycopg2.extras import RealDictCursor

        if not pg_pool:
            pg_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1, maxconn=20,
                dsn=settings.DATABASE_URL,
                cursor_factory=RealDictCursor
            )

        conn = pg_pool.getconn()
        try:
            cursor = conn.cursor()
            _create_core_tables(cursor)
            conn.commit()
        finally:
            pg_pool.putconn(conn)
    except Exception as e:
        logger.error(f"Postgres Init Failed: {e}")
        raise e

# Only one queued/processing job may exist per (subject, kind).
_ACTIVE_JOB_INDEX = """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_conversion_jobs_active
    ON conversion_jobs(subject_file_id, kind)
    WHERE status IN ('queued', 'processing')
"""

def _create_schema(cursor):
    """SQLite Schema"""
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS conversion_jobs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        subject_file_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        output_path TEXT,
        owner_id TEXT NOT NULL,
        source_path TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT
    )
    """)
    cursor.execute(_ACTIVE_JOB_INDEX)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_conversion_jobs_queue ON conversion_jobs(kind, status, created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_conversion_jobs_updated_at ON conversion_jobs(updated_at)")

def _create_core_tables(cursor):
    """Postgres Core Schema"""
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS conversion_jobs (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        subject_file_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        output_path TEXT,
        owner_id TEXT NOT NULL,
        source_path TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        started_at TIMESTAMP,
        finished_at TIMESTAMP
    )
    """)
    cursor.execute(_ACTIVE_JOB_INDEX)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_conversion_jobs_queue ON conversion_jobs(kind, status, created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_conversion_jobs_updated_at ON conversion_jobs(updated_at)")

# ─── Context Factories ───────────────────────────────────────────────────────
@contextmanager
def get_db_connection():
    """Sync connection for workers, recovery operations and route handlers"""
    if settings.DATABASE_URL:
        # Postgres
        global pg_pool
        if not pg_pool: _init_postgres_sync()
        conn = pg_pool.getconn()
        pg_conn = PostgresConnection(conn, pg_pool)
        try:
            yield pg_conn
        except Exception:
            conn.rollback()
            raise
        finally:
            pg_conn.close()
    else:
        # SQLite: busy timeout lets concurrent writers queue up instead of failing
        conn = sqlite3.connect(settings.SQLITE_PATH, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try: yield conn
        finally: conn.close()
