import sqlite3
import logging
import re
from contextlib import contextmanager
from typing import Any, List, Optional, Tuple

from beyanname_ai.core.config import settings

logger = logging.getLogger(__name__)

# Global Connection Pool
pg_pool = None

# ─── SYNC PostgreSQL Wrapper ─────────────────────────────────────────────────
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
    """Wraps psycopg2 connection"""
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

# ─── Initialization ──────────────────────────────────────────────────────────
def init_db():
    """Schema Creation - Runs on API startup and worker boot"""
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
    cursor = conn.cursor()
    _create_schema(cursor)
    conn.commit()
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

def _create_schema(cursor):
    """SQLite Schema"""
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        job_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        status TEXT NOT NULL,
        input_refs TEXT NOT NULL,
        input_payload TEXT NOT NULL,
        batch_completed INTEGER,
        batch_total INTEGER,
        result_text TEXT,
        artifact_url TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """)
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS analysis_failure_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL REFERENCES analysis_jobs(job_id),
        error_kind TEXT NOT NULL,
        error_message TEXT NOT NULL,
        error_detail TEXT,
        created_at TEXT NOT NULL
    )
    """)
    _create_indexes(cursor)

def _create_core_tables(cursor):
    """Postgres Core Schema"""
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        job_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        input_refs TEXT NOT NULL,
        input_payload TEXT NOT NULL,
        batch_completed INTEGER,
        batch_total INTEGER,
        result_text TEXT,
        artifact_url TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """)
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS analysis_failure_logs (
        id SERIAL PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES analysis_jobs(job_id),
        error_kind TEXT NOT NULL,
        error_message TEXT NOT NULL,
        error_detail TEXT,
        created_at TEXT NOT NULL
    )
    """)
    _create_indexes(cursor)

def _create_indexes(cursor):
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_owner_created ON analysis_jobs(owner_id, created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_updated ON analysis_jobs(status, updated_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_failure_logs_job ON analysis_failure_logs(job_id, id)")

# ─── Context Factory ─────────────────────────────────────────────────────────
@contextmanager
def get_db_connection():
    """Sync Connection (API handlers and Celery workers)"""
    if settings.DATABASE_URL:
        global pg_pool
        if not pg_pool: _init_postgres_sync()
        conn = pg_pool.getconn()
        pg_conn = PostgresConnection(conn, pg_pool)
        try:
            yield pg_conn
        except Exception:
            pg_conn.rollback()
            raise
        finally:
            pg_conn.close()
    else:
        conn = sqlite3.connect(settings.SQLITE_PATH, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
