"""SQLite schema definitions for quiz sessions and attribution analytics.

Database: data/quiz_analytics.db (WAL mode)
Tables: quiz_sessions, answer_selections, order_attributions,
analytics_summaries, processed_facts, sync_watermarks, sync_runs
"""
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_timestamp(value: datetime) -> str:
    """Serialize an aware datetime as a fixed-width, sortable UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    """Parse a timestamp written by to_db_timestamp."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection with WAL journaling and foreign keys enabled."""
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_database(db_path: str | Path) -> None:
    """Initialize the analytics database with schema.

    Creates tables if they don't exist.
    Enables WAL mode for concurrent reads.

    Args:
        db_path: Path to SQLite database file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = connect(db_path)

    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        current_version = cursor.fetchone()[0] or 0

        if current_version < SCHEMA_VERSION:
            _apply_schema(conn)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info("Database schema initialized (version %s)", SCHEMA_VERSION)
        else:
            logger.debug("Database schema up to date (version %s)", current_version)

    finally:
        conn.close()


def _apply_schema(conn: sqlite3.Connection) -> None:
    """Apply database schema.

    Args:
        conn: SQLite connection (in transaction)
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS quiz_sessions (
            session_id TEXT PRIMARY KEY,
            shop TEXT NOT NULL,
            quiz_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            is_completed INTEGER NOT NULL DEFAULT 0,
            customer_id TEXT,
            page_url TEXT,
            user_agent TEXT,
            CHECK ((is_completed = 1) = (completed_at IS NOT NULL))
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_sessions_shop_started
        ON quiz_sessions(shop, started_at)
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_sessions_customer
        ON quiz_sessions(shop, customer_id)
        WHERE customer_id IS NOT NULL
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS answer_selections (
            session_id TEXT NOT NULL,
            question_id TEXT NOT NULL,
            answer_id TEXT NOT NULL,
            selected_at TEXT NOT NULL,
            PRIMARY KEY (session_id, question_id),
            FOREIGN KEY (session_id) REFERENCES quiz_sessions(session_id)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS order_attributions (
            order_id TEXT NOT NULL,
            shop TEXT NOT NULL,
            order_created_at TEXT NOT NULL,
            matched_session_id TEXT,
            quiz_id TEXT,
            tier TEXT NOT NULL,
            matched_at TEXT NOT NULL,
            order_total REAL NOT NULL DEFAULT 0,
            currency TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (order_id, shop)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_attributions_created
        ON order_attributions(shop, order_created_at)
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_attributions_session
        ON order_attributions(matched_session_id)
        WHERE matched_session_id IS NOT NULL
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS analytics_summaries (
            shop TEXT NOT NULL,
            quiz_id TEXT NOT NULL,
            summary_date TEXT NOT NULL,
            session_count INTEGER NOT NULL DEFAULT 0,
            completed_count INTEGER NOT NULL DEFAULT 0,
            attributed_order_count INTEGER NOT NULL DEFAULT 0,
            attributed_revenue REAL NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (shop, quiz_id, summary_date)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS processed_facts (
            shop TEXT NOT NULL,
            fact_kind TEXT NOT NULL,
            fact_id TEXT NOT NULL,
            quiz_id TEXT NOT NULL,
            summary_date TEXT NOT NULL,
            revenue REAL NOT NULL DEFAULT 0,
            processed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (shop, fact_kind, fact_id)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_watermarks (
            shop TEXT PRIMARY KEY,
            window_end TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            shop TEXT NOT NULL,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            status TEXT NOT NULL,
            details TEXT,
            finished_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_sync_runs_shop
        ON sync_runs(shop, finished_at)
        """
    )
