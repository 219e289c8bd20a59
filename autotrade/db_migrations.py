"""Versioned SQLite schema migrations for the recommendation store."""
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    """Recommendation records: indexed query columns plus the JSON record body."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS recommendations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at_ms INTEGER NOT NULL,
            signal TEXT NOT NULL,
            confidence TEXT NOT NULL,
            entry_type TEXT,
            executed INTEGER NOT NULL DEFAULT 0,
            entry_order_id INTEGER,
            entry_order_status TEXT,
            oco_order_list_id INTEGER,
            exit_claimed_at_ms INTEGER,
            value TEXT NOT NULL,
            updated_at_ms INTEGER
        )
        """
    )


def _migration_1_down(conn):
    conn.cursor().execute("DROP TABLE IF EXISTS recommendations")


def _migration_2(conn):
    """Indices for reconciliation sweeps and uniqueness of exchange references."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_recommendations_created ON recommendations(created_at_ms)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_recommendations_pending "
        "ON recommendations(executed, signal, created_at_ms)"
    )
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_recommendations_entry_order "
        "ON recommendations(entry_order_id) WHERE entry_order_id IS NOT NULL"
    )
    # one OCO list can only ever belong to one recommendation
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_recommendations_oco_list "
        "ON recommendations(oco_order_list_id) WHERE oco_order_list_id IS NOT NULL"
    )


def _migration_2_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_recommendations_created")
    cur.execute("DROP INDEX IF EXISTS idx_recommendations_pending")
    cur.execute("DROP INDEX IF EXISTS uq_recommendations_entry_order")
    cur.execute("DROP INDEX IF EXISTS uq_recommendations_oco_list")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def _ensure_version_table(conn) -> None:
    conn.cursor().execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> Dict[int, str]:
    """Map of applied version -> applied_at timestamp."""
    _ensure_version_table(conn)
    cur = conn.cursor()
    cur.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    return {row[0]: row[1] for row in cur.fetchall()}


def pending_versions(conn) -> List[int]:
    applied = applied_versions(conn)
    return sorted(v for v in MIGRATIONS if v not in applied)


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Each migration runs in its own BEGIN IMMEDIATE transaction together with
    its schema_migrations row.

    Returns:
        The list of versions applied by this call
    """
    applied_now = []
    for v in pending_versions(conn):
        cur = conn.cursor()
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            cur.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise
    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    cur = conn.cursor()
    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        cur.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns its version or None if none applied."""
    applied = applied_versions(conn)
    if not applied:
        return None
    v = max(applied)
    rollback_migration(conn, v)
    return v
