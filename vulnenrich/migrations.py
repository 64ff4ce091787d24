"""Schema migrations for the enrichment store.

Migrations are applied in order and tracked with SQLite's
``PRAGMA user_version``. Each migration runs in its own transaction, so a
failure leaves the database at the previous version.
"""

import logging
import sqlite3

import aiosqlite

from .exceptions import PersistError

logger = logging.getLogger(__name__)

# 1: operation log and records, as they existed before enrichments.
_V1 = [
    """
    CREATE TABLE IF NOT EXISTS update_operation (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        ref         TEXT NOT NULL UNIQUE,
        updater     TEXT NOT NULL,
        fingerprint TEXT NOT NULL DEFAULT '',
        date        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS update_operation_updater_idx ON update_operation (updater)",
    """
    CREATE TABLE IF NOT EXISTS record (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        operation_id INTEGER NOT NULL REFERENCES update_operation (id) ON DELETE CASCADE,
        hash         TEXT NOT NULL,
        tags         TEXT NOT NULL,
        payload      BLOB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS record_operation_idx ON record (operation_id)",
]

# 2: split the log by kind, add generation cutover and the tag index.
_V2 = [
    "ALTER TABLE update_operation ADD COLUMN kind TEXT NOT NULL DEFAULT 'vulnerability'",
    "UPDATE update_operation SET kind = 'vulnerability'",
    "ALTER TABLE update_operation ADD COLUMN mime_label TEXT NOT NULL DEFAULT ''",
    "ALTER TABLE update_operation ADD COLUMN superseded INTEGER NOT NULL DEFAULT 0",
    """
    UPDATE update_operation SET superseded = 1
    WHERE id NOT IN (SELECT MAX(id) FROM update_operation GROUP BY updater, kind)
    """,
    """
    CREATE UNIQUE INDEX update_operation_current_idx
    ON update_operation (updater, kind) WHERE superseded = 0
    """,
    "CREATE INDEX update_operation_kind_idx ON update_operation (kind, updater, id)",
    """
    CREATE TABLE record_tag (
        tag       TEXT NOT NULL,
        record_id INTEGER NOT NULL REFERENCES record (id) ON DELETE CASCADE,
        PRIMARY KEY (tag, record_id)
    ) WITHOUT ROWID
    """,
    "CREATE INDEX record_tag_record_idx ON record_tag (record_id)",
    """
    INSERT OR IGNORE INTO record_tag (tag, record_id)
    SELECT je.value, r.id FROM record AS r, json_each(r.tags) AS je
    """,
]

MIGRATIONS: list[list[str]] = [_V1, _V2]

SCHEMA_VERSION = len(MIGRATIONS)


async def current_version(conn: aiosqlite.Connection) -> int:
    rows = await conn.execute_fetchall("PRAGMA user_version")
    return int(list(rows)[0][0])


async def migrate(conn: aiosqlite.Connection, target: int = SCHEMA_VERSION) -> int:
    """Apply pending migrations up to ``target``.

    The connection must be in autocommit mode (``isolation_level=None``).

    Args:
        conn: Open database connection.
        target: Version to migrate to (defaults to the latest).

    Returns:
        The schema version after migrating.

    Raises:
        PersistError: If the database is newer than this code, or a
            migration fails (that migration is rolled back).
    """
    version = await current_version(conn)
    if version > SCHEMA_VERSION:
        raise PersistError(f"database schema version {version} is newer than supported {SCHEMA_VERSION}")

    while version < target:
        statements = MIGRATIONS[version]
        nxt = version + 1
        try:
            await conn.execute("BEGIN IMMEDIATE")
            for stmt in statements:
                await conn.execute(stmt)
            await conn.execute(f"PRAGMA user_version = {nxt}")
            await conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                await conn.execute("ROLLBACK")
            raise PersistError(f"migration {nxt} failed: {exc}") from exc
        logger.info("Applied store migration %d", nxt)
        version = nxt
    return version
