"""Versioned, tag-indexed persistence for enrichment and vulnerability data.

Every commit writes a new *generation* (an ``update_operation`` row plus
its records) and supersedes the source's previous generation inside one
SQLite transaction. Readers run against the last committed snapshot (WAL
mode), so a half-written batch is never observable.

Usage::

    store = EnrichmentStore(Path("vulnenrich.db"))
    await store.initialize()
    ref = await store.commit("nvd", "nvd", fingerprint, records)
    hits = await store.query("nvd", ["CVE-2024-12345"])
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

import aiosqlite

from .exceptions import PersistError
from .migrations import migrate
from .models import EnrichmentRecord, UpdateDiff, UpdateKind, UpdateOperation
from .tags import normalize_tags

logger = logging.getLogger(__name__)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds.
_CHUNK = 500

_OPERATION_COLUMNS = "ref, updater, kind, fingerprint, mime_label, date, superseded"


def _chunks(items: Sequence[str], size: int = _CHUNK) -> Iterable[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _row_to_operation(row: Any) -> UpdateOperation:
    ref, updater, kind, fingerprint, mime_label, date, superseded = row
    return UpdateOperation(
        ref=ref,
        source_name=updater,
        kind=UpdateKind(kind),
        fingerprint=fingerprint,
        mime_label=mime_label,
        created_at=dt.datetime.fromisoformat(date),
        superseded=bool(superseded),
    )


def _row_to_record(tags: str, payload: bytes) -> EnrichmentRecord:
    return EnrichmentRecord(tags=frozenset(json.loads(tags)), payload=bytes(payload))


class EnrichmentStore:
    """SQLite-backed store with atomic generation cutover.

    One short-lived connection is opened per operation. Write
    transactions start with ``BEGIN IMMEDIATE``, which makes SQLite's
    database lock the only writer exclusion; readers never block writers.

    Attributes:
        path: Database file.
        busy_timeout: Seconds a writer waits for the database lock.
    """

    def __init__(self, path: Path | str, busy_timeout: float = 5.0):
        self.path = Path(path)
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await aiosqlite.connect(str(self.path), timeout=self.busy_timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise PersistError(f"cannot open store {self.path}: {exc}") from exc
        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            await conn.close()

    async def initialize(self) -> int:
        """Create the database if needed and apply pending migrations.

        Returns:
            The schema version.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as conn:
            await conn.execute("PRAGMA journal_mode = WAL")
            version = await migrate(conn)
        logger.debug("Store %s at schema version %d", self.path, version)
        return version

    # ─── Writes ──────────────────────────────────────────────────────────────

    async def commit(
        self,
        source_name: str,
        mime_label: str,
        fingerprint: str,
        records: Iterable[EnrichmentRecord],
    ) -> str:
        """Commit a new enrichment generation for ``source_name``.

        Inserts the operation and all records, and supersedes the previous
        current enrichment operation of the source, atomically.

        Args:
            source_name: Owning adapter name.
            mime_label: Label the records will be queried under.
            fingerprint: Marker of the fetched snapshot.
            records: Parsed records.

        Returns:
            Ref of the new operation.

        Raises:
            PersistError: The transaction failed and was rolled back.
        """
        return await self._commit(UpdateKind.ENRICHMENT, source_name, mime_label, fingerprint, records)

    async def commit_vulnerabilities(
        self,
        source_name: str,
        fingerprint: str,
        records: Iterable[EnrichmentRecord],
    ) -> str:
        """Commit a new vulnerability generation for ``source_name``."""
        return await self._commit(UpdateKind.VULNERABILITY, source_name, "", fingerprint, records)

    async def _commit(
        self,
        kind: UpdateKind,
        source_name: str,
        mime_label: str,
        fingerprint: str,
        records: Iterable[EnrichmentRecord],
    ) -> str:
        batch: dict[str, EnrichmentRecord] = {}
        for rec in records:
            batch.setdefault(rec.digest(), rec)

        ref = str(uuid.uuid4())
        created = dt.datetime.now(dt.timezone.utc).isoformat()

        async with self._connect() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                await conn.execute(
                    "UPDATE update_operation SET superseded = 1 WHERE updater = ? AND kind = ? AND superseded = 0",
                    (source_name, kind.value),
                )
                cur = await conn.execute(
                    "INSERT INTO update_operation (ref, updater, fingerprint, date, kind, mime_label, superseded)"
                    " VALUES (?, ?, ?, ?, ?, ?, 0)",
                    (ref, source_name, fingerprint, created, kind.value, mime_label),
                )
                op_id = cur.lastrowid
                await conn.executemany(
                    "INSERT INTO record (operation_id, hash, tags, payload) VALUES (?, ?, ?, ?)",
                    [
                        (op_id, digest, json.dumps(rec.sorted_tags()), rec.payload)
                        for digest, rec in batch.items()
                    ],
                )
                ids = {
                    digest: rid
                    for rid, digest in await conn.execute_fetchall(
                        "SELECT id, hash FROM record WHERE operation_id = ?", (op_id,)
                    )
                }
                await conn.executemany(
                    "INSERT INTO record_tag (tag, record_id) VALUES (?, ?)",
                    [(tag, ids[digest]) for digest, rec in batch.items() for tag in rec.sorted_tags()],
                )
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._rollback(conn)
                raise PersistError(f"commit for {source_name} ({kind.value}) failed: {exc}", source_name) from exc
            except BaseException:
                # Cancellation or a bug: nothing may be left half-written.
                await self._rollback(conn)
                raise

        logger.info("Committed %s %s operation %s with %d records", source_name, kind.value, ref, len(batch))
        return ref

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection) -> None:
        if conn.in_transaction:
            await conn.execute("ROLLBACK")

    async def delete_operations(self, *refs: str) -> int:
        """Delete superseded operations and their records.

        Raises:
            PersistError: If any ref is a current operation.

        Returns:
            Number of operations deleted.
        """
        if not refs:
            return 0
        async with self._connect() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                placeholders = ",".join("?" * len(refs))
                current = await conn.execute_fetchall(
                    f"SELECT ref FROM update_operation WHERE superseded = 0 AND ref IN ({placeholders})", refs
                )
                if current:
                    await self._rollback(conn)
                    raise PersistError(f"refusing to delete current operation(s): {[r[0] for r in current]}")
                cur = await conn.execute(f"DELETE FROM update_operation WHERE ref IN ({placeholders})", refs)
                deleted = cur.rowcount
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._rollback(conn)
                raise PersistError(f"delete failed: {exc}") from exc
        return deleted

    async def gc(self, keep: int) -> int:
        """Delete all but the ``keep`` newest operations per source and kind.

        The current operation always survives.

        Args:
            keep: Generations to retain per ``(source, kind)``; at least 1.

        Returns:
            Number of operations deleted.
        """
        if keep < 1:
            raise ValueError("keep must be at least 1")
        async with self._connect() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                cur = await conn.execute(
                    """
                    DELETE FROM update_operation WHERE superseded = 1 AND id IN (
                        SELECT id FROM (
                            SELECT id, ROW_NUMBER() OVER (PARTITION BY updater, kind ORDER BY id DESC) AS rn
                            FROM update_operation
                        ) WHERE rn > ?
                    )
                    """,
                    (keep,),
                )
                deleted = cur.rowcount
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._rollback(conn)
                raise PersistError(f"gc failed: {exc}") from exc
        if deleted:
            logger.info("GC removed %d superseded operation(s)", deleted)
        return deleted

    # ─── Reads ───────────────────────────────────────────────────────────────

    async def query(self, mime_label: str, tags: Iterable[str]) -> list[EnrichmentRecord]:
        """Return current records under ``mime_label`` sharing any of ``tags``.

        Each matching record is returned once, ordered by insertion.

        Args:
            mime_label: Label the records were committed under.
            tags: Requested tags (duplicates are ignored).

        Returns:
            Matching records.
        """
        wanted = normalize_tags(tags)
        if not wanted:
            return []

        found: dict[int, EnrichmentRecord] = {}
        async with self._connect() as conn:
            # One read transaction so all chunks see the same snapshot.
            await conn.execute("BEGIN")
            try:
                for chunk in _chunks(wanted):
                    placeholders = ",".join("?" * len(chunk))
                    rows = await conn.execute_fetchall(
                        f"""
                        SELECT r.id, r.tags, r.payload
                        FROM record AS r
                        JOIN update_operation AS o ON o.id = r.operation_id
                        WHERE o.kind = ? AND o.superseded = 0 AND o.mime_label = ?
                          AND r.id IN (SELECT record_id FROM record_tag WHERE tag IN ({placeholders}))
                        """,
                        (UpdateKind.ENRICHMENT.value, mime_label, *chunk),
                    )
                    for rid, rtags, payload in rows:
                        if rid not in found:
                            found[rid] = _row_to_record(rtags, payload)
            finally:
                await self._rollback(conn)
        return [found[rid] for rid in sorted(found)]

    async def list_operations(
        self, kind: UpdateKind | str | None = None, *source_names: str
    ) -> dict[str, list[UpdateOperation]]:
        """List operations per source, newest first.

        Args:
            kind: Restrict to one kind; ``None`` (or ``""``) returns both.
            source_names: Restrict to these sources; none returns all.

        Returns:
            Source name -> operations, including superseded ones.
        """
        sql = f"SELECT {_OPERATION_COLUMNS} FROM update_operation"
        clauses: list[str] = []
        params: list[Any] = []
        if kind:
            clauses.append("kind = ?")
            params.append(UpdateKind(kind).value)
        if source_names:
            clauses.append(f"updater IN ({','.join('?' * len(source_names))})")
            params.extend(source_names)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id DESC"

        async with self._connect() as conn:
            rows = await conn.execute_fetchall(sql, params)

        out: dict[str, list[UpdateOperation]] = {}
        for row in rows:
            op = _row_to_operation(row)
            out.setdefault(op.source_name, []).append(op)
        return out

    async def latest_ref(self, kind: UpdateKind | str) -> str | None:
        """Ref of the most recently created current operation of ``kind``."""
        async with self._connect() as conn:
            rows = await conn.execute_fetchall(
                "SELECT ref FROM update_operation WHERE kind = ? AND superseded = 0 ORDER BY id DESC LIMIT 1",
                (UpdateKind(kind).value,),
            )
        rows = list(rows)
        return rows[0][0] if rows else None

    async def latest_refs(self, kind: UpdateKind | str) -> dict[str, UpdateOperation]:
        """Current operation of ``kind`` per source."""
        async with self._connect() as conn:
            rows = await conn.execute_fetchall(
                f"SELECT {_OPERATION_COLUMNS} FROM update_operation WHERE kind = ? AND superseded = 0 ORDER BY id",
                (UpdateKind(kind).value,),
            )
        return {op.source_name: op for op in map(_row_to_operation, rows)}

    async def get_operation(self, ref: str) -> UpdateOperation | None:
        async with self._connect() as conn:
            rows = list(
                await conn.execute_fetchall(f"SELECT {_OPERATION_COLUMNS} FROM update_operation WHERE ref = ?", (ref,))
            )
        return _row_to_operation(rows[0]) if rows else None

    async def record_count(self, ref: str) -> int:
        async with self._connect() as conn:
            rows = await conn.execute_fetchall(
                "SELECT COUNT(*) FROM record AS r JOIN update_operation AS o ON o.id = r.operation_id WHERE o.ref = ?",
                (ref,),
            )
        return int(list(rows)[0][0])

    async def diff(self, prev_ref: str | None, cur_ref: str) -> UpdateDiff:
        """Compare the records of two vulnerability operations.

        Args:
            prev_ref: Older operation, or ``None`` to diff against nothing.
            cur_ref: Newer operation.

        Returns:
            ``UpdateDiff`` with records added in and removed by ``cur_ref``.

        Raises:
            PersistError: If a ref is unknown or not a vulnerability
                operation.
        """
        async with self._connect() as conn:
            await conn.execute("BEGIN")
            try:
                cur = await self._vulnerability_operation(conn, cur_ref)
                prev = await self._vulnerability_operation(conn, prev_ref) if prev_ref else None
                cur_records = await self._records_by_hash(conn, cur_ref)
                prev_records = await self._records_by_hash(conn, prev_ref) if prev_ref else {}
            finally:
                await self._rollback(conn)

        return UpdateDiff(
            prev=prev,
            cur=cur,
            added=[r for h, r in cur_records.items() if h not in prev_records],
            removed=[r for h, r in prev_records.items() if h not in cur_records],
        )

    @staticmethod
    async def _vulnerability_operation(conn: aiosqlite.Connection, ref: str) -> UpdateOperation:
        rows = list(
            await conn.execute_fetchall(f"SELECT {_OPERATION_COLUMNS} FROM update_operation WHERE ref = ?", (ref,))
        )
        if not rows:
            raise PersistError(f"unknown operation {ref}")
        op = _row_to_operation(rows[0])
        if op.kind is not UpdateKind.VULNERABILITY:
            raise PersistError(f"operation {ref} is not a vulnerability operation", op.source_name)
        return op

    @staticmethod
    async def _records_by_hash(conn: aiosqlite.Connection, ref: str) -> dict[str, EnrichmentRecord]:
        rows = await conn.execute_fetchall(
            """
            SELECT r.hash, r.tags, r.payload FROM record AS r
            JOIN update_operation AS o ON o.id = r.operation_id
            WHERE o.ref = ? ORDER BY r.id
            """,
            (ref,),
        )
        return {h: _row_to_record(tags, payload) for h, tags, payload in rows}
