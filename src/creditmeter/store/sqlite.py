import asyncio
import copy
import json
from pathlib import Path
from typing import Mapping, Sequence

import aiosqlite
import structlog

from creditmeter.errors import StoreConflictError
from creditmeter.store.base import (
    Delete,
    Mutator,
    Predicate,
    Put,
    Record,
    RecordSpec,
    TransactCallback,
    UpdateResult,
    UpdateStatus,
    WriteOp,
    strip_version,
)

logger = structlog.get_logger()


class SQLiteRecordStore:
    """
    SQLiteRecordStore is a durable RecordStore backed by a single
    SQLite table. Every write carries a "version = ?" condition,
    so concurrent writers across processes sharing the file are
    detected by the database rather than by in-process state.
    """

    def __init__(
        self,
        database_path: "str",
        *,
        busy_timeout_ms: "int" = 5000,
    ) -> "None":
        if busy_timeout_ms <= 0:
            raise ValueError("busy_timeout_ms must be > 0")

        self._database_path = Path(database_path)
        self._busy_timeout_ms = busy_timeout_ms
        self._connection: "aiosqlite.Connection | None" = None
        self._connection_lock: "asyncio.Lock" = asyncio.Lock()
        # serializes use of the shared connection, one statement
        # group at a time
        self._lock: "asyncio.Lock" = asyncio.Lock()

    async def get(self, table: "str", key: "str") -> "Record | None":
        connection = await self._ensure_connection()
        async with self._lock:
            return await self._fetch(connection, table, key)

    async def put(self, table: "str", key: "str", item: "Record") -> "Record":
        connection = await self._ensure_connection()
        data = strip_version(item)
        async with self._lock:
            await connection.execute("BEGIN IMMEDIATE")
            try:
                await connection.execute(
                    """
                    INSERT INTO records (tbl, key, version, data)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(tbl, key) DO UPDATE SET
                        data = excluded.data,
                        version = records.version + 1
                    """,
                    (table, key, json.dumps(data)),
                )
                stored = await self._fetch(connection, table, key)
                await connection.commit()
            except Exception:
                await _rollback_quietly(connection)
                raise
        assert stored is not None
        return stored

    async def delete(self, table: "str", key: "str") -> "None":
        connection = await self._ensure_connection()
        async with self._lock:
            await connection.execute(
                "DELETE FROM records WHERE tbl = ? AND key = ?", (table, key)
            )
            await connection.commit()

    async def conditional_update(
        self,
        table: "str",
        key: "str",
        predicate: "Predicate",
        mutator: "Mutator",
    ) -> "UpdateResult":
        current = await self.get(table, key)
        if current is None:
            return UpdateResult(UpdateStatus.NOT_FOUND)
        if not predicate(current):
            return UpdateResult(UpdateStatus.PRECONDITION_FAILED, current)

        updated = strip_version(mutator(copy.deepcopy(current)))
        connection = await self._ensure_connection()
        async with self._lock:
            cursor = await connection.execute(
                """
                UPDATE records SET data = ?, version = version + 1
                WHERE tbl = ? AND key = ? AND version = ?
                """,
                (json.dumps(updated), table, key, current["version"]),
            )
            changed = cursor.rowcount
            await cursor.close()
            await connection.commit()

        if changed == 0:
            return UpdateResult(UpdateStatus.CONFLICT)
        return UpdateResult(
            UpdateStatus.UPDATED, {**updated, "version": current["version"] + 1}
        )

    async def transact(
        self,
        specs: "Mapping[str, RecordSpec]",
        callback: "TransactCallback",
        max_attempts: "int" = 4,
    ) -> "list[Record]":
        connection = await self._ensure_connection()

        for attempt in range(1, max_attempts + 1):
            fetched = {
                name: await self.get(spec.table, spec.key)
                for name, spec in specs.items()
            }
            ops = await callback(copy.deepcopy(fetched))
            if not ops:
                return []

            unknown = [op.name for op in ops if op.name not in specs]
            if unknown:
                raise ValueError(
                    f"writes to {unknown!r} are not part of the transaction"
                )

            async with self._lock:
                await connection.execute("BEGIN IMMEDIATE")
                try:
                    written = await self._write_all(connection, specs, fetched, ops)
                    if written is None:
                        await connection.rollback()
                    else:
                        await connection.commit()
                        return written
                except Exception:
                    await _rollback_quietly(connection)
                    raise

            logger.debug("store_transaction_conflict", attempt=attempt)

        raise StoreConflictError(
            f"transaction on {sorted(specs)} lost {max_attempts} times "
            "to concurrent writers"
        )

    async def close(self) -> "None":
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None

    async def _write_all(
        self,
        connection: "aiosqlite.Connection",
        specs: "Mapping[str, RecordSpec]",
        fetched: "dict[str, Record | None]",
        ops: "Sequence[WriteOp]",
    ) -> "list[Record] | None":
        """
        applies ops inside an open transaction. Returns None as soon
        as one conditional statement matches no row.
        """
        written: "list[Record]" = []
        for op in ops:
            spec = specs[op.name]
            prior = fetched[op.name]

            if isinstance(op, Delete):
                if prior is None:
                    continue
                cursor = await connection.execute(
                    "DELETE FROM records WHERE tbl = ? AND key = ? AND version = ?",
                    (spec.table, spec.key, prior["version"]),
                )
            else:
                assert isinstance(op, Put)
                data = strip_version(op.item)
                if prior is None:
                    cursor = await connection.execute(
                        """
                        INSERT INTO records (tbl, key, version, data)
                        VALUES (?, ?, 1, ?)
                        ON CONFLICT(tbl, key) DO NOTHING
                        """,
                        (spec.table, spec.key, json.dumps(data)),
                    )
                    version = 1
                else:
                    cursor = await connection.execute(
                        """
                        UPDATE records SET data = ?, version = version + 1
                        WHERE tbl = ? AND key = ? AND version = ?
                        """,
                        (json.dumps(data), spec.table, spec.key, prior["version"]),
                    )
                    version = prior["version"] + 1
                written.append({**data, "version": version})

            changed = cursor.rowcount
            await cursor.close()
            if changed == 0:
                return None
        return written

    async def _fetch(
        self,
        connection: "aiosqlite.Connection",
        table: "str",
        key: "str",
    ) -> "Record | None":
        cursor = await connection.execute(
            "SELECT version, data FROM records WHERE tbl = ? AND key = ?",
            (table, key),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        record: "Record" = json.loads(row["data"])
        record["version"] = row["version"]
        return record

    async def _ensure_connection(self) -> "aiosqlite.Connection":
        if self._connection is not None:
            return self._connection

        async with self._connection_lock:
            if self._connection is None:
                self._database_path.parent.mkdir(parents=True, exist_ok=True)
                connection = await aiosqlite.connect(self._database_path)
                connection.row_factory = aiosqlite.Row
                try:
                    await self._initialize_connection(connection)
                except Exception:
                    await connection.close()
                    raise
                self._connection = connection
        return self._connection

    async def _initialize_connection(self, connection: "aiosqlite.Connection") -> "None":
        await connection.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms};")
        await connection.execute("PRAGMA journal_mode = WAL;")
        await connection.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                tbl TEXT NOT NULL,
                key TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (tbl, key)
            )
            """
        )
        await connection.commit()


async def _rollback_quietly(connection: "aiosqlite.Connection") -> "None":
    try:
        await connection.rollback()
    except aiosqlite.OperationalError:
        return
