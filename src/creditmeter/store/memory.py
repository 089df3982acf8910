import asyncio
import copy
import threading
from typing import Mapping, Sequence

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


class MemoryRecordStore:
    """
    MemoryRecordStore: Is an in-process RecordStore with versioned
    records.

    The lock guards only the version compare-and-write, the same
    guarantee a durable store gives with a conditional write.
    Reads and writes are separated by a scheduling point so that
    concurrent callers interleave the way they would across a
    network round trip.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._records: "dict[tuple[str, str], Record]" = {}

    async def get(self, table: "str", key: "str") -> "Record | None":
        with self._lock:
            record = self._records.get((table, key))
            return copy.deepcopy(record) if record is not None else None

    async def put(self, table: "str", key: "str", item: "Record") -> "Record":
        """
        unconditionally creates or replaces a record.
        """
        with self._lock:
            current = self._records.get((table, key))
            version = current["version"] + 1 if current is not None else 1
            stored = {**strip_version(item), "version": version}
            self._records[(table, key)] = stored
            return copy.deepcopy(stored)

    async def delete(self, table: "str", key: "str") -> "None":
        with self._lock:
            self._records.pop((table, key), None)

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

        updated = mutator(copy.deepcopy(current))
        await asyncio.sleep(0)

        with self._lock:
            if not self._version_matches((table, key), current["version"]):
                return UpdateResult(UpdateStatus.CONFLICT)
            stored = {**strip_version(updated), "version": current["version"] + 1}
            self._records[(table, key)] = stored
            return UpdateResult(UpdateStatus.UPDATED, copy.deepcopy(stored))

    async def transact(
        self,
        specs: "Mapping[str, RecordSpec]",
        callback: "TransactCallback",
        max_attempts: "int" = 4,
    ) -> "list[Record]":
        """
        reads every record in specs, hands them to callback and
        writes the returned operations in one step, provided none of
        the records changed since they were read. Conflicts are
        retried immediately up to max_attempts.
        """
        for attempt in range(1, max_attempts + 1):
            fetched = {
                name: await self.get(spec.table, spec.key)
                for name, spec in specs.items()
            }
            ops = await callback(copy.deepcopy(fetched))
            if not ops:
                return []

            await asyncio.sleep(0)

            with self._lock:
                if all(
                    self._version_matches(
                        (spec.table, spec.key),
                        fetched[name]["version"] if fetched[name] else None,
                    )
                    for name, spec in specs.items()
                ):
                    return self._apply(specs, fetched, ops)

            logger.debug("store_transaction_conflict", attempt=attempt)

        raise StoreConflictError(
            f"transaction on {sorted(specs)} lost {max_attempts} times "
            "to concurrent writers"
        )

    async def close(self) -> "None":
        pass

    def _version_matches(
        self, key: "tuple[str, str]", expected: "int | None"
    ) -> "bool":
        current = self._records.get(key)
        if expected is None:
            return current is None
        return current is not None and current["version"] == expected

    def _apply(
        self,
        specs: "Mapping[str, RecordSpec]",
        fetched: "dict[str, Record | None]",
        ops: "Sequence[WriteOp]",
    ) -> "list[Record]":
        # caller holds the lock
        unknown = [op.name for op in ops if op.name not in specs]
        if unknown:
            raise ValueError(f"writes to {unknown!r} are not part of the transaction")

        written: "list[Record]" = []
        for op in ops:
            spec = specs[op.name]
            if isinstance(op, Delete):
                self._records.pop((spec.table, spec.key), None)
                continue
            assert isinstance(op, Put)
            prior = fetched[op.name]
            version = prior["version"] + 1 if prior is not None else 1
            stored = {**strip_version(op.item), "version": version}
            self._records[(spec.table, spec.key)] = stored
            written.append(copy.deepcopy(stored))
        return written
