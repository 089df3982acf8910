import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

Record = dict[str, Any]

Predicate = Callable[[Record], bool]
Mutator = Callable[[Record], Record]


class UpdateStatus(enum.Enum):
    UPDATED = "updated"
    # the record was read but the predicate rejected it
    PRECONDITION_FAILED = "precondition_failed"
    # another writer changed the record between read and write
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass(frozen=True, slots=True)
class UpdateResult:
    status: "UpdateStatus"
    # the stored record after the update, or the one that was read
    record: "Record | None" = None

    @property
    def updated(self) -> "bool":
        return self.status is UpdateStatus.UPDATED


@dataclass(frozen=True, slots=True)
class RecordSpec:
    table: "str"
    key: "str"


@dataclass(frozen=True, slots=True)
class Put:
    """
    writes item to the record named in the transaction spec. The
    record is created if it did not exist at read time.
    """

    name: "str"
    item: "Record" = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Delete:
    name: "str"


WriteOp = Put | Delete

TransactCallback = Callable[[dict[str, "Record | None"]], Awaitable[Sequence[WriteOp]]]


class RecordStore(Protocol):
    """
    RecordStore is the contract required of the durable store:
    single-item reads, single-item conditional writes and
    multi-item transactional writes.

    Every stored record carries a "version" field owned by the
    store. Writes are conditioned on the version read, so a write
    only lands if nobody else wrote in between.
    """

    async def get(self, table: "str", key: "str") -> "Record | None": ...

    async def put(self, table: "str", key: "str", item: "Record") -> "Record": ...

    async def delete(self, table: "str", key: "str") -> "None": ...

    async def conditional_update(
        self,
        table: "str",
        key: "str",
        predicate: "Predicate",
        mutator: "Mutator",
    ) -> "UpdateResult": ...

    async def transact(
        self,
        specs: "Mapping[str, RecordSpec]",
        callback: "TransactCallback",
        max_attempts: "int" = 4,
    ) -> "list[Record]": ...

    async def close(self) -> "None": ...


def strip_version(record: "Record") -> "Record":
    """
    returns a copy of record without store-managed fields.
    """
    return {k: v for k, v in record.items() if k != "version"}
