from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterator, Mapping

import polars as pl

from .errors import InvalidRecordError

if TYPE_CHECKING:
    from .config import TableConfig

CHANGE_TYPE_COL = "_change_type"
PAYLOAD_COL = "_payload"

_PRIMITIVES = (bool, int, float, str)


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "Operation":
        if isinstance(value, Operation):
            return value
        if not isinstance(value, str):
            raise InvalidRecordError(f"Unrecognized operation: {value!r}")
        normalized = value.strip()
        resolved = _OPERATION_ALIASES.get(normalized) or _OPERATION_ALIASES.get(normalized.lower())
        if resolved is None:
            raise InvalidRecordError(f"Unrecognized operation: {value!r}")
        return resolved

    @property
    def is_delete(self) -> bool:
        return self is Operation.DELETE


_OPERATION_ALIASES: dict[str, Operation] = {
    "insert": Operation.INSERT,
    "i": Operation.INSERT,
    "+I": Operation.INSERT,
    "c": Operation.INSERT,
    "create": Operation.INSERT,
    "update": Operation.UPDATE,
    "u": Operation.UPDATE,
    "+U": Operation.UPDATE,
    "update_postimage": Operation.UPDATE,
    "upsert": Operation.UPDATE,
    "delete": Operation.DELETE,
    "d": Operation.DELETE,
    "-D": Operation.DELETE,
    "remove": Operation.DELETE,
}


@dataclass(frozen=True, eq=False)
class ChangeRecord:
    """A single keyed change.

    Equality covers key, operation, order value and payload. The partition is
    carried as metadata only.
    """

    key: str
    order_value: int | float
    partition: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    operation: Operation = Operation.INSERT

    def __post_init__(self) -> None:
        if not isinstance(self.key, str) or not self.key:
            raise InvalidRecordError(f"Record key must be a non-empty string, got {self.key!r}")
        object.__setattr__(self, "operation", Operation.parse(self.operation))
        if isinstance(self.order_value, bool) or not isinstance(self.order_value, (int, float)):
            raise InvalidRecordError(
                f"Order value for key {self.key!r} must be numeric, got {self.order_value!r}"
            )
        if not isinstance(self.partition, str):
            raise InvalidRecordError(
                f"Partition for key {self.key!r} must be a string, got {self.partition!r}"
            )
        if self.payload is None:
            payload: dict[str, Any] = {}
        elif isinstance(self.payload, Mapping):
            payload = {}
            for name, value in self.payload.items():
                if not isinstance(name, str) or not name:
                    raise InvalidRecordError(f"Payload field names must be strings, got {name!r}")
                if value is None:
                    continue
                if not isinstance(value, _PRIMITIVES):
                    raise InvalidRecordError(
                        f"Payload field {name!r} holds unsupported type {type(value).__name__}"
                    )
                payload[name] = value
        else:
            raise InvalidRecordError(f"Payload must be a mapping, got {type(self.payload).__name__}")
        object.__setattr__(self, "payload", MappingProxyType(payload))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChangeRecord):
            return NotImplemented
        return (
            self.key == other.key
            and self.operation is other.operation
            and self.order_value == other.order_value
            and dict(self.payload) == dict(other.payload)
        )

    def __hash__(self) -> int:
        return hash((self.key, self.operation, self.order_value))

    def to_row(self, config: "TableConfig") -> dict[str, Any]:
        """Flat storage row.

        Payload fields become columns, except names that clash with the key,
        precombine or partition field or start with ``_``. The full payload is
        also kept JSON-encoded in ``_payload`` so it reads back unchanged.
        """
        row: dict[str, Any] = {}
        if not self.operation.is_delete:
            for name, value in self.payload.items():
                if name in config.reserved_columns or name.startswith("_"):
                    continue
                row[name] = value
        row[config.record_key_field] = self.key
        row[config.precombine_field] = self.order_value
        row[config.partition_field] = self.partition
        row[CHANGE_TYPE_COL] = self.operation.value
        if not self.operation.is_delete:
            row[PAYLOAD_COL] = json.dumps(dict(self.payload), sort_keys=True)
        return row

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "order_value": self.order_value,
            "partition": self.partition,
            "payload": dict(self.payload),
            "operation": self.operation.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChangeRecord":
        try:
            return cls(
                key=payload["key"],
                order_value=payload["order_value"],
                partition=payload.get("partition", ""),
                payload=payload.get("payload") or {},
                operation=payload["operation"],
            )
        except KeyError as exc:
            raise InvalidRecordError(f"Record is missing field {exc.args[0]!r}") from exc


@dataclass(frozen=True)
class Batch:
    batch_id: int
    records: tuple[ChangeRecord, ...]
    created_at: float = field(default_factory=time.time)
    terminal: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self.records)


def records_from_frame(
    df: pl.DataFrame | pl.LazyFrame,
    config: "TableConfig",
    *,
    change_type_col: str = CHANGE_TYPE_COL,
    change_type_map: dict[str, str] | None = None,
) -> list[ChangeRecord]:
    """Convert a change frame into records, preserving row order."""
    if isinstance(df, pl.LazyFrame):
        df = df.collect()
    required = [config.record_key_field, config.precombine_field, change_type_col]
    for column in required:
        if column not in df.columns:
            raise InvalidRecordError(f"Missing change column: {column}")
    payload_cols = [
        col
        for col in df.columns
        if col not in config.reserved_columns and not col.startswith("_")
    ]
    mapping = dict(change_type_map or {})
    records: list[ChangeRecord] = []
    for row in df.iter_rows(named=True):
        change_type = row[change_type_col]
        change_type = mapping.get(change_type, change_type)
        partition = row.get(config.partition_field)
        records.append(
            ChangeRecord(
                key=row[config.record_key_field],
                order_value=row[config.precombine_field],
                partition="" if partition is None else str(partition),
                payload={col: row[col] for col in payload_cols},
                operation=change_type,
            )
        )
    return records
