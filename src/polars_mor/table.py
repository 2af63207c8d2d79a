from __future__ import annotations

import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterator, Mapping

import polars as pl

from .cdc import DELETED_COL
from .records import PAYLOAD_COL, ChangeRecord

if TYPE_CHECKING:
    from .config import TableConfig


@dataclass(frozen=True)
class TableEntry:
    key: str
    order_value: int | float
    partition: str
    payload: Mapping[str, Any] | None
    deleted: bool = False

    @classmethod
    def from_record(cls, record: ChangeRecord) -> "TableEntry":
        if record.operation.is_delete:
            return cls(record.key, record.order_value, record.partition, None, deleted=True)
        return cls(record.key, record.order_value, record.partition, record.payload)


def supersedes(record: ChangeRecord, current: TableEntry | None) -> bool:
    """Return True when ``record`` should replace ``current``.

    Newer-or-equal order values win. A tombstone is only lifted by a strictly
    newer insert or update.
    """
    if current is None:
        return True
    if current.deleted and not record.operation.is_delete:
        return record.order_value > current.order_value
    return record.order_value >= current.order_value


class TableState:
    """Resolved view of the table: key -> latest entry, tombstones included."""

    def __init__(self, entries: Mapping[str, TableEntry] | None = None) -> None:
        self._entries: dict[str, TableEntry] = dict(entries or {})

    def entry(self, key: str) -> TableEntry | None:
        return self._entries.get(key)

    def get(self, key: str) -> Mapping[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None or entry.deleted:
            return None
        return entry.payload

    def keys(self) -> list[str]:
        return [key for key, entry in self._entries.items() if not entry.deleted]

    def tombstones(self) -> list[str]:
        return [key for key, entry in self._entries.items() if entry.deleted]

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.deleted

    def __len__(self) -> int:
        return sum(1 for entry in self._entries.values() if not entry.deleted)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TableState):
            return NotImplemented
        return self.snapshot() == other.snapshot()

    def snapshot(self) -> dict[str, tuple[dict[str, Any], int | float, str]]:
        """Live rows as plain values: key -> (payload, order value, partition)."""
        return {
            key: (dict(entry.payload or {}), entry.order_value, entry.partition)
            for key, entry in self._entries.items()
            if not entry.deleted
        }

    def apply_committed(self, entries: Mapping[str, TableEntry]) -> None:
        self._entries.update(entries)

    def to_frame(self, config: "TableConfig") -> pl.DataFrame:
        rows: list[dict[str, Any]] = []
        for key, entry in self._entries.items():
            if entry.deleted:
                continue
            row = dict(entry.payload or {})
            row[config.record_key_field] = key
            row[config.precombine_field] = entry.order_value
            row[config.partition_field] = entry.partition
            rows.append(row)
        if not rows:
            return pl.DataFrame()
        return pl.DataFrame(rows, infer_schema_length=None)

    @classmethod
    def from_frame(cls, df: pl.DataFrame, config: "TableConfig") -> "TableState":
        """Rebuild state from a reconciled snapshot (``_deleted`` marks tombstones).

        Payloads come from the encoded ``_payload`` column when present, since
        the flat columns share one dtype per column.
        """
        if df.is_empty():
            return cls()
        payload_cols = [
            col
            for col in df.columns
            if col not in config.reserved_columns and not col.startswith("_")
        ]
        entries: dict[str, TableEntry] = {}
        for row in df.iter_rows(named=True):
            key = row[config.record_key_field]
            deleted = bool(row.get(DELETED_COL, False))
            payload = None
            if not deleted:
                encoded = row.get(PAYLOAD_COL)
                if encoded is not None:
                    payload = MappingProxyType(json.loads(encoded))
                else:
                    payload = MappingProxyType(
                        {col: row[col] for col in payload_cols if row[col] is not None}
                    )
            partition = row.get(config.partition_field)
            entries[key] = TableEntry(
                key=key,
                order_value=row[config.precombine_field],
                partition="" if partition is None else str(partition),
                payload=payload,
                deleted=deleted,
            )
        return cls(entries)
