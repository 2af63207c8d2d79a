from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol
from urllib.parse import quote, unquote

import polars as pl

from .cdc import BARRIER_COL, DELETED_COL, SEQ_COL, reconcile_log
from .checkpoints.types import atomic_write_json, atomic_write_with, list_batch_ids
from .config import TableConfig
from .records import CHANGE_TYPE_COL, PAYLOAD_COL

logger = logging.getLogger("polars_mor")

DEFAULT_PARTITION = "__default__"


class TableStorage(Protocol):
    def durable_write(self, partition: str, key: str, row: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def durable_commit(self, barrier_id: int) -> None:
        raise NotImplementedError

    def rollback(self, barrier_id: int) -> None:
        raise NotImplementedError

    def read_snapshot(self, *, include_deletes: bool = False) -> pl.DataFrame:
        raise NotImplementedError


@dataclass(frozen=True)
class CompactionResult:
    barrier_id: int | None
    base_files: int
    removed_logs: int
    rows: int


class ParquetLogStorage:
    """Merge-on-read storage: one parquet change log per partition per barrier.

    Writes are staged in memory until ``durable_commit``; the commit writes the
    log files and then a timeline marker. Log files without a marker are
    invisible to readers. ``compact`` folds committed logs into per-partition
    base files; base files only count once the compaction marker names them.
    """

    _TIMELINE_DIRNAME = ".timeline"
    _COMPACTION_MARKER = "compaction.json"
    _LOG_PREFIX = ".log."
    _BASE_PREFIX = "base."

    def __init__(self, config: TableConfig) -> None:
        self.config = config
        self.base_path = Path(config.base_path)
        self.timeline_dir = self.base_path / self._TIMELINE_DIRNAME
        self.timeline_dir.mkdir(parents=True, exist_ok=True)
        self._staged: dict[str, list[dict[str, Any]]] = {}
        self._seq = 0

    def partition_path(self, partition: str) -> Path:
        value = partition if partition else DEFAULT_PARTITION
        return self.base_path / f"{self.config.partition_field}={quote(value, safe='')}"

    def partitions(self) -> list[str]:
        prefix = f"{self.config.partition_field}="
        names: list[str] = []
        for path in sorted(self.base_path.glob(f"{prefix}*")):
            if not path.is_dir():
                continue
            value = unquote(path.name[len(prefix):])
            names.append("" if value == DEFAULT_PARTITION else value)
        return names

    def log_path(self, partition: str, barrier_id: int) -> Path:
        return self.partition_path(partition) / f"{self._LOG_PREFIX}{barrier_id}.parquet"

    def base_file_path(self, partition: str, barrier_id: int) -> Path:
        return self.partition_path(partition) / f"{self._BASE_PREFIX}{barrier_id}.parquet"

    def durable_write(self, partition: str, key: str, row: Mapping[str, Any]) -> None:
        if row.get(self.config.record_key_field) != key:
            raise ValueError(f"Row key does not match record key {key!r}")
        staged = dict(row)
        staged[SEQ_COL] = self._seq
        self._seq += 1
        self._staged.setdefault(partition, []).append(staged)

    def staged_count(self) -> int:
        return sum(len(rows) for rows in self._staged.values())

    def durable_commit(self, barrier_id: int) -> None:
        if self.is_committed(barrier_id):
            raise ValueError(f"Barrier {barrier_id} is already committed")
        files: list[str] = []
        for partition, rows in sorted(self._staged.items()):
            df = pl.DataFrame(rows, infer_schema_length=None, strict=False).with_columns(
                pl.lit(barrier_id, dtype=pl.Int64).alias(BARRIER_COL)
            )
            path = self.log_path(partition, barrier_id)
            atomic_write_with(path, df.write_parquet)
            files.append(str(path.relative_to(self.base_path)))
        atomic_write_json(
            self._timeline_path(barrier_id),
            {
                "barrier_id": barrier_id,
                "committed_at": time.time(),
                "files": files,
                "record_count": self.staged_count(),
                "table_name": self.config.table_name,
            },
        )
        self._staged = {}

    def rollback(self, barrier_id: int) -> None:
        """Drop staged rows and any files written for ``barrier_id``.

        A barrier whose storage commit already landed is undone as well,
        marker first, so readers never see a partial window. Barriers folded
        into base files cannot be rolled back.
        """
        self._staged = {}
        compacted = self.compacted_through()
        if compacted is not None and barrier_id <= compacted:
            raise ValueError(f"Barrier {barrier_id} is already compacted")
        marker = self._timeline_path(barrier_id)
        if marker.exists():
            logger.warning("rolling back storage commit for barrier_id=%s", barrier_id)
            marker.unlink()
        for partition in self.partitions():
            self.log_path(partition, barrier_id).unlink(missing_ok=True)

    def committed_barrier_ids(self) -> list[int]:
        return list_batch_ids(self.timeline_dir)

    def latest_barrier_id(self) -> int | None:
        ids = self.committed_barrier_ids()
        return ids[-1] if ids else None

    def is_committed(self, barrier_id: int) -> bool:
        return self._timeline_path(barrier_id).exists()

    def compacted_through(self) -> int | None:
        path = self.timeline_dir / self._COMPACTION_MARKER
        if not path.exists():
            return None
        payload = json.loads(path.read_text())
        return int(payload["barrier_id"])

    def log_files(self) -> list[Path]:
        committed = set(self.committed_barrier_ids())
        compacted = self.compacted_through()
        files: list[tuple[int, Path]] = []
        for partition in self.partitions():
            for path in self.partition_path(partition).glob(f"{self._LOG_PREFIX}*.parquet"):
                barrier_id = _file_barrier_id(path, self._LOG_PREFIX)
                if barrier_id is None or barrier_id not in committed:
                    continue
                if compacted is not None and barrier_id <= compacted:
                    continue
                files.append((barrier_id, path))
        return [path for _, path in sorted(files)]

    def base_files(self) -> list[Path]:
        compacted = self.compacted_through()
        if compacted is None:
            return []
        files: list[Path] = []
        for partition in self.partitions():
            path = self.base_file_path(partition, compacted)
            if path.exists():
                files.append(path)
        return files

    def read_log(self) -> pl.DataFrame:
        frames = [pl.read_parquet(path) for path in self.base_files() + self.log_files()]
        frames = [frame for frame in frames if frame.height > 0]
        if not frames:
            return pl.DataFrame()
        return pl.concat(frames, how="diagonal_relaxed")

    def read_snapshot(self, *, include_deletes: bool = False) -> pl.DataFrame:
        """Latest row per key.

        With ``include_deletes`` this is the full view used for restore and
        compaction: tombstones flagged by ``_deleted`` and the encoded
        ``_payload`` column kept. Otherwise only live rows, payload columns only.
        """
        log = self.read_log()
        if log.is_empty():
            return log
        snapshot = reconcile_log(
            log,
            keys=[self.config.record_key_field],
            include_deletes=include_deletes,
        )
        if not include_deletes and PAYLOAD_COL in snapshot.columns:
            snapshot = snapshot.drop(PAYLOAD_COL)
        return snapshot

    def compact(self) -> CompactionResult:
        """Fold every committed log into one base file per partition.

        Tombstones are kept in the base files so older writes stay suppressed.
        """
        if self._staged:
            raise RuntimeError("Cannot compact while writes are staged")
        through = self.latest_barrier_id()
        if through is None or through == self.compacted_through():
            return CompactionResult(barrier_id=through, base_files=0, removed_logs=0, rows=0)

        snapshot = self.read_snapshot(include_deletes=True)
        base_count = 0
        if not snapshot.is_empty():
            snapshot = snapshot.with_columns(
                pl.when(pl.col(DELETED_COL))
                .then(pl.lit("delete"))
                .otherwise(pl.lit("update"))
                .alias(CHANGE_TYPE_COL),
                pl.lit(through, dtype=pl.Int64).alias(BARRIER_COL),
                pl.int_range(pl.len(), dtype=pl.Int64).alias(SEQ_COL),
            ).drop(DELETED_COL)
            partition_field = self.config.partition_field
            for (partition,), frame in snapshot.group_by([partition_field], maintain_order=True):
                value = "" if partition is None else str(partition)
                atomic_write_with(self.base_file_path(value, through), frame.write_parquet)
                base_count += 1

        previous = self.compacted_through()
        atomic_write_json(
            self.timeline_dir / self._COMPACTION_MARKER,
            {"barrier_id": through, "compacted_at": time.time(), "base_files": base_count},
        )

        removed = 0
        for partition in self.partitions():
            directory = self.partition_path(partition)
            for path in directory.glob(f"{self._LOG_PREFIX}*.parquet"):
                barrier_id = _file_barrier_id(path, self._LOG_PREFIX)
                if barrier_id is not None and barrier_id <= through:
                    path.unlink(missing_ok=True)
                    removed += 1
            if previous is not None:
                self.base_file_path(partition, previous).unlink(missing_ok=True)
        logger.info(
            "compacted table=%s through_barrier=%s base_files=%s removed_logs=%s",
            self.config.table_name,
            through,
            base_count,
            removed,
        )
        return CompactionResult(
            barrier_id=through,
            base_files=base_count,
            removed_logs=removed,
            rows=snapshot.height,
        )

    def _timeline_path(self, barrier_id: int) -> Path:
        return self.timeline_dir / f"{barrier_id}.json"


def _file_barrier_id(path: Path, prefix: str) -> int | None:
    name = path.name
    if not name.startswith(prefix) or not name.endswith(".parquet"):
        return None
    try:
        return int(name[len(prefix): -len(".parquet")])
    except ValueError:
        return None
