from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from ..errors import InvalidRecordError
from ..records import Batch, ChangeRecord
from .types import BarrierState, CheckpointBarrier, atomic_write_json, list_batch_ids

logger = logging.getLogger("polars_mor")


class FileCheckpointStore:
    """Durable offset log and barrier commit log for one pipeline.

    Layout under ``checkpoint_dir``::

        offsets/<batch_id>.json     batches handed to the coordinator
        barriers/<barrier_id>.json  every barrier attempt (pending or aborted)
        commits/<barrier_id>.json   committed barriers; the latest is the commit point
        metadata.json
    """

    def __init__(self, checkpoint_dir: str | Path) -> None:
        self.checkpoint_dir = Path(checkpoint_dir)
        self.offset_dir = self.checkpoint_dir / "offsets"
        self.barrier_dir = self.checkpoint_dir / "barriers"
        self.commit_dir = self.checkpoint_dir / "commits"
        self._metadata_path = self.checkpoint_dir / "metadata.json"
        self._ensure_dirs()
        self._metadata = self._load_or_create_metadata()

    def _ensure_dirs(self) -> None:
        self.offset_dir.mkdir(parents=True, exist_ok=True)
        self.barrier_dir.mkdir(parents=True, exist_ok=True)
        self.commit_dir.mkdir(parents=True, exist_ok=True)

    def _load_or_create_metadata(self) -> dict:
        if self._metadata_path.exists():
            return json.loads(self._metadata_path.read_text())
        payload = {
            "format_version": 1,
            "created_at": time.time(),
        }
        atomic_write_json(self._metadata_path, payload)
        return payload

    @property
    def metadata(self) -> dict:
        return dict(self._metadata)

    def _path(self, directory: Path, item_id: int) -> Path:
        return directory / f"{item_id}.json"

    # offsets

    def write_offset(self, batch: Batch) -> None:
        path = self._path(self.offset_dir, batch.batch_id)
        if path.exists():
            return
        payload = {
            "batch_id": batch.batch_id,
            "created_at": batch.created_at,
            "terminal": batch.terminal,
            "records": [record.to_dict() for record in batch.records],
        }
        atomic_write_json(path, payload)

    def read_offset(self, batch_id: int) -> Batch:
        path = self._path(self.offset_dir, batch_id)
        payload = json.loads(path.read_text())
        records: list[ChangeRecord] = []
        for raw in payload.get("records", []):
            try:
                records.append(ChangeRecord.from_dict(raw))
            except InvalidRecordError as exc:
                logger.warning("dropping invalid record in batch_id=%s: %s", batch_id, exc)
        return Batch(
            batch_id=payload["batch_id"],
            records=tuple(records),
            created_at=payload["created_at"],
            terminal=bool(payload.get("terminal", False)),
        )

    def latest_offset_batch_id(self) -> int | None:
        ids = list_batch_ids(self.offset_dir)
        return ids[-1] if ids else None

    def offset_batch_ids(self) -> list[int]:
        return list_batch_ids(self.offset_dir)

    # barriers

    def next_barrier_id(self) -> int:
        ids = list_batch_ids(self.barrier_dir) + list_batch_ids(self.commit_dir)
        return (max(ids) + 1) if ids else 1

    def begin_barrier(self, barrier: CheckpointBarrier) -> None:
        payload = barrier.to_dict()
        payload["state"] = BarrierState.PENDING.value
        atomic_write_json(self._path(self.barrier_dir, barrier.barrier_id), payload)

    def abort_barrier(self, barrier: CheckpointBarrier, error: str | None = None) -> None:
        payload = barrier.to_dict()
        payload["state"] = BarrierState.ABORTED.value
        payload["aborted_at"] = time.time()
        if error:
            payload["error"] = error
        atomic_write_json(self._path(self.barrier_dir, barrier.barrier_id), payload)

    def commit_barrier(self, barrier: CheckpointBarrier, metadata: dict | None = None) -> None:
        payload = barrier.to_dict()
        payload["committed_at"] = time.time()
        payload["metadata"] = metadata or {}
        atomic_write_json(self._path(self.commit_dir, barrier.barrier_id), payload)

    def barrier_state(self, barrier_id: int) -> BarrierState | None:
        if self._path(self.commit_dir, barrier_id).exists():
            return BarrierState.COMMITTED
        path = self._path(self.barrier_dir, barrier_id)
        if not path.exists():
            return None
        return BarrierState(json.loads(path.read_text()).get("state", BarrierState.PENDING.value))

    def committed_barrier_ids(self) -> list[int]:
        return list_batch_ids(self.commit_dir)

    def latest_commit(self) -> CheckpointBarrier | None:
        ids = self.committed_barrier_ids()
        if not ids:
            return None
        payload = json.loads(self._path(self.commit_dir, ids[-1]).read_text())
        return CheckpointBarrier.from_dict(payload)

    def committed_through_batch_id(self) -> int | None:
        latest = self.latest_commit()
        return None if latest is None else latest.last_batch_id

    def pending_batches(self) -> list[Batch]:
        """Batches logged after the last commit point, in batch order."""
        through = self.committed_through_batch_id()
        pending: list[Batch] = []
        for batch_id in self.offset_batch_ids():
            if through is not None and batch_id <= through:
                continue
            try:
                pending.append(self.read_offset(batch_id))
            except FileNotFoundError:
                continue
        return pending
