from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable


class BarrierState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (BarrierState.COMMITTED, BarrierState.ABORTED)


BARRIER_TRANSITIONS: dict[BarrierState, frozenset[BarrierState]] = {
    BarrierState.PENDING: frozenset({BarrierState.IN_FLIGHT, BarrierState.ABORTED}),
    BarrierState.IN_FLIGHT: frozenset({BarrierState.COMMITTED, BarrierState.ABORTED}),
    BarrierState.COMMITTED: frozenset(),
    BarrierState.ABORTED: frozenset(),
}


@dataclass(frozen=True)
class CheckpointBarrier:
    barrier_id: int
    created_at: float
    first_batch_id: int
    last_batch_id: int
    record_count: int

    def to_dict(self) -> dict:
        return {
            "barrier_id": self.barrier_id,
            "created_at": self.created_at,
            "first_batch_id": self.first_batch_id,
            "last_batch_id": self.last_batch_id,
            "record_count": self.record_count,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "CheckpointBarrier":
        return cls(
            barrier_id=int(payload["barrier_id"]),
            created_at=float(payload["created_at"]),
            first_batch_id=int(payload["first_batch_id"]),
            last_batch_id=int(payload["last_batch_id"]),
            record_count=int(payload.get("record_count", 0)),
        )


def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(dir=path.parent, prefix=".tmp-", delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    os.replace(tmp_path, path)
    _fsync_dir(path.parent)


def atomic_write_json(path: Path, payload: dict) -> None:
    data = json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")
    atomic_write_bytes(path, data)


def atomic_write_with(path: Path, write: Callable[[Path], None]) -> None:
    """Write ``path`` through a temp sibling produced by ``write`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".tmp-{path.name}")
    write(tmp_path)
    try:
        with tmp_path.open("rb") as handle:
            os.fsync(handle.fileno())
    except OSError:
        pass
    os.replace(tmp_path, path)
    _fsync_dir(path.parent)


def list_batch_ids(directory: Path) -> list[int]:
    ids: list[int] = []
    for path in directory.glob("*.json"):
        try:
            ids.append(int(path.stem))
        except ValueError:
            continue
    return sorted(ids)
