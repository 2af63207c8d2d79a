from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .checkpoints.types import list_batch_ids
from .sinks.delta import write_delta
from .storage import CompactionResult, ParquetLogStorage


@dataclass(frozen=True)
class CleanupResult:
    removed_offsets: int
    removed_barriers: int
    removed_commits: int
    kept_offsets: int
    kept_commits: int


@dataclass(frozen=True)
class CheckpointInfo:
    checkpoint_dir: Path
    offsets: int
    barriers: int
    commits: int
    aborted: int
    latest_offset: int | None
    latest_commit: int | None
    committed_through_batch_id: int | None
    pending: int
    created_at: float | None


def inspect_checkpoint(checkpoint_dir: str | Path) -> CheckpointInfo:
    """Return a summary of the offset log and barrier history."""
    checkpoint_path = Path(checkpoint_dir)
    offset_ids = list_batch_ids(checkpoint_path / "offsets")
    barrier_dir = checkpoint_path / "barriers"
    barrier_ids = list_batch_ids(barrier_dir)
    commit_ids = list_batch_ids(checkpoint_path / "commits")

    aborted = 0
    for barrier_id in barrier_ids:
        payload = _load_json(barrier_dir / f"{barrier_id}.json") or {}
        if payload.get("state") == "aborted":
            aborted += 1

    through: int | None = None
    if commit_ids:
        latest = _load_json(checkpoint_path / "commits" / f"{commit_ids[-1]}.json") or {}
        if "last_batch_id" in latest:
            through = int(latest["last_batch_id"])
    pending = [batch_id for batch_id in offset_ids if through is None or batch_id > through]
    metadata = _load_json(checkpoint_path / "metadata.json") or {}
    return CheckpointInfo(
        checkpoint_dir=checkpoint_path,
        offsets=len(offset_ids),
        barriers=len(barrier_ids),
        commits=len(commit_ids),
        aborted=aborted,
        latest_offset=offset_ids[-1] if offset_ids else None,
        latest_commit=commit_ids[-1] if commit_ids else None,
        committed_through_batch_id=through,
        pending=len(pending),
        created_at=metadata.get("created_at"),
    )


def cleanup_checkpoint(
    checkpoint_dir: str | Path,
    *,
    keep_last_n: int = 1,
    dry_run: bool = False,
) -> CleanupResult:
    """Remove checkpoint history older than the newest ``keep_last_n`` commits.

    Offsets are only removed when an older commit already covers them, so
    the replay window after the latest commit is never touched.
    """
    if keep_last_n < 1:
        raise ValueError("keep_last_n must be >= 1")
    checkpoint_path = Path(checkpoint_dir)
    offset_dir = checkpoint_path / "offsets"
    barrier_dir = checkpoint_path / "barriers"
    commit_dir = checkpoint_path / "commits"

    offset_ids = list_batch_ids(offset_dir)
    commit_ids = list_batch_ids(commit_dir)
    removable_commits = commit_ids[:-keep_last_n]
    if not removable_commits:
        return CleanupResult(
            removed_offsets=0,
            removed_barriers=0,
            removed_commits=0,
            kept_offsets=len(offset_ids),
            kept_commits=len(commit_ids),
        )

    newest_removed = _load_json(commit_dir / f"{removable_commits[-1]}.json") or {}
    covered_through = newest_removed.get("last_batch_id")
    oldest_kept_commit = commit_ids[-keep_last_n]

    removed_offsets = 0
    if covered_through is not None:
        removed_offsets = _remove_ids(
            offset_dir,
            [batch_id for batch_id in offset_ids if batch_id <= int(covered_through)],
            dry_run=dry_run,
        )
    removed_barriers = _remove_ids(
        barrier_dir,
        [b for b in list_batch_ids(barrier_dir) if b < oldest_kept_commit],
        dry_run=dry_run,
    )
    removed_commits = _remove_ids(commit_dir, removable_commits, dry_run=dry_run)

    return CleanupResult(
        removed_offsets=removed_offsets,
        removed_barriers=removed_barriers,
        removed_commits=removed_commits,
        kept_offsets=len(offset_ids) - removed_offsets,
        kept_commits=len(commit_ids) - removed_commits,
    )


def compact_table(storage: ParquetLogStorage) -> CompactionResult:
    """Fold committed change logs into base files. Runs only when called."""
    return storage.compact()


def export_delta(
    storage: ParquetLogStorage,
    target: str | Path,
    *,
    mode: str = "overwrite",
) -> dict[str, Any]:
    """Write the read-optimized snapshot to a Delta table partitioned like the source."""
    snapshot = storage.read_snapshot()
    if snapshot.is_empty():
        return {"path": str(target), "rows": 0, "mode": mode, "action": "noop"}
    partition_field = storage.config.partition_field
    result = write_delta(snapshot, target, mode=mode, partition_by=[partition_field])
    result["action"] = "export"
    result["exported_at"] = time.time()
    return result


def vacuum_delta_table(
    table_path: str | Path,
    *,
    retention_hours: float = 168.0,
    dry_run: bool = False,
    enforce_retention: bool | None = None,
) -> Any:
    """Vacuum an exported Delta table using deltalake (delta-rs)."""
    if isinstance(retention_hours, float) and retention_hours.is_integer():
        retention_hours = int(retention_hours)
    table = _get_delta_table(table_path)
    kwargs: dict[str, Any] = {"retention_hours": retention_hours, "dry_run": dry_run}
    if enforce_retention is not None:
        kwargs["enforce_retention_duration"] = enforce_retention
    return table.vacuum(**kwargs)


def _remove_ids(directory: Path, ids: list[int], *, dry_run: bool) -> int:
    removed = 0
    for item_id in ids:
        path = directory / f"{item_id}.json"
        if not path.exists():
            continue
        if not dry_run:
            path.unlink(missing_ok=True)
        removed += 1
    return removed


def _load_json(path: Path) -> dict | None:
    if not path.exists():
        return None
    return json.loads(path.read_text())


def _get_delta_table(table_path: str | Path):
    from deltalake import DeltaTable  # type: ignore

    return DeltaTable(str(table_path))
