import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_ROOT))

from polars_mor import BarrierState, Batch, ChangeRecord, CheckpointBarrier, FileCheckpointStore, Operation


def _batch(batch_id: int, *keys: str, terminal: bool = False) -> Batch:
    records = tuple(
        ChangeRecord(key=key, order_value=batch_id, partition="london", payload={"fare": 1.0})
        for key in keys
    )
    return Batch(batch_id=batch_id, records=records, created_at=100.0 + batch_id, terminal=terminal)


def _barrier(barrier_id: int, first: int, last: int, count: int = 0) -> CheckpointBarrier:
    return CheckpointBarrier(
        barrier_id=barrier_id,
        created_at=1.0,
        first_batch_id=first,
        last_batch_id=last,
        record_count=count,
    )


class TestFileCheckpointStore(unittest.TestCase):
    def test_layout_and_metadata(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            checkpoint_dir = Path(tmpdir) / "checkpoint"
            with patch("polars_mor.checkpoints.file.time.time", return_value=42.0):
                store = FileCheckpointStore(checkpoint_dir)

            self.assertTrue((checkpoint_dir / "offsets").is_dir())
            self.assertTrue((checkpoint_dir / "barriers").is_dir())
            self.assertTrue((checkpoint_dir / "commits").is_dir())
            self.assertEqual(store.metadata["created_at"], 42.0)

            reopened = FileCheckpointStore(checkpoint_dir)
            self.assertEqual(reopened.metadata["created_at"], 42.0)

    def test_offsets_roundtrip_records(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileCheckpointStore(Path(tmpdir) / "checkpoint")
            delete = ChangeRecord(key="c", order_value=9, partition="chennai", operation=Operation.DELETE)
            batch = Batch(batch_id=3, records=(delete,), created_at=5.0, terminal=True)
            store.write_offset(batch)

            loaded = store.read_offset(3)

            self.assertEqual(loaded.batch_id, 3)
            self.assertTrue(loaded.terminal)
            self.assertEqual(list(loaded.records), [delete])
            self.assertEqual(loaded.records[0].partition, "chennai")

    def test_write_offset_keeps_first_version(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileCheckpointStore(Path(tmpdir) / "checkpoint")
            store.write_offset(_batch(1, "a"))
            store.write_offset(_batch(1, "b", "c"))

            self.assertEqual([r.key for r in store.read_offset(1)], ["a"])
            self.assertEqual(store.offset_batch_ids(), [1])
            self.assertEqual(store.latest_offset_batch_id(), 1)

    def test_invalid_offset_records_are_dropped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileCheckpointStore(Path(tmpdir) / "checkpoint")
            store.write_offset(_batch(1, "a"))
            path = store.offset_dir / "1.json"
            payload = json.loads(path.read_text())
            payload["records"].append({"key": "", "order_value": 1, "partition": "x", "operation": "insert"})
            path.write_text(json.dumps(payload))

            with self.assertLogs("polars_mor", level="WARNING"):
                batch = store.read_offset(1)

            self.assertEqual([r.key for r in batch], ["a"])

    def test_barrier_lifecycle(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileCheckpointStore(Path(tmpdir) / "checkpoint")
            self.assertEqual(store.next_barrier_id(), 1)

            first = _barrier(1, 1, 2, count=8)
            store.begin_barrier(first)
            self.assertEqual(store.barrier_state(1), BarrierState.PENDING)
            store.abort_barrier(first, error="disk full")
            self.assertEqual(store.barrier_state(1), BarrierState.ABORTED)
            aborted = json.loads((store.barrier_dir / "1.json").read_text())
            self.assertEqual(aborted["error"], "disk full")

            self.assertEqual(store.next_barrier_id(), 2)
            retry = _barrier(2, 1, 2, count=8)
            store.begin_barrier(retry)
            store.commit_barrier(retry, metadata={"accepted": 8})

            self.assertEqual(store.barrier_state(2), BarrierState.COMMITTED)
            self.assertEqual(store.committed_barrier_ids(), [2])
            self.assertEqual(store.latest_commit(), retry)
            self.assertEqual(store.committed_through_batch_id(), 2)
            self.assertEqual(store.next_barrier_id(), 3)
            self.assertIsNone(store.barrier_state(9))

    def test_pending_batches_after_commit_point(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = FileCheckpointStore(Path(tmpdir) / "checkpoint")
            for batch_id in (1, 2, 3, 4):
                store.write_offset(_batch(batch_id, f"k{batch_id}"))
            self.assertEqual([b.batch_id for b in store.pending_batches()], [1, 2, 3, 4])

            store.commit_barrier(_barrier(1, 1, 2))

            pending = store.pending_batches()
            self.assertEqual([b.batch_id for b in pending], [3, 4])
            self.assertEqual([r.key for r in pending[0]], ["k3"])


if __name__ == "__main__":
    unittest.main()
