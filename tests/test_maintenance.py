import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import polars as pl

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_ROOT))

import polars_mor as mor


def _barrier(barrier_id: int, first: int, last: int) -> mor.CheckpointBarrier:
    return mor.CheckpointBarrier(
        barrier_id=barrier_id,
        created_at=1.0,
        first_batch_id=first,
        last_batch_id=last,
        record_count=0,
    )


def _seed_checkpoint(checkpoint_dir: Path) -> mor.FileCheckpointStore:
    store = mor.FileCheckpointStore(checkpoint_dir)
    for batch_id in range(1, 8):
        store.write_offset(mor.Batch(batch_id=batch_id, records=(), created_at=0.0))
    store.begin_barrier(_barrier(1, 1, 2))
    store.commit_barrier(_barrier(1, 1, 2))
    aborted = _barrier(2, 3, 4)
    store.begin_barrier(aborted)
    store.abort_barrier(aborted, error="timeout")
    for barrier_id, first, last in ((3, 3, 4), (4, 5, 6)):
        store.begin_barrier(_barrier(barrier_id, first, last))
        store.commit_barrier(_barrier(barrier_id, first, last))
    return store


def _storage_with_rides(base: Path) -> mor.ParquetLogStorage:
    config = mor.TableConfig(table_name="rides", base_path=base / "table")
    storage = mor.ParquetLogStorage(config)
    rides = [
        mor.ChangeRecord(key="a", order_value=1, partition="london", payload={"fare": 10.0}),
        mor.ChangeRecord(key="b", order_value=1, partition="chennai", payload={"fare": 15.4}),
        mor.ChangeRecord(key="c", order_value=1, partition="brazil", payload={"fare": 30.0}),
    ]
    for record in rides:
        storage.durable_write(record.partition, record.key, record.to_row(config))
    storage.durable_commit(1)
    delete = mor.ChangeRecord(key="b", order_value=2, partition="chennai", operation="delete")
    storage.durable_write(delete.partition, delete.key, delete.to_row(config))
    storage.durable_commit(2)
    return storage


class TestMaintenance(unittest.TestCase):
    def test_inspect_checkpoint(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            checkpoint_dir = Path(tmpdir) / "checkpoint"
            _seed_checkpoint(checkpoint_dir)

            info = mor.inspect_checkpoint(checkpoint_dir)

            self.assertEqual(info.offsets, 7)
            self.assertEqual(info.barriers, 4)
            self.assertEqual(info.commits, 3)
            self.assertEqual(info.aborted, 1)
            self.assertEqual(info.latest_offset, 7)
            self.assertEqual(info.latest_commit, 4)
            self.assertEqual(info.committed_through_batch_id, 6)
            self.assertEqual(info.pending, 1)
            self.assertIsNotNone(info.created_at)

    def test_cleanup_checkpoint_keep_last_n(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            checkpoint_dir = Path(tmpdir) / "checkpoint"
            store = _seed_checkpoint(checkpoint_dir)

            result = mor.cleanup_checkpoint(checkpoint_dir, keep_last_n=1)

            self.assertEqual(result.removed_commits, 2)
            self.assertEqual(result.removed_offsets, 4)
            self.assertEqual(result.removed_barriers, 3)
            self.assertEqual(result.kept_offsets, 3)
            self.assertEqual(result.kept_commits, 1)
            self.assertEqual(store.committed_barrier_ids(), [4])
            self.assertEqual(store.offset_batch_ids(), [5, 6, 7])
            self.assertEqual([b.batch_id for b in store.pending_batches()], [7])
            self.assertEqual(store.next_barrier_id(), 5)

    def test_cleanup_checkpoint_dry_run_keeps_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            checkpoint_dir = Path(tmpdir) / "checkpoint"
            store = _seed_checkpoint(checkpoint_dir)

            result = mor.cleanup_checkpoint(checkpoint_dir, keep_last_n=2, dry_run=True)

            self.assertEqual(result.removed_commits, 1)
            self.assertEqual(result.removed_offsets, 2)
            self.assertEqual(store.committed_barrier_ids(), [1, 3, 4])
            self.assertEqual(len(store.offset_batch_ids()), 7)

    def test_cleanup_checkpoint_validates_keep_last_n(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(ValueError):
                mor.cleanup_checkpoint(tmpdir, keep_last_n=0)

    def test_compact_table(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = _storage_with_rides(Path(tmpdir))
            before = storage.read_snapshot().sort("uuid").to_dicts()

            result = mor.compact_table(storage)

            self.assertEqual(result.barrier_id, 2)
            self.assertEqual(result.rows, 3)
            self.assertEqual(storage.read_snapshot().sort("uuid").to_dicts(), before)

    def test_export_delta_writes_live_rows(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = _storage_with_rides(Path(tmpdir))
            target = Path(tmpdir) / "delta"

            result = mor.export_delta(storage, target)

            self.assertEqual(result["action"], "export")
            self.assertEqual(result["rows"], 2)
            out = pl.read_delta(str(target)).sort("uuid")
            self.assertEqual(out["uuid"].to_list(), ["a", "c"])
            self.assertEqual(out["city"].to_list(), ["london", "brazil"])

    def test_export_delta_empty_table_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = mor.TableConfig(table_name="rides", base_path=Path(tmpdir) / "table")
            target = Path(tmpdir) / "delta"

            result = mor.export_delta(mor.ParquetLogStorage(config), target)

            self.assertEqual(result["action"], "noop")
            self.assertFalse(target.exists())

    def test_vacuum_delta_table_calls_deltalake(self) -> None:
        fake_table = mock.Mock()
        with mock.patch("polars_mor.maintenance._get_delta_table", return_value=fake_table):
            mor.vacuum_delta_table("/tmp/table", retention_hours=24.0, dry_run=True, enforce_retention=False)
        fake_table.vacuum.assert_called_once_with(
            retention_hours=24, dry_run=True, enforce_retention_duration=False
        )


if __name__ == "__main__":
    unittest.main()
