from pathlib import Path
import shutil

import polars as pl
import polars_mor as mor

base_dir = Path("data/maintenance_helpers_example")
delta_dir = base_dir / "delta" / "rides"

if base_dir.exists():
    shutil.rmtree(base_dir)

config = mor.TableConfig(
    table_name="rides",
    base_path=base_dir / "rides",
    checkpoint_interval_ms=0,
    min_pause_between_checkpoints_ms=0,
)
storage = mor.ParquetLogStorage(config)

# Seed a table with a few committed barriers.
mor.Pipeline(config, mor.ChangeGenerator(max_batches=3, batch_interval_ms=0), storage=storage).run()

print("checkpoint:", mor.inspect_checkpoint(config.checkpoint_path))

# Drop offsets and commits already covered by older commits.
cleanup = mor.cleanup_checkpoint(config.checkpoint_path, keep_last_n=1)
print("checkpoint cleanup:", cleanup)

# Fold the change logs into base files.
print("compaction:", mor.compact_table(storage))

# Publish the read-optimized view as a Delta table.
print("export:", mor.export_delta(storage, delta_dir))
print(pl.read_delta(str(delta_dir)).sort("ts"))

# Vacuum the exported table (dry-run to preview deletions).
result = mor.vacuum_delta_table(
    delta_dir,
    retention_hours=168.0,
    dry_run=True,
)
print("vacuum result:", result)
