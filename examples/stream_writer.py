"""Example: stream ride changes into a merge-on-read table and read it back."""

from pathlib import Path
import logging
import shutil

import polars_mor as mor

base_dir = Path("data/stream_writer")

if base_dir.exists():
    shutil.rmtree(base_dir)

logging.basicConfig(level=logging.INFO)

config = mor.TableConfig(
    table_name="t1",
    base_path=base_dir / "t1",
    checkpoint_dir=base_dir / "checkpoint",
    checkpoint_interval_ms=1000,
    min_pause_between_checkpoints_ms=1000,
)

# Shorter batch interval than the default 10s so the demo finishes quickly.
generator = mor.ChangeGenerator(max_batches=10, batch_interval_ms=500)
storage = mor.ParquetLogStorage(config)

result = mor.Pipeline(config, generator, storage=storage).run()
print("run:", result)

snapshot = storage.read_snapshot().sort(["city", "ts"])
print(snapshot)
print("live records:", snapshot.height)
