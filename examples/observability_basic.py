"""Example: Observability with LoggingObserver."""

from pathlib import Path
import logging
import shutil

import polars_mor as mor

base_dir = Path("data/observability_basic")

if base_dir.exists():
    shutil.rmtree(base_dir)

logging.basicConfig(level=logging.DEBUG)

config = mor.TableConfig(
    table_name="rides",
    base_path=base_dir / "rides",
    checkpoint_interval_ms=0,
    min_pause_between_checkpoints_ms=0,
)

pipeline = mor.Pipeline(
    config,
    mor.ChangeGenerator(max_batches=2, batch_interval_ms=0),
    observer=mor.LoggingObserver(),
)

pipeline.run()
