from __future__ import annotations

import logging
import os
import shutil
import signal
from pathlib import Path

import polars_mor as mor

base_dir = Path("data/mor_stream_demo")
os.environ.setdefault("POLARS_MOR_BASE_PATH", str(base_dir / "t1"))
os.environ.setdefault("POLARS_MOR_CHECKPOINT_PATH", str(base_dir / "checkpoint"))

if os.getenv("MOR_DEMO_RESET") == "1" and base_dir.exists():
    shutil.rmtree(base_dir)

logging.basicConfig(level=logging.INFO)

config = mor.TableConfig.from_env("t1")
storage = mor.ParquetLogStorage(config)
token = mor.CancellationToken()


def _stop(signum, frame):
    print(f"signal {signum}: stopping, buffered batches get a final checkpoint")
    token.cancel()


signal.signal(signal.SIGINT, _stop)
signal.signal(signal.SIGTERM, _stop)

# Ctrl-C ends the stream early; a rerun continues from the offset log.
result = mor.Pipeline(
    config,
    mor.ChangeGenerator(),
    storage=storage,
    observer=mor.LoggingObserver(),
).run(stop=token)

print("run:", result)
print("checkpoint:", mor.inspect_checkpoint(config.checkpoint_path))
print(storage.read_snapshot().sort(["city", "ts"]))
