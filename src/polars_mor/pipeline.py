from __future__ import annotations

import logging
import os
import queue
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .checkpoints import FileCheckpointStore
from .config import TableConfig
from .coordinator import CheckpointCoordinator
from .errors import CheckpointError
from .generator import CancellationToken, ChangeGenerator
from .observability import PipelineObserver
from .records import Batch
from .sink import MergeOnReadSink
from .storage import ParquetLogStorage, TableStorage

try:
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover
    fcntl = None

logger = logging.getLogger("polars_mor")

_END_OF_STREAM = object()


@dataclass(frozen=True)
class RunResult:
    batches: int
    checkpoints: int
    aborted: int
    live_records: int
    replayed_batches: int = 0


@dataclass(frozen=True)
class Pipeline:
    """Generator -> checkpoint coordinator -> merge-on-read sink.

    The generator runs on its own thread; its batches queue until the run
    loop drains them. ``run`` returns once the stream ends (terminal delete)
    or ``stop`` is cancelled, after a final checkpoint of buffered batches.
    """

    config: TableConfig
    generator: ChangeGenerator
    storage: TableStorage | None = None
    observer: PipelineObserver | None = None
    poll_interval: float = 0.05

    def run(self, *, stop: CancellationToken | None = None) -> RunResult:
        storage = self.storage if self.storage is not None else ParquetLogStorage(self.config)
        checkpoint_dir = self.config.checkpoint_path
        with _pipeline_lock(checkpoint_dir):
            checkpoint = FileCheckpointStore(checkpoint_dir)
            sink = MergeOnReadSink(self.config, storage, observer=self.observer)
            coordinator = CheckpointCoordinator(
                self.config,
                sink,
                checkpoint,
                observer=self.observer,
            )
            replayed = coordinator.recover()
            latest_offset = checkpoint.latest_offset_batch_id()
            if latest_offset is not None:
                self.generator.resume(latest_offset)
            return _run_loop(
                generator=self.generator,
                coordinator=coordinator,
                observer=self.observer,
                token=stop or CancellationToken(),
                poll_interval=self.poll_interval,
                replayed=len(replayed),
            )


def _run_loop(
    *,
    generator: ChangeGenerator,
    coordinator: CheckpointCoordinator,
    observer: PipelineObserver | None,
    token: CancellationToken,
    poll_interval: float,
    replayed: int,
) -> RunResult:
    batches: queue.Queue = queue.Queue()
    producer = threading.Thread(
        target=_produce,
        args=(generator, batches, token),
        name="polars-mor-generator",
        daemon=True,
    )
    producer.start()
    received = 0
    try:
        while True:
            try:
                item = batches.get(timeout=poll_interval)
            except queue.Empty:
                item = None
            if item is _END_OF_STREAM:
                break
            if isinstance(item, BaseException):
                raise item
            if item is not None:
                coordinator.offer(item)
                received += 1
                if observer is not None:
                    observer.on_batch_emitted(item)
            if coordinator.due():
                coordinator.try_checkpoint()
    except BaseException:
        token.cancel()
        raise
    finally:
        producer.join()

    # final checkpoint of everything still buffered
    try:
        coordinator.checkpoint()
    except CheckpointError as exc:
        if observer is not None:
            observer.on_error("final_checkpoint", None, exc)
        raise
    return RunResult(
        batches=received,
        checkpoints=coordinator.committed,
        aborted=coordinator.aborted,
        live_records=len(coordinator.sink.state),
        replayed_batches=replayed,
    )


def _produce(generator: ChangeGenerator, batches: queue.Queue, token: CancellationToken) -> None:
    def emit(batch: Batch) -> None:
        batches.put(batch)

    try:
        generator.run(emit, token)
    except Exception as exc:
        logger.error("generator failed: %s", exc)
        batches.put(exc)
    finally:
        batches.put(_END_OF_STREAM)


@contextmanager
def _pipeline_lock(checkpoint_dir: Path):
    if os.getenv("POLARS_MOR_DISABLE_LOCK") == "1":
        yield
        return
    lock_path = checkpoint_dir / ".pipeline.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    if fcntl is None:
        timeout_raw = os.getenv("POLARS_MOR_LOCK_TIMEOUT", "0")
        try:
            timeout_s = float(timeout_raw)
        except ValueError:
            timeout_s = 0.0
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if timeout_s <= 0 or (time.monotonic() - start) >= timeout_s:
                    raise RuntimeError("pipeline lock already held")
                time.sleep(min(0.1, max(0.01, timeout_s / 10)))
                continue
            with os.fdopen(fd, "w") as handle:
                handle.write(f"pid={os.getpid()}\n")
                handle.write(f"acquired_at={time.time()}\n")
            break
        try:
            yield
        finally:
            try:
                lock_path.unlink(missing_ok=True)
            except OSError:
                pass
        return
    with lock_path.open("a+") as handle:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise RuntimeError("pipeline lock already held") from None
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
