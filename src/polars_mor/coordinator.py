from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .checkpoints import BARRIER_TRANSITIONS, BarrierState, CheckpointBarrier, FileCheckpointStore
from .config import TableConfig
from .errors import ApplyError, CheckpointError, CheckpointTimeoutError, PolarsMorError
from .observability import PipelineObserver
from .records import Batch
from .sink import MergeOnReadSink

logger = logging.getLogger("polars_mor")


class CheckpointCoordinator:
    """Draws barriers over buffered batches and commits them exactly once.

    A barrier goes PENDING -> IN_FLIGHT -> COMMITTED, or ends ABORTED on any
    failure while in flight. Aborted windows stay buffered and are retried
    under a new barrier id. Delivery to the sink is at-least-once; the merge
    rule makes re-application a no-op.
    """

    def __init__(
        self,
        config: TableConfig,
        sink: MergeOnReadSink,
        checkpoint: FileCheckpointStore,
        observer: PipelineObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.sink = sink
        self.checkpoint_store = checkpoint
        self.observer = observer
        self._clock = clock
        self._buffer: list[Batch] = []
        self._states: dict[int, BarrierState] = {}
        self._last_trigger_at = clock()
        self._last_commit_at: float | None = None
        self.last_committed: CheckpointBarrier | None = checkpoint.latest_commit()
        self.committed = 0
        self.aborted = 0
        self.failed_records = 0

    @property
    def buffered_batches(self) -> list[Batch]:
        return list(self._buffer)

    @property
    def buffered_records(self) -> int:
        return sum(len(batch) for batch in self._buffer)

    def state_of(self, barrier_id: int) -> BarrierState | None:
        state = self._states.get(barrier_id)
        if state is None:
            return self.checkpoint_store.barrier_state(barrier_id)
        return state

    def recover(self) -> list[Batch]:
        """Restore table state and re-buffer batches logged after the last commit."""
        self.sink.restore()
        pending = self.checkpoint_store.pending_batches()
        self._buffer = list(pending)
        if pending:
            logger.info(
                "recovering %s batch(es) after barrier_id=%s",
                len(pending),
                self.last_committed.barrier_id if self.last_committed else None,
            )
        return pending

    def offer(self, batch: Batch) -> None:
        self.checkpoint_store.write_offset(batch)
        self._buffer.append(batch)

    def due(self, now: float | None = None) -> bool:
        if not self._buffer:
            return False
        now = self._clock() if now is None else now
        if now - self._last_trigger_at < self.config.checkpoint_interval_ms / 1000.0:
            return False
        if self._last_commit_at is not None:
            min_pause = self.config.min_pause_between_checkpoints_ms / 1000.0
            if now - self._last_commit_at < min_pause:
                return False
        return True

    def try_checkpoint(self) -> CheckpointBarrier | None:
        """Checkpoint, leaving retryable failures buffered for the next attempt."""
        try:
            return self.checkpoint()
        except ApplyError:
            raise
        except CheckpointError as exc:
            logger.warning("checkpoint aborted, will retry: %s", exc)
            return None

    def checkpoint(self) -> CheckpointBarrier | None:
        if not self._buffer:
            return None
        started = self._clock()
        self._last_trigger_at = started
        deadline = started + self.config.checkpoint_timeout_ms / 1000.0
        window = list(self._buffer)
        barrier = CheckpointBarrier(
            barrier_id=self.checkpoint_store.next_barrier_id(),
            created_at=time.time(),
            first_batch_id=window[0].batch_id,
            last_batch_id=window[-1].batch_id,
            record_count=sum(len(batch) for batch in window),
        )
        self._states[barrier.barrier_id] = BarrierState.PENDING
        self.checkpoint_store.begin_barrier(barrier)

        self._transition(barrier, BarrierState.IN_FLIGHT)
        try:
            metadata = self._apply_window(barrier, window, deadline)
            self._check_deadline(barrier, deadline)
            self._commit_window(barrier, metadata, deadline)
        except Exception as exc:
            self._abort(barrier, exc)
            if isinstance(exc, PolarsMorError):
                raise
            raise CheckpointError(f"checkpoint failed for barrier_id={barrier.barrier_id}") from exc

        self.sink.commit()
        self._transition(barrier, BarrierState.COMMITTED)
        del self._buffer[: len(window)]
        self._last_commit_at = self._clock()
        self.last_committed = barrier
        self.committed += 1
        if self.observer is not None:
            self.observer.on_checkpoint_committed(barrier, metadata=metadata)
        return barrier

    def _apply_window(
        self,
        barrier: CheckpointBarrier,
        window: list[Batch],
        deadline: float,
    ) -> dict[str, Any]:
        if self.observer is not None:
            self.observer.on_stage_start("apply", barrier.barrier_id)
        start = time.perf_counter()
        accepted = 0
        stale = 0
        failed = 0
        self.sink.begin(barrier.barrier_id)
        for batch in window:
            for record in batch:
                self._check_deadline(barrier, deadline)
                try:
                    if self.sink.apply(record):
                        accepted += 1
                    else:
                        stale += 1
                except ApplyError as exc:
                    if not self.config.ignore_failed:
                        raise
                    failed += 1
                    logger.warning("skipping record after apply error: %s", exc)
                    if self.observer is not None:
                        self.observer.on_error("apply", barrier.barrier_id, exc)
        self.failed_records += failed
        metadata = {"accepted": accepted, "stale": stale, "failed": failed}
        if self.observer is not None:
            self.observer.on_stage_end(
                "apply",
                barrier.barrier_id,
                time.perf_counter() - start,
                metadata=metadata,
            )
        return metadata

    def _commit_window(
        self,
        barrier: CheckpointBarrier,
        metadata: dict[str, Any],
        deadline: float,
    ) -> None:
        if self.observer is not None:
            self.observer.on_stage_start("commit", barrier.barrier_id)
        start = time.perf_counter()
        try:
            self.sink.storage.durable_commit(barrier.barrier_id)
        except PolarsMorError:
            raise
        except Exception as exc:
            raise CheckpointError(
                f"storage commit failed for barrier_id={barrier.barrier_id}"
            ) from exc
        # The commit point is the checkpoint record; a late storage commit is rolled back.
        self._check_deadline(barrier, deadline)
        self.checkpoint_store.commit_barrier(barrier, metadata=metadata)
        if self.observer is not None:
            self.observer.on_stage_end("commit", barrier.barrier_id, time.perf_counter() - start)

    def _check_deadline(self, barrier: CheckpointBarrier, deadline: float) -> None:
        if self._clock() > deadline:
            raise CheckpointTimeoutError(
                f"barrier_id={barrier.barrier_id} exceeded "
                f"{self.config.checkpoint_timeout_ms}ms checkpoint timeout"
            )

    def _abort(self, barrier: CheckpointBarrier, exc: Exception) -> None:
        try:
            self.sink.storage.rollback(barrier.barrier_id)
        except OSError as rollback_exc:
            logger.error("rollback failed for barrier_id=%s: %s", barrier.barrier_id, rollback_exc)
        self.sink.abort()
        self.checkpoint_store.abort_barrier(barrier, error=str(exc))
        self._transition(barrier, BarrierState.ABORTED)
        self.aborted += 1
        if self.observer is not None:
            self.observer.on_checkpoint_aborted(barrier, exc)

    def _transition(self, barrier: CheckpointBarrier, state: BarrierState) -> None:
        current = self._states.get(barrier.barrier_id, BarrierState.PENDING)
        if state not in BARRIER_TRANSITIONS[current]:
            raise CheckpointError(
                f"invalid barrier transition {current.value} -> {state.value} "
                f"for barrier_id={barrier.barrier_id}"
            )
        self._states[barrier.barrier_id] = state
