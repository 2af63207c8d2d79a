from __future__ import annotations

import random
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterator

from .records import Batch, ChangeRecord, Operation

FIXED_KEYS = (
    "334e26e9-8355-45cc-97c6-c31daf0df330",
    "7fd3fd07-cf04-4a1d-9511-142736932983",
)


@dataclass(frozen=True)
class RideTemplate:
    rider: str
    driver: str
    city: str
    fare: float | None = None


# Two fresh rides, then the two rides that keep the fixed keys.
RIDE_TEMPLATES = (
    RideTemplate("rider-A", "driver-K", "san_francisco"),
    RideTemplate("rider-B", "driver-M", "brazil"),
    RideTemplate("rider-C", "driver-L", "chennai", fare=15.4),
    RideTemplate("rider-D", "driver-N", "london"),
)


class CancellationToken:
    """Cooperative stop signal shared by the generator and the pipeline loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _random_key() -> str:
    return str(uuid.uuid4())


class ChangeGenerator:
    """Timed batches of ride changes ending with one delete.

    Each regular batch inserts two rides under fresh keys and writes the two
    fixed keys (inserted by batch 1, updated afterwards). Once ``max_batches``
    batches are out, a terminal batch deletes the first fixed key and the
    stream ends. ``max_batches=None`` never ends.
    """

    def __init__(
        self,
        *,
        max_batches: int | None = 10,
        batch_interval_ms: int = 10000,
        terminal_wait_ms: int | None = None,
        key_source: Callable[[], str] | None = None,
        clock: Callable[[], int | float] | None = None,
        rng: random.Random | None = None,
        fixed_keys: tuple[str, str] = FIXED_KEYS,
    ) -> None:
        if max_batches is not None and max_batches < 1:
            raise ValueError("max_batches must be >= 1")
        if batch_interval_ms < 0:
            raise ValueError("batch_interval_ms must be >= 0")
        if len(fixed_keys) != 2 or not all(fixed_keys):
            raise ValueError("fixed_keys must hold two non-empty keys")
        self.max_batches = max_batches
        self.batch_interval_ms = batch_interval_ms
        self.terminal_wait_ms = batch_interval_ms if terminal_wait_ms is None else terminal_wait_ms
        self.fixed_keys = tuple(fixed_keys)
        self._key_source = key_source or _random_key
        self._clock = clock or _wall_clock_ms
        self._rng = rng or random.Random()
        self._batch_number = 0
        self._finished = False

    @property
    def batch_number(self) -> int:
        return self._batch_number

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def deleted_key(self) -> str:
        return self.fixed_keys[0]

    def resume(self, after_batch_id: int) -> None:
        """Continue numbering after batches that were already emitted."""
        if after_batch_id < 0:
            raise ValueError("after_batch_id must be >= 0")
        self._batch_number = after_batch_id
        self._finished = self.max_batches is not None and after_batch_id > self.max_batches

    def next_batch(self) -> Batch | None:
        if self._finished:
            return None
        batch_number = self._batch_number + 1
        if self.max_batches is not None and batch_number > self.max_batches:
            batch = self._terminal_batch(batch_number)
            self._finished = True
        else:
            batch = self._regular_batch(batch_number)
        self._batch_number = batch_number
        return batch

    def __iter__(self) -> Iterator[Batch]:
        while True:
            batch = self.next_batch()
            if batch is None:
                return
            yield batch

    def run(self, emit: Callable[[Batch], None], token: CancellationToken) -> int:
        """Emit batches on the configured interval until done or cancelled."""
        emitted = 0
        while not token.cancelled:
            batch = self.next_batch()
            if batch is None:
                break
            emit(batch)
            emitted += 1
            wait_ms = self.terminal_wait_ms if batch.terminal else self.batch_interval_ms
            if token.wait(wait_ms / 1000.0):
                break
        return emitted

    def _regular_batch(self, batch_number: int) -> Batch:
        fixed_operation = Operation.INSERT if batch_number == 1 else Operation.UPDATE
        keys = [self._key_source(), self._key_source(), *self.fixed_keys]
        operations = [Operation.INSERT, Operation.INSERT, fixed_operation, fixed_operation]
        records = tuple(
            self._ride(key, template, operation)
            for key, template, operation in zip(keys, RIDE_TEMPLATES, operations)
        )
        return Batch(batch_id=batch_number, records=records, created_at=time.time())

    def _terminal_batch(self, batch_number: int) -> Batch:
        record = self._ride(self.deleted_key, RIDE_TEMPLATES[2], Operation.DELETE)
        return Batch(batch_id=batch_number, records=(record,), created_at=time.time(), terminal=True)

    def _ride(self, key: str, template: RideTemplate, operation: Operation) -> ChangeRecord:
        fare = template.fare if template.fare is not None else 1.0 + self._rng.random() * 90
        return ChangeRecord(
            key=key,
            order_value=self._clock(),
            partition=template.city,
            payload={"rider": template.rider, "driver": template.driver, "fare": fare},
            operation=operation,
        )
