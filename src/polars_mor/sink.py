from __future__ import annotations

import logging

from .config import TableConfig
from .errors import ApplyError, PolarsMorError
from .observability import PipelineObserver
from .records import ChangeRecord
from .storage import TableStorage
from .table import TableEntry, TableState, supersedes

logger = logging.getLogger("polars_mor")


class MergeOnReadSink:
    """Applies change records to a key-addressable table.

    Accepted records are written to storage and staged; the staged entries
    only reach ``state`` when the enclosing barrier commits.
    """

    def __init__(
        self,
        config: TableConfig,
        storage: TableStorage,
        observer: PipelineObserver | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.observer = observer
        self.state = TableState()
        self._staged: dict[str, TableEntry] = {}
        self._barrier_id: int | None = None
        self.stale_records = 0

    @property
    def barrier_id(self) -> int | None:
        return self._barrier_id

    @property
    def staged_count(self) -> int:
        return len(self._staged)

    def restore(self) -> TableState:
        snapshot = self.storage.read_snapshot(include_deletes=True)
        self.state = TableState.from_frame(snapshot, self.config)
        self._staged = {}
        self._barrier_id = None
        return self.state

    def begin(self, barrier_id: int) -> None:
        if self._barrier_id is not None:
            raise RuntimeError(f"Barrier {self._barrier_id} is still open")
        self._barrier_id = barrier_id
        self._staged = {}

    def current(self, key: str) -> TableEntry | None:
        staged = self._staged.get(key)
        if staged is not None:
            return staged
        return self.state.entry(key)

    def apply(self, record: ChangeRecord) -> bool:
        """Merge one record; return False when it was stale and ignored."""
        if self._barrier_id is None:
            raise RuntimeError("apply() called outside an open barrier")
        current = self.current(record.key)
        if not supersedes(record, current):
            self.stale_records += 1
            logger.debug(
                "ignoring stale record key=%s order_value=%s current=%s",
                record.key,
                record.order_value,
                current.order_value if current is not None else None,
            )
            if self.observer is not None:
                self.observer.on_stale_record(record, current)
            return False
        try:
            self.storage.durable_write(record.partition, record.key, record.to_row(self.config))
        except PolarsMorError:
            raise
        except Exception as exc:
            raise ApplyError(
                f"write failed for key={record.key!r} partition={record.partition!r}"
            ) from exc
        self._staged[record.key] = TableEntry.from_record(record)
        return True

    def commit(self) -> int:
        """Promote staged entries into the table state."""
        promoted = len(self._staged)
        self.state.apply_committed(self._staged)
        self._staged = {}
        self._barrier_id = None
        return promoted

    def abort(self) -> None:
        self._staged = {}
        self._barrier_id = None
