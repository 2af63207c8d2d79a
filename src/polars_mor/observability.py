from __future__ import annotations

import logging
from typing import Any, Protocol


class PipelineObserver(Protocol):
    def on_batch_emitted(self, batch: Any) -> None:
        raise NotImplementedError

    def on_stage_start(self, stage: str, barrier_id: int | None) -> None:
        raise NotImplementedError

    def on_stage_end(
        self,
        stage: str,
        barrier_id: int | None,
        duration_s: float,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        raise NotImplementedError

    def on_stale_record(self, record: Any, current: Any) -> None:
        raise NotImplementedError

    def on_checkpoint_committed(self, barrier: Any, metadata: dict[str, Any] | None = None) -> None:
        raise NotImplementedError

    def on_checkpoint_aborted(self, barrier: Any, exc: Exception) -> None:
        raise NotImplementedError

    def on_error(self, stage: str, barrier_id: int | None, exc: Exception) -> None:
        raise NotImplementedError


class LoggingObserver:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("polars_mor")

    def on_batch_emitted(self, batch: Any) -> None:
        self._log(
            "batch_emitted",
            batch_id=getattr(batch, "batch_id", None),
            record_count=len(getattr(batch, "records", ()) or ()),
            terminal=getattr(batch, "terminal", False),
        )

    def on_stage_start(self, stage: str, barrier_id: int | None) -> None:
        self._log("stage_start", stage=stage, barrier_id=barrier_id)

    def on_stage_end(
        self,
        stage: str,
        barrier_id: int | None,
        duration_s: float,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"stage": stage, "barrier_id": barrier_id, "duration_s": duration_s}
        if metadata:
            payload["metadata"] = metadata
        self._log("stage_end", **payload)

    def on_stale_record(self, record: Any, current: Any) -> None:
        self._logger.debug(
            "event=stale_record key=%s order_value=%s current_order_value=%s",
            getattr(record, "key", None),
            getattr(record, "order_value", None),
            getattr(current, "order_value", None),
        )

    def on_checkpoint_committed(self, barrier: Any, metadata: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {
            "barrier_id": getattr(barrier, "barrier_id", None),
            "record_count": getattr(barrier, "record_count", None),
        }
        if metadata:
            payload["metadata"] = metadata
        self._log("checkpoint_committed", **payload)

    def on_checkpoint_aborted(self, barrier: Any, exc: Exception) -> None:
        self._logger.warning(
            "event=checkpoint_aborted barrier_id=%s error=%s",
            getattr(barrier, "barrier_id", None),
            exc,
        )

    def on_error(self, stage: str, barrier_id: int | None, exc: Exception) -> None:
        self._logger.error(
            "event=error stage=%s barrier_id=%s error=%s",
            stage,
            barrier_id,
            exc,
            exc_info=exc,
        )

    def _log(self, event: str, **fields: Any) -> None:
        parts = [f"event={event}"]
        for key, value in fields.items():
            parts.append(f"{key}={value}")
        self._logger.info(" ".join(parts))
