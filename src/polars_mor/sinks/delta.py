from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import polars as pl


def write_delta(
    df: pl.DataFrame | pl.LazyFrame,
    target: str | Path,
    mode: str = "overwrite",
    *,
    partition_by: Iterable[str] | None = None,
    schema_mode: str | None = None,
    collect_kwargs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    target_path = Path(target)
    target_path.mkdir(parents=True, exist_ok=True)

    if isinstance(df, pl.LazyFrame):
        collect_kwargs = collect_kwargs or {}
        df = df.collect(**collect_kwargs)

    delta_write_options: dict[str, Any] = {}
    if partition_by:
        delta_write_options["partition_by"] = list(partition_by)
    if schema_mode is not None:
        delta_write_options["schema_mode"] = schema_mode
    write_kwargs: dict[str, Any] = {}
    if delta_write_options:
        write_kwargs["delta_write_options"] = delta_write_options
    df.write_delta(str(target_path), mode=mode, **write_kwargs)
    return {"path": str(target_path), "rows": df.height, "mode": mode}
