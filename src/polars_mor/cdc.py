from __future__ import annotations

from typing import Any, Iterable

import polars as pl

from .records import CHANGE_TYPE_COL

BARRIER_COL = "_barrier_id"
SEQ_COL = "_seq"
DELETED_COL = "_deleted"


def reconcile_log(
    log: pl.DataFrame | pl.LazyFrame,
    *,
    keys: Iterable[str],
    change_type_col: str = CHANGE_TYPE_COL,
    change_type_map: dict[str, str] | None = None,
    order_cols: Iterable[str] = (BARRIER_COL, SEQ_COL),
    include_deletes: bool = False,
    collect_kwargs: dict[str, Any] | None = None,
) -> pl.DataFrame:
    """Merge an ordered change log into the latest row per key.

    Every row in the log is a write the sink already accepted, so the last
    row per key in commit order wins. Deleted keys are dropped unless
    ``include_deletes`` is set, in which case they are kept with
    ``_deleted=True`` and no payload.
    """
    log_df = _collect_if_lazy(log, collect_kwargs)
    if log_df is None or log_df.is_empty():
        return pl.DataFrame()

    if change_type_map:
        log_df = _normalize_change_types(log_df, change_type_col, change_type_map)
    key_list = _validate_log(log_df, keys, change_type_col)

    sort_cols = [col for col in order_cols if col in log_df.columns]
    if sort_cols:
        log_df = log_df.sort(sort_cols, maintain_order=True)
    latest = log_df.unique(subset=key_list, keep="last", maintain_order=True)
    latest = latest.with_columns((pl.col(change_type_col) == "delete").alias(DELETED_COL))
    if not include_deletes:
        latest = latest.filter(~pl.col(DELETED_COL)).drop(DELETED_COL)
    return _strip_log_columns(latest, change_type_col)


def _collect_if_lazy(
    df: pl.DataFrame | pl.LazyFrame | None,
    collect_kwargs: dict[str, Any] | None,
) -> pl.DataFrame | None:
    if df is None:
        return None
    if isinstance(df, pl.LazyFrame):
        collect_kwargs = collect_kwargs or {}
        return df.collect(**collect_kwargs)
    return df


def _validate_log(
    df: pl.DataFrame,
    keys: Iterable[str],
    change_type_col: str,
) -> list[str]:
    key_list = list(keys)
    if not key_list:
        raise ValueError("keys must include at least one column")
    for key in key_list:
        if key not in df.columns:
            raise ValueError(f"Missing key column: {key}")
    if change_type_col not in df.columns:
        raise ValueError(f"Missing change type column: {change_type_col}")
    return key_list


def _normalize_change_types(
    df: pl.DataFrame,
    change_type_col: str,
    change_type_map: dict[str, str],
) -> pl.DataFrame:
    if not change_type_map:
        return df
    mapping = dict(change_type_map)
    return df.with_columns(
        pl.col(change_type_col)
        .replace_strict(mapping, default=pl.col(change_type_col))
        .alias(change_type_col)
    )


def _strip_log_columns(df: pl.DataFrame, change_type_col: str) -> pl.DataFrame:
    drop_cols = [change_type_col, BARRIER_COL, SEQ_COL]
    drop_cols = [col for col in drop_cols if col in df.columns]
    return df.drop(drop_cols) if drop_cols else df
