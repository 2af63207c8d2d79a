from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import tomllib

from .errors import ConfigurationError
from .utils.options import compact_options, get_option

MERGE_ON_READ = "MERGE_ON_READ"

_TABLE_TYPE_ALIASES = {
    "MERGE_ON_READ": MERGE_ON_READ,
    "MOR": MERGE_ON_READ,
}

BASE_PATH_ENV = "POLARS_MOR_BASE_PATH"
CHECKPOINT_PATH_ENV = "POLARS_MOR_CHECKPOINT_PATH"


@dataclass(frozen=True)
class TableConfig:
    """Immutable configuration for a merge-on-read table and its checkpointing.

    Validated at construction; any problem raises ``ConfigurationError``.
    """

    table_name: str
    base_path: str | Path
    checkpoint_dir: str | Path | None = None
    table_type: str = MERGE_ON_READ
    precombine_field: str = "ts"
    record_key_field: str = "uuid"
    partition_field: str = "city"
    checkpoint_interval_ms: int = 5000
    checkpoint_timeout_ms: int = 60000
    min_pause_between_checkpoints_ms: int = 10000
    ignore_failed: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.table_name, str) or not self.table_name.strip():
            raise ConfigurationError("table_name is required")
        if self.base_path is None or not str(self.base_path).strip():
            raise ConfigurationError("base_path is required")
        object.__setattr__(self, "base_path", Path(self.base_path))
        if self.checkpoint_dir is None:
            object.__setattr__(self, "checkpoint_dir", self.base_path / ".checkpoint")
        else:
            if not str(self.checkpoint_dir).strip():
                raise ConfigurationError("checkpoint_dir must not be empty")
            object.__setattr__(self, "checkpoint_dir", Path(self.checkpoint_dir))

        normalized_type = _TABLE_TYPE_ALIASES.get(str(self.table_type).strip().upper())
        if normalized_type is None:
            raise ConfigurationError(
                f"Unsupported table type: {self.table_type!r} (only {MERGE_ON_READ} is supported)"
            )
        object.__setattr__(self, "table_type", normalized_type)

        field_names = {
            "precombine_field": self.precombine_field,
            "record_key_field": self.record_key_field,
            "partition_field": self.partition_field,
        }
        for name, value in field_names.items():
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"{name} must be a non-empty column name")
            if value.startswith("_"):
                raise ConfigurationError(f"{name} must not start with '_': {value!r}")
        if len(set(field_names.values())) != len(field_names):
            raise ConfigurationError(f"Key, precombine and partition fields must differ: {field_names}")

        for name in ("checkpoint_interval_ms", "min_pause_between_checkpoints_ms"):
            _require_int(name, getattr(self, name), minimum=0)
        _require_int("checkpoint_timeout_ms", self.checkpoint_timeout_ms, minimum=1)
        if not isinstance(self.ignore_failed, bool):
            raise ConfigurationError("ignore_failed must be a bool")

    @property
    def checkpoint_path(self) -> Path:
        return Path(self.checkpoint_dir)

    @property
    def reserved_columns(self) -> tuple[str, str, str]:
        return (self.record_key_field, self.precombine_field, self.partition_field)

    @classmethod
    def from_options(cls, table_name: str, options: Mapping[str, Any]) -> "TableConfig":
        """Build a config from loose option keys (Hudi-style names are accepted)."""
        resolved = compact_options(
            {
                "base_path": get_option(options, "base_path", "path", "hoodie.base.path"),
                "checkpoint_dir": get_option(
                    options, "checkpoint_dir", "checkpoint_path", "checkpoint.storage"
                ),
                "table_type": get_option(options, "table_type", "table.type"),
                "precombine_field": get_option(
                    options, "precombine_field", "precombine.field", "write.precombine.field"
                ),
                "record_key_field": get_option(
                    options,
                    "record_key_field",
                    "recordkey.field",
                    "hoodie.datasource.write.recordkey.field",
                ),
                "partition_field": get_option(
                    options,
                    "partition_field",
                    "partitionpath.field",
                    "hoodie.datasource.write.partitionpath.field",
                ),
                "checkpoint_interval_ms": get_option(
                    options, "checkpoint_interval_ms", "checkpoint.interval"
                ),
                "checkpoint_timeout_ms": get_option(
                    options, "checkpoint_timeout_ms", "checkpoint.timeout"
                ),
                "min_pause_between_checkpoints_ms": get_option(
                    options, "min_pause_between_checkpoints_ms", "checkpoint.min-pause"
                ),
                "ignore_failed": get_option(options, "ignore_failed", "write.ignore.failed"),
            }
        )
        if "base_path" not in resolved:
            raise ConfigurationError("base_path is required")
        for name in _INT_OPTIONS:
            if name in resolved:
                resolved[name] = _coerce_int(name, resolved[name])
        if "ignore_failed" in resolved:
            resolved["ignore_failed"] = _coerce_bool("ignore_failed", resolved["ignore_failed"])
        known = {f.name for f in fields(cls)}
        unknown = [key for key in options if key not in known and not _is_alias(key)]
        if unknown:
            raise ConfigurationError(f"Unknown table options: {sorted(unknown)}")
        return cls(table_name=table_name, **resolved)

    @classmethod
    def from_file(cls, path: str | Path) -> "TableConfig":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        if path.suffix == ".json":
            payload = json.loads(path.read_text())
        elif path.suffix == ".toml":
            payload = tomllib.loads(path.read_text())
        else:
            raise ConfigurationError(f"Unsupported config file type: {path.suffix}")
        table = payload.get("table", payload)
        if not isinstance(table, Mapping):
            raise ConfigurationError("Config must contain a 'table' mapping")
        options = dict(table)
        name = options.pop("table_name", None) or options.pop("name", None)
        if name is None:
            raise ConfigurationError(f"Config {path} is missing 'table_name'")
        return cls.from_options(str(name), options)

    @classmethod
    def from_env(
        cls,
        table_name: str,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> "TableConfig":
        env = os.environ if environ is None else environ
        base_path = env.get(BASE_PATH_ENV)
        if not base_path:
            raise ConfigurationError(f"{BASE_PATH_ENV} is not set")
        return cls(
            table_name=table_name,
            base_path=base_path,
            checkpoint_dir=env.get(CHECKPOINT_PATH_ENV) or None,
            **overrides,
        )


_OPTION_ALIASES = {
    "path",
    "hoodie.base.path",
    "checkpoint_path",
    "checkpoint.storage",
    "table.type",
    "precombine.field",
    "write.precombine.field",
    "recordkey.field",
    "hoodie.datasource.write.recordkey.field",
    "partitionpath.field",
    "hoodie.datasource.write.partitionpath.field",
    "checkpoint.interval",
    "checkpoint.timeout",
    "checkpoint.min-pause",
    "write.ignore.failed",
}


_INT_OPTIONS = (
    "checkpoint_interval_ms",
    "checkpoint_timeout_ms",
    "min_pause_between_checkpoints_ms",
)

def _is_alias(key: str) -> bool:
    return key in _OPTION_ALIASES


def _require_int(name: str, value: Any, *, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer number of milliseconds")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")


def _coerce_int(name: str, value: Any) -> Any:
    """Parse digit strings such as ``"5000"``; non-strings are left for validation."""
    if isinstance(value, str):
        text = value.strip()
        digits = text[1:] if text[:1] in ("+", "-") else text
        if digits.isdigit():
            return int(text)
        raise ConfigurationError(f"{name} must be an integer number of milliseconds, got {value!r}")
    return value


def _coerce_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")
