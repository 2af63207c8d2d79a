from __future__ import annotations

from typing import Any, Mapping


def get_option(options: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in options:
            return options[key]
    return default


def compact_options(options: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in options.items() if value is not None}
