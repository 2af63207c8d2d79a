from .delta import write_delta

__all__ = [
    "write_delta",
]
