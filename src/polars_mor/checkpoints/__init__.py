from .file import FileCheckpointStore
from .types import BARRIER_TRANSITIONS, BarrierState, CheckpointBarrier

__all__ = [
    "BARRIER_TRANSITIONS",
    "BarrierState",
    "CheckpointBarrier",
    "FileCheckpointStore",
]
