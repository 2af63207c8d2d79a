from .version import __version__
from .checkpoints import BarrierState, CheckpointBarrier, FileCheckpointStore
from .config import MERGE_ON_READ, TableConfig
from .coordinator import CheckpointCoordinator
from .errors import (
    ApplyError,
    CheckpointError,
    CheckpointTimeoutError,
    ConfigurationError,
    InvalidRecordError,
    PipelineError,
    PolarsMorError,
)
from .generator import FIXED_KEYS, CancellationToken, ChangeGenerator
from .maintenance import (
    CheckpointInfo,
    CleanupResult,
    cleanup_checkpoint,
    compact_table,
    export_delta,
    inspect_checkpoint,
    vacuum_delta_table,
)
from .cdc import reconcile_log
from .observability import LoggingObserver, PipelineObserver
from .pipeline import Pipeline, RunResult
from .records import Batch, ChangeRecord, Operation, records_from_frame
from .sink import MergeOnReadSink
from .storage import CompactionResult, ParquetLogStorage, TableStorage
from .table import TableEntry, TableState, supersedes

__all__ = [
    "ApplyError",
    "Batch",
    "BarrierState",
    "CancellationToken",
    "ChangeGenerator",
    "ChangeRecord",
    "CheckpointBarrier",
    "CheckpointCoordinator",
    "CheckpointError",
    "CheckpointInfo",
    "CheckpointTimeoutError",
    "CleanupResult",
    "CompactionResult",
    "ConfigurationError",
    "FIXED_KEYS",
    "FileCheckpointStore",
    "InvalidRecordError",
    "LoggingObserver",
    "MERGE_ON_READ",
    "MergeOnReadSink",
    "Operation",
    "ParquetLogStorage",
    "Pipeline",
    "PipelineError",
    "PipelineObserver",
    "PolarsMorError",
    "RunResult",
    "TableConfig",
    "TableEntry",
    "TableState",
    "TableStorage",
    "__version__",
    "cleanup_checkpoint",
    "compact_table",
    "export_delta",
    "inspect_checkpoint",
    "reconcile_log",
    "records_from_frame",
    "supersedes",
    "vacuum_delta_table",
]
