"""Import pipeline data model.

Import models from here:
    from dumpsync.models import FileMetadata, ImportStatus, ImportLogEntry, ...
"""
from dumpsync.models.import_models import (
    FileComparison,
    FileMetadata,
    FreshnessResult,
    ImportFilesInfo,
    ImportLogEntry,
    ImportRecord,
    ImportStatus,
    LastImportMetadata,
    LogLevel,
    RunStatus,
    Step,
)

__all__ = [
    "FileComparison",
    "FileMetadata",
    "FreshnessResult",
    "ImportFilesInfo",
    "ImportLogEntry",
    "ImportRecord",
    "ImportStatus",
    "LastImportMetadata",
    "LogLevel",
    "RunStatus",
    "Step",
]
