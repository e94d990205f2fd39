"""Pydantic models for import status, logs, freshness and the checkpoint."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Closed set of run states."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.SKIPPED)


class LogLevel(str, Enum):
    """Closed set of operator log levels."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    DEBUG = "DEBUG"


class Step:
    """Step names reported in status and log entries."""

    INITIALIZATION = "initialization"
    CHECKING_FRESHNESS = "checking_file_freshness"
    DOWNLOAD = "download"
    EXTRACTION = "extraction"
    DATABASE_IMPORT = "importing_database"
    CACHE_CLEANUP = "cache_cleanup"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


class FileMetadata(BaseModel):
    """A remote dump file, as listed or as recorded in the checkpoint."""

    filename: str
    size: int = 0
    mod_time: datetime
    checksum: Optional[str] = None
    pattern: Optional[str] = None
    database: Optional[str] = None
    imported: bool = False
    is_newer: bool = False


class FileComparison(BaseModel):
    """Outcome of comparing one remote file with its last-imported twin."""

    remote_file: FileMetadata
    last_file: Optional[FileMetadata] = None
    is_newer: bool = False
    reasons: list[str] = Field(default_factory=list)


class FreshnessResult(BaseModel):
    """Skip-vs-proceed decision for one run."""

    should_import: bool
    reason: str
    remote_files: list[FileMetadata] = Field(default_factory=list)
    last_imported: list[FileMetadata] = Field(default_factory=list)
    comparisons: list[FileComparison] = Field(default_factory=list)


class ImportRecord(BaseModel):
    """Details of the last successful import."""

    timestamp: datetime
    success: bool = True
    files: list[FileMetadata] = Field(default_factory=list)


class LastImportMetadata(BaseModel):
    """On-disk checkpoint document."""

    last_import: ImportRecord


class ImportFilesInfo(BaseModel):
    """Files touched by the current run."""

    remote_files: list[FileMetadata] = Field(default_factory=list)
    last_imported: list[FileMetadata] = Field(default_factory=list)
    downloaded: list[str] = Field(default_factory=list)
    extracted: list[str] = Field(default_factory=list)
    imported: list[str] = Field(default_factory=list)


class ImportStatus(BaseModel):
    """Snapshot of the current (or last) run."""

    status: RunStatus = RunStatus.IDLE
    progress: int = 0
    current_step: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_success: Optional[datetime] = None
    next_scheduled: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 2
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    files_info: Optional[ImportFilesInfo] = None


class ImportLogEntry(BaseModel):
    """One operator-facing log line."""

    timestamp: datetime
    level: LogLevel
    message: str
    step: str
    error: Optional[str] = None
    duration: Optional[str] = None
    file_size: Optional[int] = None
