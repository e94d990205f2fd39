"""In-memory import status and bounded operator log.

One StatusTracker is built per process and shared by the scheduler thread,
manual-trigger threads and HTTP handlers. Every read returns a copy taken
under the lock, so callers never hold a live reference.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from dumpsync.models.import_models import (
    FileMetadata,
    ImportFilesInfo,
    ImportLogEntry,
    ImportStatus,
    LogLevel,
    RunStatus,
    Step,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 1000

_STD_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StatusTracker:
    """Thread-safe holder of one ImportStatus and a ring buffer of log entries."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY, max_retries: int = 2):
        if capacity < 1:
            raise ValueError("log capacity must be >= 1")
        self._lock = threading.Lock()
        self._status = ImportStatus(max_retries=max_retries)
        self._logs: deque[ImportLogEntry] = deque(maxlen=capacity)
        self._capacity = capacity

    @property
    def capacity(self) -> int:
        return self._capacity

    # ── Reads ────────────────────────────────────────────────────────

    def get_status(self) -> ImportStatus:
        """Deep copy of the current status."""
        with self._lock:
            return self._status.model_copy(deep=True)

    def get_logs(self, limit: int = 100, level: Optional[LogLevel] = None) -> list[ImportLogEntry]:
        """Up to `limit` most recent entries, oldest first."""
        with self._lock:
            entries = list(self._logs)
        if level is not None:
            entries = [e for e in entries if e.level == level]
        if limit <= 0:
            return []
        return [e.model_copy() for e in entries[-limit:]]

    def get_logs_since(self, since: datetime) -> list[ImportLogEntry]:
        with self._lock:
            return [e.model_copy() for e in self._logs if e.timestamp > since]

    def error_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._logs if e.level == LogLevel.ERROR)

    def warning_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._logs if e.level == LogLevel.WARN)

    def is_running(self) -> bool:
        with self._lock:
            return self._status.status == RunStatus.RUNNING

    def get_status_summary(self) -> str:
        """One-line human summary of the current state."""
        with self._lock:
            s = self._status
            if s.status == RunStatus.IDLE:
                if s.last_success:
                    return f"Idle (Last success: {s.last_success:%Y-%m-%d %H:%M})"
                return "Idle (Never run)"
            if s.status == RunStatus.RUNNING:
                return f"Running: {s.current_step} ({s.progress}%)"
            if s.status == RunStatus.SUCCESS:
                if s.completed_at:
                    return f"Success (Completed: {s.completed_at:%Y-%m-%d %H:%M})"
                return "Success"
            if s.status == RunStatus.FAILED:
                return f"Failed: {s.error}"
            return f"Skipped: {s.skip_reason}"

    # ── Run lifecycle ────────────────────────────────────────────────

    def begin_run(self, max_retries: Optional[int] = None) -> None:
        """Enter `running`: reset per-run fields and stamp started_at."""
        with self._lock:
            s = self._status
            s.status = RunStatus.RUNNING
            s.progress = 0
            s.current_step = Step.INITIALIZATION
            s.started_at = _now()
            s.completed_at = None
            s.retry_count = 0
            if max_retries is not None:
                s.max_retries = max_retries
            s.error = None
            s.skip_reason = None
            s.files_info = None
            self._append(LogLevel.INFO, Step.INITIALIZATION, "Import started")

    def update_status(self, step: str, message: str, progress: int) -> None:
        """Set step and progress and append an INFO entry, atomically.

        Progress is clamped to 0-100 and never moves backwards during a run.
        """
        progress = max(0, min(100, int(progress)))
        with self._lock:
            s = self._status
            s.current_step = step
            if s.status == RunStatus.RUNNING:
                s.progress = max(s.progress, progress)
            else:
                s.progress = progress
            self._append(LogLevel.INFO, step, message)

    def mark_success(self, duration: Optional[float] = None) -> None:
        with self._lock:
            now = _now()
            s = self._status
            s.status = RunStatus.SUCCESS
            s.progress = 100
            s.current_step = Step.COMPLETED
            s.completed_at = now
            s.last_success = now
            s.error = None
            s.skip_reason = None
            self._append(
                LogLevel.INFO,
                Step.COMPLETED,
                "Import completed successfully",
                duration=_format_duration(duration),
            )

    def mark_failed(self, error: str, step: Optional[str] = None) -> None:
        with self._lock:
            s = self._status
            s.status = RunStatus.FAILED
            s.completed_at = _now()
            s.error = error
            self._append(LogLevel.ERROR, step or s.current_step, "Import failed", error=error)

    def mark_skipped(self, reason: str, step: Optional[str] = None) -> None:
        with self._lock:
            s = self._status
            s.status = RunStatus.SKIPPED
            s.progress = 100
            s.current_step = Step.COMPLETED
            s.completed_at = _now()
            s.skip_reason = reason
            s.error = None
            self._append(LogLevel.INFO, step or Step.CHECKING_FRESHNESS, f"Import skipped: {reason}")

    # ── Field setters ────────────────────────────────────────────────

    def set_retry_count(self, retry_count: int) -> None:
        with self._lock:
            self._status.retry_count = min(retry_count, self._status.max_retries)

    def increment_retry_count(self) -> int:
        """Count one failed attempt; never exceeds max_retries."""
        with self._lock:
            s = self._status
            s.retry_count = min(s.retry_count + 1, s.max_retries)
            return s.retry_count

    def set_max_retries(self, max_retries: int) -> None:
        with self._lock:
            self._status.max_retries = max_retries

    def set_next_scheduled(self, next_time: Optional[datetime]) -> None:
        with self._lock:
            self._status.next_scheduled = next_time

    def set_files_info(self, files_info: Optional[ImportFilesInfo]) -> None:
        with self._lock:
            self._status.files_info = files_info.model_copy(deep=True) if files_info else None

    def update_files_info(
        self,
        remote_files: Optional[list[FileMetadata]] = None,
        last_imported: Optional[list[FileMetadata]] = None,
        downloaded: Optional[list[str]] = None,
        extracted: Optional[list[str]] = None,
        imported: Optional[list[str]] = None,
    ) -> None:
        """Replace the given lists on files_info, creating it if needed."""
        with self._lock:
            info = self._status.files_info or ImportFilesInfo()
            if remote_files is not None:
                info.remote_files = [f.model_copy() for f in remote_files]
            if last_imported is not None:
                info.last_imported = [f.model_copy() for f in last_imported]
            if downloaded is not None:
                info.downloaded = list(downloaded)
            if extracted is not None:
                info.extracted = list(extracted)
            if imported is not None:
                info.imported = list(imported)
            self._status.files_info = info

    # ── Log helpers ──────────────────────────────────────────────────

    def log_info(self, step: str, message: str) -> None:
        self._log(LogLevel.INFO, step, message)

    def log_debug(self, step: str, message: str) -> None:
        self._log(LogLevel.DEBUG, step, message)

    def log_warning(self, step: str, message: str, error: Optional[str] = None) -> None:
        self._log(LogLevel.WARN, step, message, error=error)

    def log_error(self, step: str, message: str, error: Optional[str] = None) -> None:
        self._log(LogLevel.ERROR, step, message, error=error)

    def log_progress(self, step: str, message: str, file_size: int) -> None:
        self._log(LogLevel.INFO, step, message, file_size=file_size)

    def log_duration(self, step: str, message: str, seconds: float) -> None:
        self._log(LogLevel.INFO, step, message, duration=_format_duration(seconds))

    def clear_logs(self) -> None:
        with self._lock:
            self._logs.clear()

    def reset(self) -> None:
        """Back to a fresh idle status with an empty log."""
        with self._lock:
            self._status = ImportStatus(max_retries=self._status.max_retries)
            self._logs.clear()

    def _log(self, level: LogLevel, step: str, message: str, **extra) -> None:
        with self._lock:
            self._append(level, step, message, **extra)

    def _append(
        self,
        level: LogLevel,
        step: str,
        message: str,
        error: Optional[str] = None,
        duration: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> None:
        # caller holds self._lock
        entry = ImportLogEntry(
            timestamp=_now(),
            level=level,
            message=message,
            step=step,
            error=error,
            duration=duration,
            file_size=file_size,
        )
        self._logs.append(entry)
        if error:
            logger.log(_STD_LEVELS[level], "[%s] %s (error: %s)", step, message, error)
        else:
            logger.log(_STD_LEVELS[level], "[%s] %s", step, message)


def _format_duration(seconds: Optional[float]) -> Optional[str]:
    if seconds is None:
        return None
    return f"{seconds:.1f}s"
