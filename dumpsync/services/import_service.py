"""Import orchestrator: freshness → download → extract → load → cache → checkpoint.

A single ImportService is built per process. Runs are single-flight: the
guard is taken with a non-blocking acquire before the run enters `running`
and released after the terminal transition, so a second trigger is
rejected immediately instead of queued.
"""
import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from dumpsync.core.config import Settings
from dumpsync.core.errors import (
    AlreadyRunningError,
    DatabaseImportError,
    ServiceDisabledError,
    StageError,
    deepest_cause,
)
from dumpsync.importers.checkpoint_store import CheckpointStore
from dumpsync.importers.database_importer import DatabaseImporter
from dumpsync.importers.freshness import FreshnessChecker, FreshnessOptions
from dumpsync.importers.patterns import TargetMatcher
from dumpsync.importers.sftp_downloader import DownloadedFile, SFTPDownloader
from dumpsync.importers.status_tracker import StatusTracker
from dumpsync.importers.zip_extractor import ZIPExtractor
from dumpsync.models.import_models import FileMetadata, ImportLogEntry, ImportStatus, Step
from dumpsync.services.cache import CacheService, NullCache
from dumpsync.services.scheduler import ImportScheduler
from dumpsync.utils.retry import RetryPolicy, is_retryable, run_with_retries

logger = logging.getLogger(__name__)

REASON_NO_REMOTE_FILES = "no remote files matched the configured patterns"

CompletionCallback = Callable[[ImportStatus], None]


def describe_error(error: BaseException) -> str:
    """Status error text: '<step> failed: <message>' plus the root cause when it adds detail."""
    message = str(error) or type(error).__name__
    step = getattr(error, "step", "")
    if step:
        message = f"{step} failed: {message}"
    cause = deepest_cause(error)
    if cause is not error:
        cause_text = str(cause) or type(cause).__name__
        if cause_text not in message:
            message = f"{message} ({cause_text})"
    return message


class ImportService:
    """Owns the scheduler, the single-flight guard and the pipeline stages."""

    def __init__(
        self,
        settings: Settings,
        *,
        downloader: Optional[SFTPDownloader] = None,
        extractor: Optional[ZIPExtractor] = None,
        importer: Optional[DatabaseImporter] = None,
        store: Optional[CheckpointStore] = None,
        cache: Optional[CacheService] = None,
        tracker: Optional[StatusTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        # Parse eagerly so bad target or password lists fail at construction
        self.targets = settings.targets
        per_target = settings.zip_passwords_map
        if per_target:
            logger.debug("Per-target archive passwords for: %s", ", ".join(per_target))
        self.matcher = TargetMatcher(self.targets)

        self.downloader = downloader or SFTPDownloader.from_settings(settings)
        self.extractor = extractor or ZIPExtractor(timeout=settings.zip_extract_timeout_seconds)
        self.importer = importer or DatabaseImporter(
            self.targets,
            timeout=settings.database_timeout_seconds,
            max_error_ratio=settings.max_statement_error_ratio,
        )
        self.store = store or CheckpointStore(settings.metadata_file)
        self.freshness = FreshnessChecker(
            FreshnessOptions(
                enabled=settings.freshness_enabled,
                compare_timestamp=settings.freshness_compare_timestamp,
                compare_size=settings.freshness_compare_size,
                compare_checksum=settings.freshness_compare_checksum,
            ),
            self.store,
        )
        self.cache = cache if cache is not None else NullCache()
        self.tracker = tracker or StatusTracker(
            capacity=settings.log_buffer_size,
            max_retries=settings.retry_max_attempts,
        )
        self.retry_policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        self.staging_dir = Path(settings.temp_dir)

        self._sleep = sleep
        self._guard = threading.Lock()
        self._stopped = threading.Event()
        self._scheduler = ImportScheduler(self._scheduled_tick, settings.import_schedule)
        self._callbacks: list[CompletionCallback] = []
        self._callbacks_lock = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self.settings.import_enabled

    def start(self) -> None:
        """Begin scheduled operation. Raises ConfigurationError on a bad schedule."""
        if not self.enabled:
            logger.info("Import service disabled (IMPORT_ENABLED=false)")
            self.tracker.log_info(Step.INITIALIZATION, "Import service disabled")
            return
        self._stopped.clear()
        self._scheduler.start()
        next_run = self._scheduler.next_run_time()
        self.tracker.set_next_scheduled(next_run)
        self.tracker.log_info(
            Step.INITIALIZATION,
            f"Import service started, schedule '{self.settings.import_schedule}'",
        )

    def stop(self) -> None:
        """Prevent further scheduled runs. An in-flight run finishes on its own."""
        self._stopped.set()
        self._scheduler.shutdown()
        self.tracker.set_next_scheduled(None)
        logger.info("Import service stopped")

    # ── Triggers ─────────────────────────────────────────────────────

    def trigger_manual_import(self) -> None:
        """
        Start a run in a background thread and return immediately.

        Raises:
            ServiceDisabledError: IMPORT_ENABLED is off.
            AlreadyRunningError: another run holds the guard.
        """
        if not self.enabled:
            raise ServiceDisabledError()
        if not self._guard.acquire(blocking=False):
            raise AlreadyRunningError()
        try:
            self._begin_run("Manual import triggered")
            worker = threading.Thread(target=self._run_and_release, name="manual-import", daemon=True)
            worker.start()
        except BaseException:
            self._guard.release()
            raise

    def run_import_now(self, force: bool = False) -> ImportStatus:
        """Run synchronously in the calling thread and return the final status.

        force=True runs even when the service is disabled (CLI use).
        """
        if not self.enabled and not force:
            raise ServiceDisabledError()
        if not self._guard.acquire(blocking=False):
            raise AlreadyRunningError()
        try:
            self._begin_run("Import started from command line")
        except BaseException:
            self._guard.release()
            raise
        self._run_and_release()
        return self.tracker.get_status()

    def _scheduled_tick(self) -> None:
        if self._stopped.is_set():
            return
        if not self._guard.acquire(blocking=False):
            self.tracker.log_warning(Step.INITIALIZATION, "Scheduled import skipped: a run is already in progress")
            return
        try:
            self._begin_run("Scheduled import triggered")
        except BaseException:
            self._guard.release()
            raise
        self._run_and_release()

    def _begin_run(self, message: str) -> None:
        # caller holds the guard
        self.tracker.begin_run(max_retries=self.retry_policy.max_attempts)
        self.tracker.update_status(Step.INITIALIZATION, message, 0)

    def _run_and_release(self) -> None:
        try:
            succeeded = self._run_pipeline()
        finally:
            self._guard.release()
        self.tracker.set_next_scheduled(self._scheduler.next_run_time())
        if succeeded:
            self._notify_completion()

    # ── Pipeline ─────────────────────────────────────────────────────

    def _run_pipeline(self) -> bool:
        """Run every stage; always ends in a terminal status. True on success."""
        started = time.monotonic()
        try:
            if not self._execute():
                return False
        except Exception as e:
            if not isinstance(e, StageError):
                logger.exception("Unexpected error during import")
            self._fail(e)
            return False
        self.tracker.mark_success(duration=time.monotonic() - started)
        return True

    def _execute(self) -> bool:
        """Stages in order. Returns False when the run was skipped."""
        t = self.tracker
        settings = self.settings

        # Freshness
        t.update_status(Step.CHECKING_FRESHNESS, "Checking remote files", 10)
        remote = self._with_retries(self.downloader.list_files, "Listing remote files", Step.CHECKING_FRESHNESS)
        if not remote:
            t.mark_skipped(REASON_NO_REMOTE_FILES, Step.CHECKING_FRESHNESS)
            return False
        freshness = self.freshness.check(remote)
        t.update_status(
            Step.CHECKING_FRESHNESS,
            f"Freshness check: {freshness.reason} ({len(remote)} remote file(s))",
            15,
        )
        if not freshness.should_import and settings.freshness_skip_if_not_newer:
            t.mark_skipped(freshness.reason, Step.CHECKING_FRESHNESS)
            return False

        # Download
        self._reset_staging()
        t.update_status(Step.DOWNLOAD, f"Downloading {len(remote)} file(s)", 20)
        downloads: list[DownloadedFile] = self._with_retries(
            lambda: self.downloader.download_files(remote, self.staging_dir / "download"),
            "Download",
            Step.DOWNLOAD,
        )
        for d in downloads:
            t.log_progress(Step.DOWNLOAD, f"Downloaded {d.path.name}", d.metadata.size)
        t.update_files_info(
            remote_files=freshness.remote_files,
            last_imported=freshness.last_imported,
            downloaded=[d.path.name for d in downloads],
        )
        t.update_status(Step.DOWNLOAD, "Download completed", 40)

        # Extraction
        t.update_status(Step.EXTRACTION, f"Extracting {len(downloads)} archive(s)", 50)
        extracted: list[Path] = []
        for d in downloads:
            extracted.extend(self._extract(d))
        t.update_files_info(extracted=[p.name for p in extracted])
        dumps = self.extractor.find_database_dumps(extracted, self.matcher)
        t.update_status(
            Step.EXTRACTION,
            f"Extraction completed: {len(extracted)} file(s), {len(dumps)} database dump(s)",
            60,
        )

        # Load
        t.update_status(Step.DATABASE_IMPORT, "Importing databases", 70)
        if not dumps:
            raise DatabaseImportError(
                ", ".join(target.name for target in self.targets),
                "no extracted dump file matched any target database",
            )
        imported = self.importer.import_databases(
            dumps,
            on_imported=lambda name, path: t.log_info(Step.DATABASE_IMPORT, f"Imported {path.name} into {name}"),
        )
        t.update_files_info(imported=imported)
        t.update_status(Step.DATABASE_IMPORT, f"Imported {len(imported)} database(s)", 85)

        # Cache
        t.update_status(Step.CACHE_CLEANUP, "Invalidating query cache", 90)
        try:
            self.cache.invalidate()
        except Exception as e:
            logger.exception("Cache invalidation failed")
            t.log_warning(Step.CACHE_CLEANUP, "Cache invalidation failed", error=str(e))

        # Checkpoint + cleanup
        t.update_status(Step.CLEANUP, "Saving import checkpoint", 95)
        self.store.save(self._checkpoint_files(downloads))
        if settings.cleanup_on_success:
            self._remove_staging()
        t.update_status(Step.CLEANUP, "Cleanup completed", 98)
        return True

    def _extract(self, download: DownloadedFile) -> list[Path]:
        path = download.path
        if path.suffix.lower() != ".zip":
            return [path]
        target = download.metadata.database or self.matcher.target_for(path.name)
        password = self.settings.password_for(target)
        out_dir = self.staging_dir / "extracted" / path.stem
        files = self._with_retries(
            lambda: self.extractor.extract_file(path, out_dir, password),
            f"Extracting {path.name}",
            Step.EXTRACTION,
        )
        self.tracker.log_info(Step.EXTRACTION, f"Extracted {len(files)} file(s) from {path.name}")
        return files

    def _checkpoint_files(self, downloads: list[DownloadedFile]) -> list[FileMetadata]:
        return [
            d.metadata.model_copy(
                update={
                    "imported": True,
                    "is_newer": False,
                    "database": d.metadata.database or self.matcher.target_for(d.path.name),
                }
            )
            for d in downloads
        ]

    def _with_retries(self, operation: Callable[[], Any], description: str, step: str) -> Any:
        """Run a transient stage under the attempt bound, recording each failure."""

        def on_failure(attempt: int, error: Exception, delay: Optional[float]) -> None:
            if not is_retryable(error):
                return
            self.tracker.increment_retry_count()
            if delay is not None:
                self.tracker.log_warning(
                    step,
                    f"{description} failed (attempt {attempt}/{self.retry_policy.max_attempts}), "
                    f"retrying in {delay:.0f}s",
                    error=str(error),
                )

        return run_with_retries(
            operation,
            self.retry_policy,
            description=description,
            on_failure=on_failure,
            sleep=self._sleep,
        )

    def _fail(self, error: Exception) -> None:
        step = getattr(error, "step", "") or self.tracker.get_status().current_step
        if self.settings.keep_failed_files:
            if self.staging_dir.exists():
                self.tracker.log_info(step, f"Keeping staging files in {self.staging_dir}")
        else:
            self._remove_staging()
        self.tracker.mark_failed(describe_error(error), step)

    def _reset_staging(self) -> None:
        self._remove_staging()
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def _remove_staging(self) -> None:
        ZIPExtractor.cleanup(self.staging_dir)

    # ── Callbacks ────────────────────────────────────────────────────

    def add_completion_callback(self, callback: CompletionCallback) -> None:
        """Called with the final status after every successful import."""
        with self._callbacks_lock:
            self._callbacks.append(callback)

    def _notify_completion(self) -> None:
        with self._callbacks_lock:
            callbacks = list(self._callbacks)
        status = self.tracker.get_status()
        for callback in callbacks:
            try:
                callback(status)
            except Exception:
                logger.exception("Import completion callback %r failed", callback)

    # ── Queries ──────────────────────────────────────────────────────

    def get_status(self) -> ImportStatus:
        return self.tracker.get_status()

    def get_logs(self, limit: int = 100) -> list[ImportLogEntry]:
        return self.tracker.get_logs(limit)

    def is_running(self) -> bool:
        return self._guard.locked()

    def test_connection(self) -> int:
        """Check the remote host is reachable. Returns the remote entry count."""
        try:
            count = self.downloader.test_connection()
        except StageError as e:
            self.tracker.log_error(Step.INITIALIZATION, "Connection test failed", error=describe_error(e))
            raise
        self.tracker.log_info(Step.INITIALIZATION, f"Connection test succeeded ({count} remote entries)")
        return count

    def get_health(self) -> dict[str, Any]:
        status = self.tracker.get_status()
        return {
            "enabled": self.enabled,
            "scheduler_running": self._scheduler.running,
            "status": status.status.value,
            "last_success": status.last_success.isoformat() if status.last_success else None,
            "next_scheduled": status.next_scheduled.isoformat() if status.next_scheduled else None,
            "errors_in_log": self.tracker.error_count(),
        }

    def get_config_summary(self) -> dict[str, Any]:
        """Effective configuration with secrets left out."""
        s = self.settings
        return {
            "enabled": s.import_enabled,
            "schedule": s.import_schedule,
            "remote": {
                "host": s.scp_host,
                "port": s.scp_port,
                "username": s.scp_username,
                "remote_path": s.scp_remote_path,
                "file_patterns": s.file_patterns_list,
                "timeout_seconds": s.scp_timeout_seconds,
            },
            "targets": [{"name": t.name, "file_pattern": t.file_pattern} for t in self.targets],
            "freshness": {
                "enabled": s.freshness_enabled,
                "compare_timestamp": s.freshness_compare_timestamp,
                "compare_size": s.freshness_compare_size,
                "compare_checksum": s.freshness_compare_checksum,
                "skip_if_not_newer": s.freshness_skip_if_not_newer,
            },
            "retry": {
                "max_attempts": s.retry_max_attempts,
                "delay_seconds": s.retry_delay_seconds,
                "max_delay_seconds": s.retry_max_delay_seconds,
            },
            "storage": {
                "temp_dir": s.temp_dir,
                "metadata_file": s.metadata_file,
                "cleanup_on_success": s.cleanup_on_success,
                "keep_failed_files": s.keep_failed_files,
            },
        }
