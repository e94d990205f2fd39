"""End-to-end tests for the import orchestrator.

The remote host is faked; extraction and database load run for real against
ZipCrypto archives and temporary sqlite files.
"""
import shutil
import threading
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, text

from dumpsync.core.errors import (
    AlreadyRunningError,
    ConfigurationError,
    ExtractionError,
    ServiceDisabledError,
    TransferError,
)
from dumpsync.importers.sftp_downloader import DownloadedFile, calculate_checksum
from dumpsync.models.import_models import FileMetadata, LogLevel, RunStatus, Step
from dumpsync.services.cache import InMemoryCache
from dumpsync.services.import_service import REASON_NO_REMOTE_FILES, ImportService, describe_error
from tests.conftest import BASE_TIME, write_encrypted_zip, write_zip

PASSWORD = "s3cret"
MVDSB_SQL = b"CREATE TABLE players (id INTEGER PRIMARY KEY, name TEXT);\nINSERT INTO players VALUES (1, 'Ann');\n"
PORTAL_SQL = b"CREATE TABLE clubs (id INTEGER PRIMARY KEY);\nINSERT INTO clubs VALUES (7);\n"


class FakeRemote:
    """In-process stand-in for the SFTP host: a directory plus scripted failures."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.mtimes: dict[str, object] = {}
        self.list_errors: list[Exception] = []
        self.download_errors: list[Exception] = []
        self.list_gate: threading.Event | None = None
        self.list_calls = 0
        self.download_calls = 0

    def put_encrypted(self, name, members, password=PASSWORD, mod_time=BASE_TIME):
        write_encrypted_zip(self.root / name, members, password)
        self.mtimes[name] = mod_time

    def put_plain(self, name, members, mod_time=BASE_TIME):
        write_zip(self.root / name, members)
        self.mtimes[name] = mod_time

    def list_files(self):
        self.list_calls += 1
        if self.list_gate is not None:
            self.list_gate.wait(10)
        if self.list_errors:
            raise self.list_errors.pop(0)
        return [
            FileMetadata(filename=p.name, size=p.stat().st_size, mod_time=self.mtimes[p.name])
            for p in sorted(self.root.iterdir())
        ]

    def download_files(self, files, local_dir):
        self.download_calls += 1
        if self.download_errors:
            raise self.download_errors.pop(0)
        local_dir = Path(local_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
        out = []
        for meta in files:
            dest = local_dir / meta.filename
            shutil.copyfile(self.root / meta.filename, dest)
            out.append(DownloadedFile(path=dest, metadata=meta.model_copy(update={"checksum": calculate_checksum(dest)})))
        return out

    def test_connection(self):
        return len(list(self.root.iterdir()))


@pytest.fixture()
def remote(tmp_path):
    return FakeRemote(tmp_path / "remote")


@pytest.fixture()
def cache():
    return InMemoryCache()


@pytest.fixture()
def build(make_settings, remote, cache):
    """Factory: ImportService wired to the fake remote, real extractor and loader."""

    def _build(sleep=None, **overrides):
        overrides.setdefault("zip_password", PASSWORD)
        settings = make_settings(**overrides)
        return ImportService(settings, downloader=remote, cache=cache, sleep=sleep or MagicMock())

    return _build


def _query(svc: ImportService, target: str, sql: str):
    url = next(t.url for t in svc.targets if t.name == target)
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            return conn.execute(text(sql)).fetchall()
    finally:
        engine.dispose()


def _wait_terminal(svc: ImportService, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = svc.get_status()
        if status.status.is_terminal and not svc.is_running():
            return status
        time.sleep(0.01)
    raise AssertionError("import did not finish in time")


# ── Happy path ───────────────────────────────────────────────────────

@pytest.mark.integration
class TestSuccessfulImport:

    def test_first_run_imports_everything(self, build, remote, cache):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        remote.put_encrypted("portal64_bdw_20240601.zip", {"portal64_bdw.sql": PORTAL_SQL})
        svc = build()

        status = svc.run_import_now()

        assert status.status == RunStatus.SUCCESS, status.error
        assert status.progress == 100
        assert status.last_success is not None
        assert status.completed_at is not None
        assert status.files_info.imported == ["mvdsb", "portal64_bdw"]
        assert sorted(status.files_info.downloaded) == ["mvdsb_20240601.zip", "portal64_bdw_20240601.zip"]
        assert _query(svc, "mvdsb", "SELECT name FROM players") == [("Ann",)]
        assert _query(svc, "portal64_bdw", "SELECT id FROM clubs") == [(7,)]
        assert cache.invalidations == 1

    def test_checkpoint_written(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        svc.run_import_now()

        record = svc.store.load()
        assert record is not None
        [f] = record.files
        assert f.filename == "mvdsb_20240601.zip"
        assert f.imported is True
        assert f.database == "mvdsb"
        assert f.checksum == calculate_checksum(remote.root / "mvdsb_20240601.zip")

    def test_staging_removed_on_success(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        svc.run_import_now()
        assert not svc.staging_dir.exists()

    def test_staging_kept_when_cleanup_disabled(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build(cleanup_on_success=False)
        svc.run_import_now()
        assert (svc.staging_dir / "download" / "mvdsb_20240601.zip").exists()

    def test_progress_steps_logged_in_order(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        svc.run_import_now()
        steps = []
        for entry in svc.get_logs(1000):
            if not steps or steps[-1] != entry.step:
                steps.append(entry.step)
        assert steps == [
            Step.INITIALIZATION,
            Step.CHECKING_FRESHNESS,
            Step.DOWNLOAD,
            Step.EXTRACTION,
            Step.DATABASE_IMPORT,
            Step.CACHE_CLEANUP,
            Step.CLEANUP,
            Step.COMPLETED,
        ]

    def test_plain_sql_download_used_directly(self, build, remote):
        (remote.root / "mvdsb_direct.sql").write_bytes(MVDSB_SQL)
        remote.mtimes["mvdsb_direct.sql"] = BASE_TIME
        svc = build()
        status = svc.run_import_now()
        assert status.status == RunStatus.SUCCESS, status.error
        assert status.files_info.imported == ["mvdsb"]

    def test_completion_callbacks(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        seen = []
        svc.add_completion_callback(MagicMock(side_effect=RuntimeError("listener broke")))
        svc.add_completion_callback(lambda status: seen.append(status.status))
        status = svc.run_import_now()
        assert status.status == RunStatus.SUCCESS
        assert seen == [RunStatus.SUCCESS]

    def test_cache_failure_does_not_fail_run(self, build, remote, make_settings):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        broken = MagicMock()
        broken.invalidate.side_effect = RuntimeError("cache down")
        svc = ImportService(make_settings(zip_password=PASSWORD), downloader=remote, cache=broken, sleep=MagicMock())
        status = svc.run_import_now()
        assert status.status == RunStatus.SUCCESS
        broken.invalidate.assert_called_once()
        assert any(e.level == LogLevel.WARN and e.step == Step.CACHE_CLEANUP for e in svc.get_logs())

    def test_per_target_password(self, build, remote):
        remote.put_encrypted("portal64_bdw_1.zip", {"portal64_bdw.sql": PORTAL_SQL}, password="other")
        svc = build(zip_passwords="portal64_bdw=other")
        assert svc.run_import_now().status == RunStatus.SUCCESS


# ── Freshness ────────────────────────────────────────────────────────

@pytest.mark.integration
class TestFreshness:

    def test_second_run_skipped(self, build, remote, cache):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        assert svc.run_import_now().status == RunStatus.SUCCESS

        status = svc.run_import_now()
        assert status.status == RunStatus.SKIPPED
        assert status.skip_reason == "no newer files available"
        assert status.error is None
        assert remote.download_calls == 1
        assert cache.invalidations == 1

    def test_skip_survives_restart(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        build().run_import_now()
        status = build().run_import_now()
        assert status.status == RunStatus.SKIPPED

    def test_newer_file_reimported(self, build, remote, cache):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        svc.run_import_now()
        first = svc.store.load().timestamp

        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL}, mod_time=BASE_TIME + timedelta(days=1))
        status = svc.run_import_now()
        assert status.status == RunStatus.SUCCESS
        assert svc.store.load().timestamp > first
        assert cache.invalidations == 2

    def test_skip_disabled_imports_anyway(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build(freshness_skip_if_not_newer=False)
        svc.run_import_now()
        assert svc.run_import_now().status == RunStatus.SUCCESS

    def test_no_remote_files(self, build):
        status = build().run_import_now()
        assert status.status == RunStatus.SKIPPED
        assert status.skip_reason == REASON_NO_REMOTE_FILES


# ── Failures and retries ─────────────────────────────────────────────

@pytest.mark.integration
class TestFailures:

    def test_wrong_password_exhausts_retries(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL}, password="not-the-configured-one")
        sleep = MagicMock()
        svc = build(sleep=sleep, retry_delay_seconds=300, retry_max_delay_seconds=1800)

        status = svc.run_import_now()

        assert status.status == RunStatus.FAILED
        assert status.retry_count == status.max_retries == 2
        assert "extraction" in status.error
        assert "wrong password" in status.error
        assert svc.store.load() is None
        sleep.assert_called_once_with(300)
        warnings = [e for e in svc.get_logs() if e.level == LogLevel.WARN]
        assert len(warnings) == 1
        assert warnings[0].step == Step.EXTRACTION
        assert svc.get_logs()[-1].level == LogLevel.ERROR

    def test_failed_files_kept_by_default(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL}, password="x")
        svc = build()
        svc.run_import_now()
        assert (svc.staging_dir / "download" / "mvdsb_20240601.zip").exists()

    def test_failed_files_removed_when_configured(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL}, password="x")
        svc = build(keep_failed_files=False)
        svc.run_import_now()
        assert not svc.staging_dir.exists()

    def test_transient_listing_failure_recovers(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        remote.list_errors.append(TransferError("connection reset"))
        svc = build()
        status = svc.run_import_now()
        assert status.status == RunStatus.SUCCESS
        assert status.retry_count == 1
        assert remote.list_calls == 2

    def test_download_failure_after_retries(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        remote.download_errors.extend([TransferError("reset"), TransferError("reset again")])
        svc = build(retry_max_attempts=2)
        status = svc.run_import_now()
        assert status.status == RunStatus.FAILED
        assert status.retry_count == 2
        assert "download failed" in status.error
        assert svc.store.load() is None

    def test_no_dump_matches_any_target(self, build, remote, cache):
        remote.put_encrypted("mvdsb_20240601.zip", {"readme.txt": b"nothing to load"})
        svc = build()
        status = svc.run_import_now()
        assert status.status == RunStatus.FAILED
        assert "importing_database" in status.error
        assert cache.invalidations == 0
        assert svc.store.load() is None

    def test_bad_sql_fails_without_checkpoint(self, build, remote, cache):
        remote.put_plain("mvdsb_20240601.zip", {"mvdsb.sql": b"THIS IS NOT SQL;\nNOR THIS;\n"})
        svc = build()
        status = svc.run_import_now()
        assert status.status == RunStatus.FAILED
        assert "failed to import database mvdsb" in status.error
        assert status.retry_count == 0
        assert cache.invalidations == 0
        assert svc.store.load() is None

    def test_previous_success_kept_after_failure(self, build, remote):
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL})
        svc = build()
        first = svc.run_import_now()
        remote.put_encrypted("mvdsb_20240601.zip", {"mvdsb.sql": MVDSB_SQL}, password="x", mod_time=BASE_TIME + timedelta(days=1))
        status = svc.run_import_now()
        assert status.status == RunStatus.FAILED
        assert status.last_success == first.last_success


# ── Triggers and single-flight ───────────────────────────────────────

@pytest.mark.unit
class TestTriggers:

    def test_manual_trigger_disabled(self, build):
        svc = build(import_enabled=False)
        with pytest.raises(ServiceDisabledError):
            svc.trigger_manual_import()

    def test_run_now_disabled_unless_forced(self, build):
        svc = build(import_enabled=False)
        with pytest.raises(ServiceDisabledError):
            svc.run_import_now()
        assert svc.run_import_now(force=True).status == RunStatus.SKIPPED

    def test_manual_trigger_runs_in_background(self, build, remote):
        remote.list_gate = threading.Event()
        svc = build()
        svc.trigger_manual_import()
        assert svc.get_status().status == RunStatus.RUNNING
        remote.list_gate.set()
        assert _wait_terminal(svc).status == RunStatus.SKIPPED

    def test_concurrent_triggers_single_flight(self, build, remote):
        remote.list_gate = threading.Event()
        svc = build()
        n = 8
        barrier = threading.Barrier(n)
        results: list[str] = []
        lock = threading.Lock()

        def trigger():
            barrier.wait()
            try:
                svc.trigger_manual_import()
                outcome = "started"
            except AlreadyRunningError:
                outcome = "rejected"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=trigger) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("started") == 1
        assert results.count("rejected") == n - 1
        with pytest.raises(AlreadyRunningError):
            svc.run_import_now()

        remote.list_gate.set()
        _wait_terminal(svc)
        assert remote.list_calls == 1
        svc.trigger_manual_import()
        _wait_terminal(svc)
        assert remote.list_calls == 2

    def test_scheduled_tick_skips_when_busy(self, build, remote):
        remote.list_gate = threading.Event()
        svc = build()
        svc.trigger_manual_import()
        svc._scheduled_tick()
        remote.list_gate.set()
        _wait_terminal(svc)
        assert remote.list_calls == 1
        assert any("already in progress" in e.message for e in svc.get_logs())

    def test_scheduled_tick_after_stop_does_nothing(self, build, remote):
        svc = build()
        svc.stop()
        svc._scheduled_tick()
        assert remote.list_calls == 0


# ── Lifecycle and queries ────────────────────────────────────────────

@pytest.mark.unit
class TestLifecycle:

    def test_start_disabled_schedules_nothing(self, build):
        svc = build(import_enabled=False)
        svc.start()
        assert svc.get_status().next_scheduled is None
        assert svc.get_health()["scheduler_running"] is False

    def test_invalid_schedule(self, build):
        svc = build(import_schedule="every night")
        with pytest.raises(ConfigurationError):
            svc.start()
        assert svc.get_status().next_scheduled is None

    def test_start_and_stop(self, build):
        svc = build(import_schedule="0 2 * * *")
        svc.start()
        try:
            next_run = svc.get_status().next_scheduled
            assert next_run is not None
            assert (next_run.hour, next_run.minute) == (2, 0)
            assert svc.get_health()["scheduler_running"] is True
        finally:
            svc.stop()
        assert svc.get_status().next_scheduled is None

    def test_invalid_targets_rejected_at_construction(self, make_settings):
        with pytest.raises(ConfigurationError):
            ImportService(make_settings(import_targets="broken"), downloader=MagicMock())

    def test_logs_limit(self, build):
        svc = build()
        for i in range(5):
            svc.tracker.log_info(Step.DOWNLOAD, f"m{i}")
        assert [e.message for e in svc.get_logs(2)] == ["m3", "m4"]

    def test_test_connection(self, build, remote):
        remote.put_plain("mvdsb_1.zip", {"a.sql": b"SELECT 1;"})
        assert build().test_connection() == 1

    def test_test_connection_failure_logged(self, build):
        svc = build()
        svc.downloader = MagicMock()
        svc.downloader.test_connection.side_effect = TransferError("no route")
        with pytest.raises(TransferError):
            svc.test_connection()
        assert svc.get_logs()[-1].level == LogLevel.ERROR

    def test_config_summary_hides_secrets(self, build):
        summary = build(scp_password="hunter2", zip_password="pw2").get_config_summary()
        assert "hunter2" not in str(summary)
        assert "pw2" not in str(summary)
        assert [t["name"] for t in summary["targets"]] == ["mvdsb", "portal64_bdw"]


@pytest.mark.unit
class TestDescribeError:

    def test_includes_step_and_cause(self):
        try:
            try:
                raise RuntimeError("Bad password for file 'mvdsb.sql'")
            except RuntimeError as inner:
                raise ExtractionError("wrong password for archive mvdsb.zip") from inner
        except ExtractionError as e:
            message = describe_error(e)
        assert message == "extraction failed: wrong password for archive mvdsb.zip (Bad password for file 'mvdsb.sql')"

    def test_plain_exception(self):
        assert describe_error(ValueError("boom")) == "boom"
