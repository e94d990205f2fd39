"""
List and download export archives from the remote host over SFTP (paramiko).

Files are streamed to `<name>.part` in 64 KiB chunks while a sha256 is
computed, then renamed into place once the byte count matches the listing.
The remote side is read-only: nothing is ever deleted or renamed there.
"""
import hashlib
import logging
import posixpath
import stat
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import paramiko

from dumpsync.core.config import Settings
from dumpsync.core.errors import RemoteConnectionError, TransferError
from dumpsync.importers.patterns import TargetMatcher, first_matching_pattern
from dumpsync.models.import_models import FileMetadata

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
CHECKSUM_PREFIX = "sha256:"


@dataclass
class DownloadedFile:
    """A file now present in the staging directory."""

    path: Path
    metadata: FileMetadata


def calculate_checksum(path: str | Path) -> str:
    """sha256 of a local file as 'sha256:<hex>'."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return CHECKSUM_PREFIX + digest.hexdigest()


class SFTPDownloader:
    """Remote lister/downloader bound to one host and directory."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        remote_path: str,
        patterns: list[str],
        timeout: float = 300,
        matcher: Optional[TargetMatcher] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.remote_path = remote_path
        self.patterns = list(patterns)
        self.timeout = timeout
        self.matcher = matcher

    @classmethod
    def from_settings(cls, settings: Settings) -> "SFTPDownloader":
        return cls(
            host=settings.scp_host,
            port=settings.scp_port,
            username=settings.scp_username,
            password=settings.scp_password,
            remote_path=settings.scp_remote_path,
            patterns=settings.file_patterns_list,
            timeout=settings.scp_timeout_seconds,
            matcher=TargetMatcher(settings.targets),
        )

    # ── Connection ───────────────────────────────────────────────────

    @contextmanager
    def _session(self) -> Iterator[paramiko.SFTPClient]:
        """Open an SSH connection + SFTP channel; always closed on exit."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        logger.info("Connecting to %s:%s as %s", self.host, self.port, self.username)
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as e:
            client.close()
            raise RemoteConnectionError(f"authentication failed for {self.username}@{self.host}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(f"cannot connect to {self.host}:{self.port}: {e}") from e

        try:
            channel = sftp.get_channel()
            if channel is not None:
                channel.settimeout(self.timeout)
            yield sftp
        finally:
            sftp.close()
            client.close()

    def _remote(self, filename: str) -> str:
        return posixpath.join(self.remote_path, filename)

    # ── Listing ──────────────────────────────────────────────────────

    def list_files(self) -> list[FileMetadata]:
        """Regular files in remote_path matching any configured pattern, sorted by name."""
        with self._session() as sftp:
            try:
                entries = sftp.listdir_attr(self.remote_path)
            except (OSError, paramiko.SSHException) as e:
                raise TransferError(f"cannot list remote directory {self.remote_path}: {e}") from e

        files: list[FileMetadata] = []
        for entry in entries:
            if entry.st_mode is not None and not stat.S_ISREG(entry.st_mode):
                continue
            pattern = first_matching_pattern(entry.filename, self.patterns)
            if pattern is None:
                continue
            files.append(self._to_metadata(entry, pattern))

        files.sort(key=lambda f: f.filename)
        logger.info("Found %d matching file(s) in %s", len(files), self.remote_path)
        return files

    def get_file_info(self, filename: str) -> FileMetadata:
        """Stat one remote file."""
        with self._session() as sftp:
            try:
                attrs = sftp.stat(self._remote(filename))
            except (OSError, paramiko.SSHException) as e:
                raise TransferError(f"cannot stat remote file {filename}: {e}") from e
        attrs.filename = filename
        return self._to_metadata(attrs, first_matching_pattern(filename, self.patterns))

    def _to_metadata(self, attrs: paramiko.SFTPAttributes, pattern: Optional[str]) -> FileMetadata:
        return FileMetadata(
            filename=attrs.filename,
            size=attrs.st_size or 0,
            mod_time=datetime.fromtimestamp(attrs.st_mtime or 0, tz=timezone.utc),
            pattern=pattern,
            database=self.matcher.target_for(attrs.filename) if self.matcher else None,
        )

    # ── Download ─────────────────────────────────────────────────────

    def download_files(self, files: list[FileMetadata], local_dir: str | Path) -> list[DownloadedFile]:
        """
        Download each listed file into local_dir over one SFTP session.

        Returns:
            One DownloadedFile per input, in order, whose metadata carries the
            computed checksum.

        Raises:
            RemoteConnectionError: connect or auth failure.
            TransferError: missing file, I/O error, timeout or size mismatch.
        """
        local_dir = Path(local_dir)
        local_dir.mkdir(parents=True, exist_ok=True)

        downloaded: list[DownloadedFile] = []
        with self._session() as sftp:
            for meta in files:
                downloaded.append(self._download_one(sftp, meta, local_dir))
        return downloaded

    def _download_one(self, sftp: paramiko.SFTPClient, meta: FileMetadata, local_dir: Path) -> DownloadedFile:
        target = local_dir / meta.filename
        part = target.with_name(target.name + ".part")
        digest = hashlib.sha256()
        written = 0

        logger.info("Downloading %s (%d bytes)", meta.filename, meta.size)
        try:
            with sftp.open(self._remote(meta.filename), "rb") as src, open(part, "wb") as dst:
                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    digest.update(chunk)
                    dst.write(chunk)
                    written += len(chunk)
        except (OSError, paramiko.SSHException) as e:
            part.unlink(missing_ok=True)
            raise TransferError(f"failed to download {meta.filename}: {e}") from e

        if meta.size and written != meta.size:
            part.unlink(missing_ok=True)
            raise TransferError(
                f"incomplete download of {meta.filename}: got {written} of {meta.size} bytes"
            )

        part.replace(target)
        checksum = CHECKSUM_PREFIX + digest.hexdigest()
        logger.debug("Downloaded %s -> %s (%s)", meta.filename, target, checksum)
        return DownloadedFile(
            path=target,
            metadata=meta.model_copy(update={"size": written, "checksum": checksum}),
        )

    # ── Diagnostics ──────────────────────────────────────────────────

    def test_connection(self) -> int:
        """Connect and read the remote directory. Returns the entry count."""
        with self._session() as sftp:
            try:
                count = len(sftp.listdir(self.remote_path))
            except (OSError, paramiko.SSHException) as e:
                raise TransferError(f"cannot read remote directory {self.remote_path}: {e}") from e
        logger.info("Connection test OK: %s:%s%s (%d entries)", self.host, self.port, self.remote_path, count)
        return count

    calculate_checksum = staticmethod(calculate_checksum)
