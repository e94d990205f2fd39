"""
Password-protected ZIP extraction (pyzipper: WinZip AES and ZipCrypto).

Extraction is all-or-nothing: entries are written into a private temporary
directory and only moved into the destination once every entry has been
read and verified. Entry names that would escape the destination are
rejected.
"""
import logging
import os
import shutil
import tempfile
import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

import pyzipper

from dumpsync.core.errors import ExtractionError
from dumpsync.importers.patterns import TargetMatcher

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DUMP_SUFFIX = ".sql"


@dataclass
class ArchiveInfo:
    """Summary of an archive's central directory."""

    path: Path
    entry_count: int = 0
    compressed_size: int = 0
    uncompressed_size: int = 0
    encrypted: bool = False
    files: list[str] = field(default_factory=list)


def _pwd(password: Optional[str]) -> Optional[bytes]:
    return password.encode("utf-8") if password else None


def _is_encrypted(info: pyzipper.ZipInfo) -> bool:
    return bool(info.flag_bits & 0x1)


def _describe_failure(archive: Path, error: Exception, encrypted: bool) -> str:
    """Human message separating wrong password from a damaged archive."""
    text = str(error)
    if isinstance(error, RuntimeError) and "password" in text.lower():
        return f"wrong password for archive {archive.name}"
    if isinstance(error, pyzipper.BadZipFile) and ("CRC" in text or "HMAC" in text) and encrypted:
        # ZipCrypto's one-byte check (AES: two bytes) lets some wrong passwords reach the integrity check
        return f"wrong password for archive {archive.name}"
    if isinstance(error, NotImplementedError):
        return f"unsupported archive format {archive.name}: {text}"
    return f"corrupt archive {archive.name}: {text}"


class ZIPExtractor:
    """Extracts archives under a per-archive deadline."""

    def __init__(self, timeout: float = 60, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock

    def extract_file(
        self,
        archive_path: str | Path,
        extract_dir: str | Path,
        password: Optional[str] = None,
    ) -> list[Path]:
        """
        Extract every entry of archive_path into extract_dir.

        Args:
            archive_path: Local ZIP file.
            extract_dir: Destination; created if missing.
            password: ZipCrypto password, None or "" for plain archives.

        Returns:
            Paths of the extracted regular files, in archive order.

        Raises:
            ExtractionError: wrong password, corrupt archive, unsafe entry
                name or deadline exceeded. Nothing is left in extract_dir.
        """
        archive = Path(archive_path)
        dest = Path(extract_dir)
        dest.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{archive.stem}.", dir=dest.parent))
        deadline = self._clock() + self.timeout if self.timeout else None

        logger.info("Extracting %s into %s", archive.name, dest)
        try:
            relative = self._extract_to(archive, staging, _pwd(password), deadline)
            extracted: list[Path] = []
            try:
                for rel in relative:
                    target = dest / rel
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(staging / rel, target)
                    extracted.append(target)
            except OSError as e:
                for path in extracted:
                    path.unlink(missing_ok=True)
                raise ExtractionError(f"cannot move extracted files into {dest}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Extracted %d file(s) from %s", len(extracted), archive.name)
        return extracted

    def _extract_to(
        self,
        archive: Path,
        staging: Path,
        pwd: Optional[bytes],
        deadline: Optional[float],
    ) -> list[Path]:
        encrypted = False
        root = staging.resolve()
        written: list[Path] = []
        try:
            with pyzipper.AESZipFile(archive) as zf:
                for info in zf.infolist():
                    encrypted = encrypted or _is_encrypted(info)
                    out = (staging / info.filename).resolve()
                    if out != root and root not in out.parents:
                        raise ExtractionError(
                            f"unsafe entry name in archive {archive.name}: {info.filename}"
                        )
                    if info.is_dir():
                        out.mkdir(parents=True, exist_ok=True)
                        continue
                    out.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info, pwd=pwd) as src, open(out, "wb") as dst:
                        while True:
                            self._check_deadline(archive, deadline)
                            chunk = src.read(CHUNK_SIZE)
                            if not chunk:
                                break
                            dst.write(chunk)
                    written.append(out.relative_to(root))
        except ExtractionError:
            raise
        except FileNotFoundError as e:
            raise ExtractionError(f"archive not found: {archive}") from e
        except (pyzipper.BadZipFile, RuntimeError, NotImplementedError, zlib.error, EOFError) as e:
            raise ExtractionError(_describe_failure(archive, e, encrypted)) from e
        except OSError as e:
            raise ExtractionError(f"cannot extract {archive.name}: {e}") from e
        return written

    def _check_deadline(self, archive: Path, deadline: Optional[float]) -> None:
        if deadline is not None and self._clock() > deadline:
            raise ExtractionError(f"extraction of {archive.name} timed out after {self.timeout:g}s")

    # ── Dump discovery ───────────────────────────────────────────────

    @staticmethod
    def find_database_dumps(paths: Iterable[Path], matcher: TargetMatcher) -> dict[str, Path]:
        """
        Map target name -> dump file.

        Only .sql files count. Each is assigned to the first target whose
        pattern matches its file name; unmatched files are ignored and a
        second dump for an already-mapped target is ignored with a warning.
        """
        dumps: dict[str, Path] = {}
        for path in paths:
            path = Path(path)
            if path.suffix.lower() != DUMP_SUFFIX:
                continue
            target = matcher.target_for(path.name)
            if target is None:
                logger.debug("Ignoring %s: matches no target database", path.name)
                continue
            if target in dumps:
                logger.warning(
                    "Ignoring %s: target %s already has dump %s", path.name, target, dumps[target].name
                )
                continue
            dumps[target] = path
        return dumps

    # ── Inspection ───────────────────────────────────────────────────

    def validate_archive(self, archive_path: str | Path, password: Optional[str] = None) -> None:
        """Open the archive, require entries, and fully decrypt the first encrypted one."""
        archive = Path(archive_path)
        try:
            with pyzipper.AESZipFile(archive) as zf:
                infos = zf.infolist()
                if not infos:
                    raise ExtractionError(f"archive {archive.name} is empty")
                first_encrypted = next((i for i in infos if _is_encrypted(i)), None)
                if first_encrypted is not None:
                    with zf.open(first_encrypted, pwd=_pwd(password)) as fh:
                        while fh.read(CHUNK_SIZE):
                            pass
        except ExtractionError:
            raise
        except FileNotFoundError as e:
            raise ExtractionError(f"archive not found: {archive}") from e
        except (pyzipper.BadZipFile, RuntimeError, NotImplementedError, zlib.error, EOFError) as e:
            raise ExtractionError(_describe_failure(archive, e, True)) from e

    @staticmethod
    def get_archive_info(archive_path: str | Path) -> ArchiveInfo:
        archive = Path(archive_path)
        try:
            with pyzipper.AESZipFile(archive) as zf:
                infos = [i for i in zf.infolist() if not i.is_dir()]
        except (pyzipper.BadZipFile, OSError) as e:
            raise ExtractionError(f"cannot read archive {archive.name}: {e}") from e
        return ArchiveInfo(
            path=archive,
            entry_count=len(infos),
            compressed_size=sum(i.compress_size for i in infos),
            uncompressed_size=sum(i.file_size for i in infos),
            encrypted=any(_is_encrypted(i) for i in infos),
            files=[i.filename for i in infos],
        )

    @staticmethod
    def cleanup(extract_dir: str | Path) -> None:
        """Remove an extraction directory and everything in it."""
        path = Path(extract_dir)
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
            logger.debug("Removed %s", path)
        except OSError as e:
            logger.warning("Failed to remove %s: %s", path, e)
