"""Persisted checkpoint of the last successful import.

Document layout:
    {"last_import": {"timestamp": ..., "success": true, "files": [...]}}

Writes go to a temporary file in the same directory and are moved into place
with os.replace, so a crash mid-write leaves the previous checkpoint intact.
"""
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from dumpsync.models.import_models import FileMetadata, ImportRecord, LastImportMetadata

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Checkpoint file exists but cannot be read or parsed."""


class CheckpointStore:
    """Filesystem-backed checkpoint. Only the orchestrator writes to it."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[ImportRecord]:
        """
        Return the last import record, or None when there is no usable checkpoint.

        A corrupt file is logged and treated as missing so the next run
        re-imports instead of wedging the pipeline.
        """
        try:
            return self.read()
        except CheckpointError as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, e)
            return None

    def read(self) -> Optional[ImportRecord]:
        """Strict variant of load(): raises CheckpointError on a bad file."""
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise CheckpointError(f"failed to read {self.path}: {e}") from e
        try:
            return LastImportMetadata.model_validate_json(raw).last_import
        except ValidationError as e:
            raise CheckpointError(f"invalid checkpoint {self.path}: {e}") from e

    def validate(self) -> None:
        """Raise CheckpointError unless the file exists and parses."""
        if self.read() is None:
            raise CheckpointError(f"checkpoint does not exist: {self.path}")

    def save(self, files: list[FileMetadata], timestamp: Optional[datetime] = None) -> ImportRecord:
        """Atomically persist a successful import of `files`."""
        record = ImportRecord(
            timestamp=timestamp or datetime.now(timezone.utc),
            success=True,
            files=[f.model_copy() for f in files],
        )
        payload = LastImportMetadata(last_import=record).model_dump_json(indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info("Saved import checkpoint to %s (%d files)", self.path, len(record.files))
        return record

    def clear(self) -> bool:
        """Delete the checkpoint. Returns True if a file was removed."""
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info("Removed checkpoint %s", self.path)
        return True
