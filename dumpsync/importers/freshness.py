"""File freshness: decide whether remote dumps are newer than the last import.

evaluate_freshness() is a pure function. FreshnessChecker binds it to the
checkpoint store and the configured comparison flags.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from dumpsync.importers.checkpoint_store import CheckpointStore
from dumpsync.models.import_models import (
    FileComparison,
    FileMetadata,
    FreshnessResult,
    ImportRecord,
)

logger = logging.getLogger(__name__)

REASON_DISABLED = "freshness check disabled"
REASON_FIRST_IMPORT = "no previous import (first run)"
REASON_NEWER = "newer files available"
REASON_NOT_NEWER = "no newer files available"

REASON_NEW_FILE = "new file"
REASON_NEWER_TIMESTAMP = "newer modification time"
REASON_DIFFERENT_SIZE = "different size"
REASON_DIFFERENT_CHECKSUM = "different checksum"


@dataclass(frozen=True)
class FreshnessOptions:
    """Which dimensions take part in the comparison."""

    enabled: bool = True
    compare_timestamp: bool = True
    compare_size: bool = True
    compare_checksum: bool = False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compare_file(
    remote: FileMetadata,
    last: Optional[FileMetadata],
    options: FreshnessOptions,
) -> FileComparison:
    """Compare one remote file with its last-imported counterpart.

    Each enabled dimension is checked on its own; any positive signal marks
    the file newer.
    """
    if last is None:
        return FileComparison(
            remote_file=remote.model_copy(update={"is_newer": True}),
            last_file=None,
            is_newer=True,
            reasons=[REASON_NEW_FILE],
        )

    reasons: list[str] = []
    if options.compare_timestamp and _as_utc(remote.mod_time) > _as_utc(last.mod_time):
        reasons.append(REASON_NEWER_TIMESTAMP)
    if options.compare_size and remote.size != last.size:
        reasons.append(REASON_DIFFERENT_SIZE)
    if (
        options.compare_checksum
        and remote.checksum
        and last.checksum
        and remote.checksum != last.checksum
    ):
        reasons.append(REASON_DIFFERENT_CHECKSUM)

    is_newer = bool(reasons)
    return FileComparison(
        remote_file=remote.model_copy(update={"is_newer": is_newer}),
        last_file=last.model_copy(),
        is_newer=is_newer,
        reasons=reasons,
    )


def evaluate_freshness(
    remote_files: list[FileMetadata],
    last_import: Optional[ImportRecord],
    options: FreshnessOptions,
) -> FreshnessResult:
    """
    Decide whether an import is needed.

    Args:
        remote_files: Files currently available on the remote host.
        last_import: Checkpoint of the last successful import, None if never.
        options: Enabled comparison dimensions.

    Returns:
        FreshnessResult; should_import is True when checking is disabled,
        when there is no checkpoint, or when any remote file is newer.
    """
    remote_copy = [f.model_copy() for f in remote_files]

    if not options.enabled:
        return FreshnessResult(
            should_import=True,
            reason=REASON_DISABLED,
            remote_files=remote_copy,
        )

    if last_import is None:
        return FreshnessResult(
            should_import=True,
            reason=REASON_FIRST_IMPORT,
            remote_files=[f.model_copy(update={"is_newer": True}) for f in remote_files],
            comparisons=[compare_file(f, None, options) for f in remote_files],
        )

    last_by_name = {f.filename: f for f in last_import.files}
    comparisons = [compare_file(f, last_by_name.get(f.filename), options) for f in remote_files]
    should_import = any(c.is_newer for c in comparisons)

    return FreshnessResult(
        should_import=should_import,
        reason=REASON_NEWER if should_import else REASON_NOT_NEWER,
        remote_files=[c.remote_file for c in comparisons],
        last_imported=[f.model_copy() for f in last_import.files],
        comparisons=comparisons,
    )


class FreshnessChecker:
    """Freshness evaluation against the persisted checkpoint."""

    def __init__(self, options: FreshnessOptions, store: CheckpointStore):
        self.options = options
        self.store = store

    def check(self, remote_files: list[FileMetadata]) -> FreshnessResult:
        """Evaluate remote files against the checkpoint as it is on disk now."""
        last_import = self.store.load() if self.options.enabled else None
        result = evaluate_freshness(remote_files, last_import, self.options)
        newer = sum(1 for c in result.comparisons if c.is_newer)
        logger.info(
            "Freshness check: %s (%d remote, %d newer)",
            result.reason, len(remote_files), newer,
        )
        return result

    def get_last_import_info(self) -> Optional[ImportRecord]:
        return self.store.load()
