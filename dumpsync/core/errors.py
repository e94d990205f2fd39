"""Import pipeline error taxonomy.

- ConfigurationError: fatal at start, blocks scheduling
- AlreadyRunningError / ServiceDisabledError: returned to a manual trigger
- StageError subclasses: raised by one pipeline stage, caught by the
  orchestrator and turned into retry-or-fail transitions
"""
from typing import Optional


class ImportPipelineError(Exception):
    """Base class for every error raised by the import pipeline."""


class ConfigurationError(ImportPipelineError):
    """Invalid settings (bad cron expression, unparseable target list...)."""


class AlreadyRunningError(ImportPipelineError):
    """A run is in progress; the conflicting trigger is rejected, not queued."""

    def __init__(self, message: str = "import is already running"):
        super().__init__(message)


class ServiceDisabledError(ImportPipelineError):
    """The master switch (IMPORT_ENABLED) is off."""

    def __init__(self, message: str = "import service is disabled"):
        super().__init__(message)


class StageError(ImportPipelineError):
    """Failure inside one pipeline stage."""

    step: str = ""
    retryable: bool = False


class RemoteConnectionError(StageError):
    """Remote host unreachable or credentials rejected."""

    step = "download"
    retryable = True


class TransferError(StageError):
    """Listing or transfer failed after the connection was established."""

    step = "download"
    retryable = True


class ExtractionError(StageError):
    """Wrong password, corrupt archive or extraction timeout."""

    step = "extraction"
    retryable = True


class DatabaseImportError(StageError):
    """Applying a dump to a target database failed."""

    step = "importing_database"
    retryable = False

    def __init__(self, target: str, message: str, engine_error: Optional[str] = None):
        self.target = target
        self.engine_error = engine_error
        text = f"failed to import database {target}: {message}"
        if engine_error:
            text = f"{text} ({engine_error})"
        super().__init__(text)


def deepest_cause(error: BaseException) -> BaseException:
    """Follow __cause__ / __context__ down to the innermost exception."""
    seen = set()
    current = error
    while id(current) not in seen:
        seen.add(id(current))
        nxt = current.__cause__ or current.__context__
        if nxt is None:
            break
        current = nxt
    return current
