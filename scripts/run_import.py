#!/usr/bin/env python3
"""Run one dump import from the command line (cron or manual use).

Usage:
    python scripts/run_import.py                  # run now, honour IMPORT_ENABLED
    python scripts/run_import.py --force          # run even if IMPORT_ENABLED=false
    python scripts/run_import.py --test-connection
    python scripts/run_import.py --show-checkpoint
    python scripts/run_import.py --clear-checkpoint

Settings come from the environment and a .env file in the working directory.
Exit code 0 on success or skip, 1 on failure.
"""
import argparse
import sys
from pathlib import Path

# Project root on path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dumpsync.utils.env import load_env_if_present  # noqa: E402

load_env_if_present()

from dumpsync.core.config import get_settings  # noqa: E402
from dumpsync.core.errors import ImportPipelineError  # noqa: E402
from dumpsync.core.logging import setup_logging  # noqa: E402
from dumpsync.models.import_models import RunStatus  # noqa: E402
from dumpsync.services.import_service import ImportService, describe_error  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Download, extract and load the latest database dumps")
    parser.add_argument("--force", action="store_true", help="Run even when IMPORT_ENABLED=false")
    parser.add_argument("--test-connection", action="store_true", help="Only check the remote host")
    parser.add_argument("--show-checkpoint", action="store_true", help="Print the last import record")
    parser.add_argument("--clear-checkpoint", action="store_true", help="Forget the last import (next run re-imports)")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    try:
        setup_logging(args.log_level)
        svc = ImportService(get_settings())
    except ImportPipelineError as e:
        print(f"ERROR: invalid configuration: {e}")
        return 1

    if args.show_checkpoint:
        record = svc.freshness.get_last_import_info()
        if record is None:
            print("No previous import recorded")
        else:
            print(record.model_dump_json(indent=2))
        return 0

    if args.clear_checkpoint:
        removed = svc.store.clear()
        print("Checkpoint removed" if removed else "No checkpoint to remove")
        return 0

    if args.test_connection:
        try:
            entries = svc.test_connection()
        except ImportPipelineError as e:
            print(f"Connection FAILED: {describe_error(e)}")
            return 1
        print(f"Connection OK ({entries} remote entries)")
        return 0

    try:
        status = svc.run_import_now(force=args.force)
    except ImportPipelineError as e:
        print(f"ERROR: {e}")
        return 1

    if status.status == RunStatus.SUCCESS:
        imported = status.files_info.imported if status.files_info else []
        print(f"Import succeeded: {', '.join(imported) or 'no databases'}")
        return 0
    if status.status == RunStatus.SKIPPED:
        print(f"Import skipped: {status.skip_reason}")
        return 0
    print(f"Import FAILED: {status.error}")
    return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
