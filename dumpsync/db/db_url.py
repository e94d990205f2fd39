"""Database URL resolution utilities."""
from pathlib import Path
from typing import Optional


def resolve_db_url(db_url: str, base_dir: Optional[Path] = None) -> str:
    """
    Resolve relative SQLite database URLs to absolute paths.
    sqlite:///./data/mvdsb.db is resolved against base_dir (default: the
    current working directory). Non-sqlite URLs are returned unchanged.
    """
    if not db_url.startswith("sqlite"):
        return db_url

    if ":///./" in db_url:
        prefix, relative_path = db_url.split(":///./", 1)
        root = (base_dir or Path.cwd()).resolve()
        absolute_path = (root / relative_path).resolve()
        return f"{prefix}:///{absolute_path.as_posix()}"

    return db_url


def sqlite_path(db_url: str) -> Optional[Path]:
    """Filesystem path of a file-backed sqlite URL, None for anything else."""
    if not db_url.startswith("sqlite") or ":///" not in db_url:
        return None
    path = db_url.split(":///", 1)[1].split("?", 1)[0]
    if not path or path == ":memory:":
        return None
    return Path(path)
