"""Environment variable loading for CLI scripts."""
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_if_present(env_file: Optional[str] = None) -> bool:
    """
    Load a .env file if it exists.

    Args:
        env_file: Path to .env file (default: .env in the current directory)

    Returns:
        True if variables were loaded.

    Existing environment variables win over the file. Never logs values.
    """
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if not env_path.is_file():
        return False
    loaded = load_dotenv(env_path, override=False)
    if loaded:
        logger.debug("Loaded environment variables from %s", env_path)
    return loaded
