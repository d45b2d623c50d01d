"""
Common configuration settings used throughout the application.

This module contains globally shared configuration settings and constants that are
used across the whole job queue: logging format, user-overridable paths for the
external tools, per-queue concurrency ceilings and the child process environment.
It also handles the loading of user-specific configuration from an external YAML
file, allowing for easy customization without modifying the source code.
"""
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

# --- User-Defined Configuration ---
# This block loads user-specific settings from a 'config.user.yaml' file located
# at the project root, or from the file named by the MEDIAQUEUE_CONFIG variable.

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
USER_CONFIG_PATH = Path(
    os.environ.get("MEDIAQUEUE_CONFIG", str(PROJECT_ROOT / "config.user.yaml"))
)


def load_user_config(config_path: Path = USER_CONFIG_PATH) -> Dict[str, Any]:
    """
    Reads the YAML user configuration file.

    Args:
        config_path: Location of the YAML file.

    Returns:
        The parsed mapping, or an empty dict when the file is missing or malformed.
    """
    if not config_path.is_file():
        logger.debug(f"User config '{config_path}' not found. Using built-in defaults.")
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not load or parse '{config_path}': {e}")
        return {}
    if not isinstance(loaded, dict):
        logger.warning(f"Ignoring '{config_path}': top level must be a mapping.")
        return {}
    return loaded


_user_config = load_user_config()
_paths_config = _user_config.get("paths") or {}
_concurrency_config = _user_config.get("concurrency") or {}


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value).expanduser() if value else None


# The directory containing the yt-dlp, ffmpeg and ffprobe executables. If not
# provided, the executables are looked up on the system PATH.
BIN_DIR: Optional[Path] = _optional_path(_paths_config.get("bin_dir"))

# Where downloads land when a payload does not name an output directory.
DOWNLOAD_DIR: Path = _optional_path(_paths_config.get("download_dir")) or (
    Path.home() / "Downloads" / "MediaQueue"
)

# If set, error events are appended to a plain text log in this directory.
ERROR_LOG_DIR: Optional[Path] = _optional_path(_paths_config.get("error_log_dir"))


# --- Concurrency ---
# Each job kind has its own ceiling, reflecting how heavy its processes are.

DEFAULT_DOWNLOAD_CONCURRENCY = 3
DEFAULT_COMPRESS_CONCURRENCY = 5
DEFAULT_CONVERT_CONCURRENCY = 3

DOWNLOAD_CONCURRENCY = int(_concurrency_config.get("download", DEFAULT_DOWNLOAD_CONCURRENCY))
COMPRESS_CONCURRENCY = int(_concurrency_config.get("compress", DEFAULT_COMPRESS_CONCURRENCY))
CONVERT_CONCURRENCY = int(_concurrency_config.get("convert", DEFAULT_CONVERT_CONCURRENCY))


# --- Logging Configuration ---

# The format string for the Loguru logger.
LOGGER_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{thread.name} - <level>{message}</level>"
)

# The filename of the plain-text error log written by `ErrorLog`.
ERROR_LOG_FILE_NAME = "error.txt"

# The filename of the YAML record of finished jobs written by `SuccessLog`,
# kept next to the error log.
SUCCESS_LOG_FILE_NAME = "completed.yaml"


# --- Child Process Settings ---

# Extra environment for every spawned tool, forcing UTF-8 output so that the
# line reader never has to guess an encoding.
CHILD_ENV_OVERRIDES = {
    "PYTHONIOENCODING": "utf-8",
    "LANG": "C.UTF-8",
    "LC_ALL": "C.UTF-8",
}

# Chunk size used by the stream readers.
READ_CHUNK_SIZE = 4096

# Seconds to wait for a process to disappear after a tree kill.
KILL_WAIT_TIMEOUT = 5.0

# Prefix for every temporary file created in the system temp directory.
TEMP_PREFIX = "mediaqueue-"

# One-frame previews advertised in event metadata. They outlive the job, so
# they are not put in the job's own temp directory.
THUMBNAIL_DIR = Path(tempfile.gettempdir()) / "mediaqueue-thumbnails"
THUMBNAIL_WIDTH = 320


# --- Partial Output Cleanup ---

# Suffixes tools leave next to the final file while they work. On cancel or
# failure, siblings of the planned output carrying these are removed.
TEMP_SUFFIXES = (
    ".part", ".ytdl", ".temp", ".fragment", ".frag", ".meta", ".info.json",
)
