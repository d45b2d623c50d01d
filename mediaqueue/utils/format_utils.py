"""
This module contains helper functions for formatting and normalising data.

They are used across the pipelines for size conversions, file naming and for
presenting sizes in log messages in a clear and consistent way.
"""

import re
import unicodedata
from pathlib import Path
from typing import Optional

BYTES_PER_MB = 1024 * 1024

# Windows device names that cannot be used as a file name, with or without extension.
RESERVED_DEVICE_NAMES = re.compile(r"^(con|prn|aux|nul|com[1-9]|lpt[1-9])$", re.IGNORECASE)

_UNIT_TO_MB = {
    "KIB": 1 / 1024,
    "MIB": 1.0,
    "GIB": 1024.0,
    "TIB": 1024.0 * 1024,
    "KB": 1 / 1024,
    "MB": 1.0,
    "GB": 1024.0,
    "TB": 1024.0 * 1024,
}


def formatted_size(size_bytes: float) -> str:
    """
    Converts a size in bytes to a human-readable string (e.g., B, KB, MB, GB, TB).

    Args:
        size_bytes: The size of the file in bytes.

    Returns:
        A formatted string with the appropriate unit.
        For example, 1536 becomes "1.50 KB", and 2097152 becomes "2 MB".
    """
    if size_bytes < 0:
        size_bytes = 0

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    factor = 1024.0

    if size_bytes == 0:
        return "0 B"

    for unit in units:
        if size_bytes < factor:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.2f} {unit}".replace(".00", "")
        size_bytes /= factor

    return f"{size_bytes:.2f} {units[-1]}".replace(".00", "")


def bytes_to_mb(size_bytes: float) -> float:
    return size_bytes / BYTES_PER_MB


def to_mb(value: float, unit: str) -> float:
    """Converts `value` expressed in `unit` (KiB, MiB, GB, ...) to megabytes."""
    return value * _UNIT_TO_MB.get(unit.upper(), 1.0)


def file_size_mb(path: Path) -> float:
    return bytes_to_mb(path.stat().st_size)


def extension_of(path: Path) -> str:
    """Returns the lowercase extension of `path` without the leading dot."""
    return path.suffix.lstrip(".").lower().strip()


def path_to_file_url(path: Path) -> str:
    """Returns a `file://` URL for `path`, used for thumbnail references."""
    return Path(path).resolve().as_uri()


def is_reserved_name(name: str) -> bool:
    """True if `name` (without its extension) is a reserved OS device name."""
    stem = name.split(".", 1)[0].strip()
    return bool(RESERVED_DEVICE_NAMES.match(stem))


def sanitize_filename(name: str, fallback: str = "file") -> str:
    """
    Turns an arbitrary title into a safe file name, keeping Unicode letters.

    Quote look-alikes are folded to ASCII quotes, characters forbidden on Windows
    and control characters become spaces, leftover exotic symbols become "_", and
    reserved device names are prefixed with "_".

    Args:
        name: The raw title.
        fallback: Used when nothing printable is left.

    Returns:
        The sanitised name, without an extension.
    """
    cleaned = unicodedata.normalize("NFC", name or "")
    cleaned = cleaned.replace("\ufffd", "").replace("\u00a0", " ")
    cleaned = re.sub("[\u2018\u2019\u2032]", "'", cleaned)
    cleaned = re.sub("[\u201c\u201d\u2033]", '"', cleaned)
    cleaned = re.sub(r'[<>:"/\\|?*\x00-\x1f]', " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = "".join(
        ch if ch.isalnum() or ch.isspace() or ch in "-_.()[]'" else "_"
        for ch in cleaned
    )
    cleaned = cleaned.strip(" .")
    if not cleaned:
        cleaned = fallback
    if is_reserved_name(cleaned):
        cleaned = f"_{cleaned}"
    return cleaned


def parse_height(resolution: Optional[str]) -> Optional[int]:
    """
    Extracts a pixel height from a resolution string such as "1280x720" or "720p".

    Returns:
        The height, or None if the string has neither shape.
    """
    if not resolution:
        return None
    match = re.fullmatch(r"\s*\d+x(\d+)\s*", resolution, re.IGNORECASE)
    if match:
        return int(match.group(1))
    match = re.fullmatch(r"\s*(\d+)p\s*", resolution, re.IGNORECASE)
    if match:
        return int(match.group(1))
    return None
