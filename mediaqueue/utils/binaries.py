"""
This module provides the BinaryResolver class, which locates the external tools
the pipelines drive (the fetcher, the encoder and the prober) and checks that
they can be executed.
"""
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional

from loguru import logger

from ..config.common import BIN_DIR

FETCHER = "fetcher"
ENCODER = "encoder"
PROBER = "prober"

# Logical tool name -> executable name (without the Windows suffix).
TOOL_EXECUTABLES = {
    FETCHER: "yt-dlp",
    ENCODER: "ffmpeg",
    PROBER: "ffprobe",
}

# Argument that makes each tool print its version and exit.
VERSION_ARGS = {
    FETCHER: "--version",
    ENCODER: "-version",
    PROBER: "-version",
}


class BinaryResolver:
    """
    Maps logical tool names to executable paths for the host platform.

    The lookup order is: an explicit override, the configured `bin_dir`
    (`paths.bin_dir` in `config.user.yaml`), the system PATH, and finally the bare
    executable name, which lets the spawn fail with a clear error later.

    Args:
        bin_dir: Directory holding the executables. Defaults to the configured one.
        overrides: Explicit paths per logical tool name.
    """

    def __init__(self, bin_dir: Optional[Path] = BIN_DIR, overrides: Optional[Dict[str, str]] = None):
        self.bin_dir = bin_dir
        self.overrides = dict(overrides or {})
        self._cache: Dict[str, str] = {}

    @staticmethod
    def executable_name(tool: str) -> str:
        try:
            name = TOOL_EXECUTABLES[tool]
        except KeyError:
            raise ValueError(f"Unknown tool '{tool}'. Expected one of {sorted(TOOL_EXECUTABLES)}.")
        return f"{name}.exe" if sys.platform == "win32" else name

    def resolve(self, tool: str) -> str:
        """
        Returns the path (or bare command name) to execute for `tool`.

        Args:
            tool: One of "fetcher", "encoder" or "prober".
        """
        if tool in self.overrides:
            return str(self.overrides[tool])
        if tool in self._cache:
            return self._cache[tool]

        exe_name = self.executable_name(tool)
        resolved = None
        if self.bin_dir and self.bin_dir.is_dir():
            candidate = self.bin_dir / exe_name
            if candidate.is_file():
                resolved = str(candidate.resolve())
            else:
                logger.warning(f"`bin_dir` is configured, but '{exe_name}' was not found there. Falling back to system PATH.")
        if resolved is None:
            found = shutil.which(exe_name)
            resolved = str(Path(found).resolve()) if found else exe_name
        logger.debug(f"Resolved {tool} -> {resolved}")
        self._cache[tool] = resolved
        return resolved

    @property
    def fetcher(self) -> str:
        return self.resolve(FETCHER)

    @property
    def encoder(self) -> str:
        return self.resolve(ENCODER)

    @property
    def prober(self) -> str:
        return self.resolve(PROBER)

    def verify(self, tool: str) -> bool:
        """
        Runs `tool` with its version flag and logs the first line of the output.

        Returns:
            True if the tool ran and exited with code 0.
        """
        cmd = [self.resolve(tool), VERSION_ARGS[tool]]
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"{tool} version command failed (return code {e.returncode}):\n{e.stderr}")
            return False
        except FileNotFoundError:
            logger.error(
                f"{TOOL_EXECUTABLES[tool]} not found. Add it to your PATH or set `paths.bin_dir` "
                "in 'config.user.yaml'."
            )
            return False
        except OSError as e:
            logger.error(f"Could not run {cmd[0]}: {e}")
            return False
        lines = result.stdout.splitlines()
        logger.info(f"{tool} check successful: {lines[0] if lines else '(no output)'}")
        return True

    def verify_all(self) -> bool:
        results = [self.verify(tool) for tool in TOOL_EXECUTABLES]
        return all(results)
