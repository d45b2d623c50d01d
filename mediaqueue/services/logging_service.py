"""
This module provides classes for recording what happened to jobs.

Console output goes through loguru; on top of that, error events are appended
to a human-readable text file (ErrorLog) and finished jobs are recorded in a
machine-readable YAML file (SuccessLog). `EventLogger` is the progress-bus
subscriber that feeds all three.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from loguru import logger

from ..config.common import ERROR_LOG_FILE_NAME, SUCCESS_LOG_FILE_NAME
from ..domain.models import ProgressEvent, Stage


class Log:
    """
    A base class for the file based logs.

    Its main purpose is to resolve the log directory and make sure it exists.
    Writes are serialized with a per-instance lock, since events of concurrent
    jobs are delivered from different worker threads.
    """

    # A decorative separator line used in text-based logs for better readability.
    linesep_marker: str = "=" * 50

    def __init__(self, log_base_path: Path):
        """
        Args:
            log_base_path: The base path for logging. If it's a directory (or does
                           not exist yet), log files will be created inside it. If
                           it's a file path, its parent will be used.
        """
        self.log_file_path: Path
        if log_base_path.is_file():
            self.log_dir: Path = log_base_path.parent.resolve()
        else:
            self.log_dir = log_base_path.resolve()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, log_content: Union[dict, list, str]):
        raise NotImplementedError("Subclasses must implement the write() method.")


class ErrorLog(Log):
    """
    Appends human-readable error reports to a plain text file.

    Each report is followed by a separator line, making the file a chronological
    record of failed jobs.
    """

    def __init__(self, error_log_dir: Path, filename: str = ERROR_LOG_FILE_NAME):
        super().__init__(error_log_dir)
        self.log_file_path = self.log_dir / filename

    def write(self, *error_messages: str):
        """
        Writes one or more error messages to the log file.

        Args:
            *error_messages: Pieces of the error report, one per line.
        """
        if not error_messages:
            return

        content_to_write = "\n".join(error_messages) + "\n" + self.linesep_marker + "\n"

        try:
            with self._lock, self.log_file_path.open("a", encoding="utf-8") as f:
                f.write(content_to_write)
        except OSError as e:
            # Fall back to the console so the message is not lost.
            logger.error(f"Failed to write to error log {self.log_file_path}: {e}")
            for msg in error_messages:
                logger.error(f"  - {msg}")


class SuccessLog(Log):
    """
    Records finished jobs as a YAML list.

    To keep the file a valid YAML list, every write reads the existing entries,
    appends the new one with the next index, and writes the whole list back.
    """

    def __init__(self, success_log_dir: Path, filename: str = SUCCESS_LOG_FILE_NAME):
        super().__init__(success_log_dir)
        self.log_file_path = self.log_dir / filename

    def read_entries(self) -> List[Dict]:
        if not self.log_file_path.is_file():
            return []
        try:
            with self.log_file_path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error reading success log {self.log_file_path}: {e}. Starting a new log.")
            return []
        if loaded is None:
            return []
        if not isinstance(loaded, list):
            logger.warning(f"Success log {self.log_file_path} contained unexpected data. Starting a new log.")
            return []
        return loaded

    def write(self, new_log_entry: dict):
        if not isinstance(new_log_entry, dict):
            logger.error("SuccessLog.write expects a dictionary as a log entry.")
            return

        with self._lock:
            entries = self.read_entries()
            current_max_index = max(
                (entry.get("index", 0) for entry in entries if isinstance(entry, dict)),
                default=0,
            )
            entries.append({"index": current_max_index + 1, **new_log_entry})
            try:
                with self.log_file_path.open("w", encoding="utf-8") as f:
                    yaml.safe_dump(
                        entries,
                        f,
                        default_flow_style=False,
                        sort_keys=False,
                        allow_unicode=True,
                        indent=4,
                        width=220,
                    )
            except OSError as e:
                logger.error(f"Failed to write to success log {self.log_file_path}: {e}")


class EventLogger:
    """
    Progress-bus subscriber that logs every event.

    Running progress goes to the debug level, terminal events to info, success
    or error. When a log directory is given, error events are also appended to
    an ErrorLog and done events to a SuccessLog.

    Args:
        log_dir: Directory for the file logs, or None for console only.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        self.error_log = ErrorLog(log_dir) if log_dir else None
        self.success_log = SuccessLog(log_dir) if log_dir else None

    def __call__(self, event: ProgressEvent):
        label = f"[{event.kind.value} {event.job_id[:8]}]"
        if event.stage == Stage.DONE:
            logger.success(f"{label} done: {event.filepath}")
            if self.success_log:
                self.success_log.write(self._success_entry(event))
        elif event.stage == Stage.ERROR:
            logger.error(f"{label} error: {event.message}")
            if self.error_log:
                self.error_log.write(
                    f"{datetime.now().isoformat(timespec='seconds')} {event.kind.value} job {event.job_id}",
                    f"Error: {event.message}",
                )
        elif event.stage == Stage.CANCELED:
            logger.info(f"{label} canceled")
        elif event.percent is not None:
            logger.debug(f"{label} {event.stage.value} {event.percent:.1f}%")
        else:
            logger.debug(f"{label} {event.stage.value}")

    @staticmethod
    def _success_entry(event: ProgressEvent) -> dict:
        entry = {
            "job_id": event.job_id,
            "kind": event.kind.value,
            "output": str(event.filepath) if event.filepath else None,
            "ended_datetime": datetime.now().isoformat(timespec="seconds"),
        }
        if event.metadata is not None:
            entry.update(event.metadata.to_dict())
        return entry
