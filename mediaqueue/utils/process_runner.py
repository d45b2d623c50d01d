"""
Runs a single external tool and streams its output line by line.

`ProcessRunner` wraps `subprocess.Popen` with:
- a reader thread per output stream, feeding a `LineBuffer`, so a chatty tool
  never blocks on a full pipe;
- an exit code that is only reported after both readers have drained, so every
  line reaches the callback before the exit is observed;
- a tree kill that takes the tool's helper processes down with it.

Spawning and reading are separate steps (`spawn()` then `start_reading()`), which
lets a caller register the live process for cancellation before any of its
output can be observed.
"""

import os
import shlex
import signal
import subprocess
import threading
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..config.common import CHILD_ENV_OVERRIDES, KILL_WAIT_TIMEOUT, READ_CHUNK_SIZE
from ..domain.exceptions import ProcessSpawnException
from .progress_parser import LineBuffer

STDOUT = "stdout"
STDERR = "stderr"

LineCallback = Callable[[str, str], None]


def display_command(cmd_list: List[str]) -> str:
    """Quotes a command list for logging, using the platform's conventions."""
    try:
        if os.name == "nt":
            return subprocess.list2cmdline(cmd_list)
        return shlex.join(cmd_list)
    except (TypeError, ValueError):
        return " ".join(map(str, cmd_list))


def kill_process_tree(process: subprocess.Popen):
    """
    Forcefully terminates `process` and every process it started.

    On Windows `taskkill /T /F` walks the tree. Elsewhere the child was started in
    its own session, so killing its process group reaches all descendants, even
    after the direct child itself has exited.
    """
    try:
        if os.name == "nt":
            if process.poll() is not None:
                return
            subprocess.run(
                ["taskkill", "/PID", str(process.pid), "/T", "/F"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
                check=False,
            )
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except OSError as e:
        logger.warning(f"Tree kill failed for pid {process.pid}: {e}. Killing the direct child only.")
        try:
            process.kill()
        except OSError as kill_err:
            logger.error(f"Could not kill pid {process.pid}: {kill_err}")
            return
    try:
        process.wait(timeout=KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.error(f"Process {process.pid} still alive {KILL_WAIT_TIMEOUT}s after kill.")


class ProcessRunner:
    """
    One external process with line-oriented output callbacks.

    Attributes:
        cmd_list: The command and its arguments.
        on_line: Called with (line, stream_name) for every complete output line.
                 Runs on a reader thread.
        process: The `Popen` handle once spawned.
        returncode: The exit code once `wait()` has returned.
    """

    def __init__(
        self,
        cmd_list: List[str],
        on_line: Optional[LineCallback] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        if not cmd_list:
            raise ValueError("ProcessRunner needs a non-empty command list.")
        self.cmd_list = [str(part) for part in cmd_list]
        self.on_line = on_line
        self.env = env
        self.cwd = cwd
        self.process: Optional[subprocess.Popen] = None
        self.returncode: Optional[int] = None
        self._readers: List[threading.Thread] = []

    def __repr__(self) -> str:
        pid = self.process.pid if self.process else None
        return f"ProcessRunner(pid={pid}, cmd={self.cmd_list[0]!r})"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def spawn(self) -> "ProcessRunner":
        """
        Starts the process without reading its output yet.

        Raises:
            ProcessSpawnException: If the executable is missing or cannot be run.
        """
        env = dict(os.environ)
        env.update(CHILD_ENV_OVERRIDES)
        if self.env:
            env.update(self.env)

        popen_kwargs = {}
        if os.name == "nt":
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        else:
            popen_kwargs["start_new_session"] = True

        logger.debug(f"Spawning: {display_command(self.cmd_list)}")
        try:
            self.process = subprocess.Popen(
                self.cmd_list,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=self.cwd,
                **popen_kwargs,
            )
        except OSError as e:
            raise ProcessSpawnException(f"Could not start '{self.cmd_list[0]}': {e}") from e
        return self

    def start_reading(self):
        """Starts one reader thread per output stream."""
        if self.process is None:
            raise RuntimeError("start_reading() called before spawn().")
        for stream, name in ((self.process.stdout, STDOUT), (self.process.stderr, STDERR)):
            reader = threading.Thread(
                target=self._read_stream,
                args=(stream, name),
                name=f"reader-{self.process.pid}-{name}",
                daemon=True,
            )
            reader.start()
            self._readers.append(reader)

    def _read_stream(self, stream, name: str):
        buffer = LineBuffer(lambda line: self._deliver(line, name))
        try:
            while True:
                chunk = stream.read1(READ_CHUNK_SIZE)
                if not chunk:
                    break
                buffer.feed(chunk)
        except (OSError, ValueError) as e:
            logger.debug(f"Reader for pid {self.pid} ({name}) stopped: {e}")
        finally:
            buffer.flush()
            stream.close()

    def _deliver(self, line: str, stream_name: str):
        if self.on_line is None:
            return
        try:
            self.on_line(line, stream_name)
        except Exception as e:
            logger.error(f"Line callback failed for pid {self.pid} ({stream_name}): {e}")

    def wait(self) -> int:
        """
        Blocks until the process has exited and its output has been drained.

        Returns:
            The exit code.
        """
        if self.process is None:
            raise RuntimeError("wait() called before spawn().")
        self.returncode = self.process.wait()
        for reader in self._readers:
            reader.join()
        return self.returncode

    def kill_tree(self):
        if self.process is not None:
            kill_process_tree(self.process)

    def run(self) -> int:
        """Spawns, reads and waits in one call, for processes nobody needs to cancel."""
        self.spawn()
        self.start_reading()
        return self.wait()
