"""
The shared skeleton of every job pipeline.

A pipeline runs one job from `preparing` to exactly one terminal event. The
subclasses hardcode their stage order; this module holds what they all share:

- `publish_event`, the single emit path. It drops every event after a terminal
  one and lets a terminal event through only if it wins the job's atomic claim.
- `JobPipeline.run_process`, which checks for cancellation before spawning,
  spawns and registers the process under the job lock, and checks again after
  the process exited. A running process is never polled; it can only be killed.
- The error boundary in `JobPipeline.execute`, which turns any exception into one
  `error` event, or into nothing more than cleanup when the job was canceled.
- Output path resolution through an optional output-path policy, and removal
  of partial output.
"""
import re
import shutil
import tempfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

import ffmpeg
from loguru import logger

from ..config.common import TEMP_PREFIX, TEMP_SUFFIXES, THUMBNAIL_DIR, THUMBNAIL_WIDTH
from ..domain.exceptions import (
    JobCanceledException,
    MediaQueueException,
    OutputMissingException,
    OutputPathException,
    ProcessException,
    ProcessFailedException,
)
from ..domain.media import MediaProbe, ProbeResult
from ..domain.models import TERMINAL_STAGES, EventMeta, Job, JobKind, ProgressEvent, Stage
from ..utils.binaries import BinaryResolver
from ..utils.format_utils import file_size_mb, is_reserved_name, path_to_file_url
from ..utils.process_runner import STDERR, STDOUT, ProcessRunner

Publisher = Callable[[ProgressEvent], None]

# Intermediate files written by the fetcher before merging, e.g. "name.f137.mp4".
FORMAT_FRAGMENT_RE = re.compile(r"^\.(f\d+[\w-]*|temp)\.")

# How many trailing stderr lines are kept to explain a failed process.
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class OutputRequest:
    """
    What an output-path policy gets to decide a file name from.

    Attributes:
        kind: The job kind asking for a path.
        default_path: The path the pipeline would use on its own.
        input_path: The local input file (compress, convert).
        title: Media title (download).
        resolution: e.g. "1920x1080".
        media_id: The site's id for the media (download).
        ext: The extension the output will have.
    """

    kind: JobKind
    default_path: Path
    input_path: Optional[Path] = None
    title: Optional[str] = None
    resolution: Optional[str] = None
    media_id: Optional[str] = None
    ext: Optional[str] = None


OutputPathPolicy = Callable[[OutputRequest], Union[str, Path]]


@dataclass
class PipelineContext:
    """
    Collaborators shared by every pipeline of one queue.

    Attributes:
        binaries: Resolves the fetcher, encoder and prober executables.
        publish: Receives every event (normally the progress bus).
        output_policy: Optional replacement for the built-in output naming.
        download_dir: Where downloads go when the payload names no directory.
    """

    binaries: BinaryResolver
    publish: Publisher
    output_policy: Optional[OutputPathPolicy] = None
    download_dir: Optional[Path] = None


def publish_event(
    job: Job,
    publish: Publisher,
    stage: Stage,
    percent: Optional[float] = None,
    filepath: Optional[Path] = None,
    message: Optional[str] = None,
    metadata: Optional[EventMeta] = None,
) -> bool:
    """
    Delivers one event for `job`, honouring the terminal-event rules.

    Runs entirely under the job lock, so a cancel cannot slip in between the
    terminal claim and the delivery of the terminal event.
    A terminal event raised by a subscriber during delivery is sent after the
    current event has reached every subscriber, so it is always the last one.

    Returns:
        True if the event was delivered.
    """
    with job.lock:
        if job.is_terminal:
            return False
        if stage in TERMINAL_STAGES and not job.claim_terminal(TERMINAL_STAGES[stage]):
            return False
        event = ProgressEvent(
            job_id=job.id,
            kind=job.kind,
            stage=stage,
            percent=job.normalize_percent(stage, percent),
            filepath=filepath,
            message=message,
            metadata=metadata,
        )
        job.deliver(event, publish)
        return True


class JobPipeline:
    """
    Base class for the download, compress and convert pipelines.

    Subclasses implement `run()`, which performs the kind-specific stages and
    returns the final output path. `execute()` wraps it in the error boundary and
    reports `done` once the output is confirmed on disk.

    Attributes:
        job: The job being executed.
        context: Shared collaborators of the owning queue.
        meta: Metadata accumulated so far; attached to every event.
        planned_output: The final output path, once resolved.
        input_path: The local input, which partial-output cleanup never touches.
    """

    def __init__(self, job: Job, context: PipelineContext):
        self.job = job
        self.context = context
        self.payload = job.payload
        self.meta = EventMeta()
        self.planned_output: Optional[Path] = None
        self.input_path: Optional[Path] = None
        self.extra_outputs: List[Path] = []
        self._temp_dir: Optional[Path] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(job={self.job.id})"

    @property
    def binaries(self) -> BinaryResolver:
        return self.context.binaries

    @property
    def temp_dir(self) -> Path:
        """A private temp directory for this job, removed when the job ends."""
        if self._temp_dir is None:
            self._temp_dir = Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}{self.job.id[:8]}-"))
        return self._temp_dir

    # --- Events ---

    def emit(
        self,
        stage: Stage,
        percent: Optional[float] = None,
        filepath: Optional[Path] = None,
        message: Optional[str] = None,
        meta: Optional[EventMeta] = None,
    ) -> bool:
        if meta is not None:
            self.meta = self.meta.merged(meta)
        return publish_event(
            self.job,
            self.context.publish,
            stage,
            percent=percent,
            filepath=filepath,
            message=message,
            metadata=self.meta.merged(None),
        )

    def checkpoint(self):
        self.job.checkpoint()

    # --- Lifecycle ---

    def run(self) -> Path:
        raise NotImplementedError("Subclasses must implement the run() method.")

    def execute(self):
        """
        Runs the pipeline to exactly one terminal event. Never raises.
        """
        try:
            self.checkpoint()
            self.emit(Stage.PREPARING, 0)
            output = self.run()
            self.finish(output)
        except JobCanceledException:
            logger.info(f"{self!r} stopped after cancellation.")
            self.remove_partial_outputs()
            self.emit(Stage.CANCELED)
        except Exception as e:
            if self.job.is_canceled:
                # A killed process exits non-zero; that is the cancel, not an error.
                logger.debug(f"{self!r} failed after cancellation, ignoring: {e}")
                self.remove_partial_outputs()
                self.emit(Stage.CANCELED)
                return
            if isinstance(e, MediaQueueException):
                logger.error(f"{self!r} failed: {e}")
            else:
                logger.exception(f"{self!r} failed unexpectedly: {e}")
            self.remove_partial_outputs()
            self.emit(Stage.ERROR, message=str(e) or type(e).__name__)
        finally:
            self.remove_temp_dir()

    def finish(self, output: Path):
        """
        Confirms that `output` exists and is non-empty, then reports `done` at 100%.

        Raises:
            OutputMissingException: If the tool claimed success without output.
            JobCanceledException: If a cancel claimed the job before `done` went out.
        """
        self.checkpoint()
        if not output.is_file() or output.stat().st_size == 0:
            raise OutputMissingException(f"Output file is missing or empty: {output}")
        delivered = self.emit(
            Stage.DONE,
            100,
            filepath=output,
            meta=EventMeta(size_mb=round(file_size_mb(output), 3), ext=output.suffix.lstrip(".")),
        )
        if not delivered and self.job.is_canceled:
            # The cancel claimed the terminal event first; the output goes with it.
            self.extra_outputs.append(output)
            raise JobCanceledException(f"Job {self.job.id} was canceled before completion")

    # --- Processes ---

    def run_process(
        self,
        cmd_list: List[str],
        on_line: Optional[Callable[[str, str], None]] = None,
        label: Optional[str] = None,
    ) -> int:
        """
        Runs one external process for this job and waits for it.

        The process is registered in the job's tracked processes under the job
        lock, before any of its output is read, so a cancel either prevents the
        spawn or finds the process and kills it.

        Args:
            cmd_list: The command to run.
            on_line: Called with (line, stream_name) for every output line.
            label: Name used in error messages (defaults to the executable).

        Returns:
            The exit code, always 0.

        Raises:
            JobCanceledException: If the job was canceled before the spawn or
                                  while the process ran.
            ProcessSpawnException: If the executable could not be started.
            ProcessFailedException: If the process exited with a non-zero code.
        """
        label = label or Path(cmd_list[0]).name
        self._stderr_tail.clear()

        def handle_line(line: str, stream_name: str):
            if stream_name == STDERR and line.strip():
                self._stderr_tail.append(line.strip())
            if on_line is not None:
                on_line(line, stream_name)

        runner = ProcessRunner(cmd_list, on_line=handle_line)
        with self.job.lock:
            self.checkpoint()
            runner.spawn()
            self.job.track(runner)
        try:
            runner.start_reading()
            returncode = runner.wait()
        finally:
            self.job.untrack(runner)

        self.checkpoint()
        if returncode != 0:
            detail = self.failure_detail()
            message = f"{label} exited with code {returncode}"
            raise ProcessFailedException(f"{message}: {detail}" if detail else message, returncode=returncode)
        return returncode

    def failure_detail(self) -> Optional[str]:
        """The most telling stderr line of the last process, if any."""
        for line in reversed(self._stderr_tail):
            if "error" in line.lower():
                return line
        return self._stderr_tail[-1] if self._stderr_tail else None

    def probe_media(self, path: Path) -> Optional[ProbeResult]:
        """Probes a local file with the prober running as a tracked process of this job."""
        return MediaProbe(self.binaries.prober, run=self.run_probe).probe(path)

    def run_probe(self, cmd_list: List[str]) -> str:
        """
        Runs a probe command through `run_process` and returns its stdout.

        Raises:
            JobCanceledException: If the job was canceled before or during the probe.
            ffmpeg.Error: If the prober could not be started or failed.
        """
        stdout_lines: List[str] = []

        def collect(line: str, stream_name: str):
            if stream_name == STDOUT:
                stdout_lines.append(line)

        try:
            self.run_process(cmd_list, on_line=collect, label="probe")
        except ProcessException as e:
            stderr = "\n".join(self._stderr_tail) or str(e)
            raise ffmpeg.Error(cmd_list[0], "\n".join(stdout_lines).encode(), stderr.encode()) from e
        return "\n".join(stdout_lines)

    def extract_thumbnail(self, input_path: Path, duration: Optional[float]) -> Optional[str]:
        """
        Grabs one frame of a video as a JPEG preview.

        Best-effort: any failure other than cancellation yields None.

        Returns:
            A `file://` URL of the preview, or None.
        """
        THUMBNAIL_DIR.mkdir(parents=True, exist_ok=True)
        target = THUMBNAIL_DIR / f"{self.job.id}.jpg"
        seek = min(1.0, duration / 2) if duration else 0.0
        cmd_list = [
            self.binaries.encoder, "-hide_banner", "-loglevel", "error", "-y",
            "-ss", f"{seek:.3f}", "-i", str(input_path),
            "-frames:v", "1", "-vf", f"scale={THUMBNAIL_WIDTH}:-2",
            str(target),
        ]
        try:
            self.run_process(cmd_list, label="thumbnail")
        except ProcessException as e:
            logger.debug(f"No thumbnail for {input_path.name}: {e}")
            return None
        if not target.is_file() or target.stat().st_size == 0:
            return None
        return path_to_file_url(target)

    # --- Output paths ---

    def resolve_output_path(self, default_path: Path, **request_fields) -> Path:
        """
        Decides the final output path and creates its directory.

        When an output-path policy is configured, it receives an `OutputRequest`
        and its answer replaces `default_path`.

        Raises:
            OutputPathException: If the path is relative, is a reserved device
                                 name, equals the input, or its directory
                                 cannot be created.
        """
        path = Path(default_path)
        if self.context.output_policy is not None:
            request = OutputRequest(
                kind=self.job.kind,
                default_path=path,
                input_path=self.input_path,
                **request_fields,
            )
            path = Path(self.context.output_policy(request))

        if not path.is_absolute():
            raise OutputPathException(f"Output path must be absolute: {path}")
        if is_reserved_name(path.name):
            raise OutputPathException(f"Output path uses a reserved device name: {path.name}")
        if self.input_path is not None and path.resolve() == self.input_path.resolve():
            raise OutputPathException(f"Output path would overwrite the input: {path}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputPathException(f"Cannot create output directory {path.parent}: {e}") from e

        self.planned_output = path
        return path

    # --- Cleanup ---

    def _is_partial_artifact(self, candidate: Path, planned: Path) -> bool:
        name = candidate.name
        if name.startswith(planned.name):
            return True
        if not name.startswith(planned.stem + "."):
            return False
        rest = name[len(planned.stem):]
        return rest.endswith(TEMP_SUFFIXES) or bool(FORMAT_FRAGMENT_RE.match(rest))

    def partial_outputs(self) -> List[Path]:
        """Files on disk that belong to this job's unfinished output."""
        found: List[Path] = [p for p in self.extra_outputs if p.exists()]
        planned = self.planned_output
        if planned is not None and planned.parent.is_dir():
            for candidate in planned.parent.iterdir():
                if candidate.is_file() and self._is_partial_artifact(candidate, planned):
                    found.append(candidate)
        if self.input_path is not None:
            protected = self.input_path.resolve()
            found = [p for p in found if p.resolve() != protected]
        return list(dict.fromkeys(found))

    def remove_partial_outputs(self):
        """Best-effort removal; failures are logged, never raised."""
        for path in self.partial_outputs():
            try:
                path.unlink()
                logger.debug(f"Removed partial output {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not remove partial output {path}: {e}")

    def remove_temp_dir(self):
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None
