"""
Data models for jobs, their payloads and the progress events they produce.

Payloads are one dataclass per job kind with explicit optional fields, so a
pipeline never has to guess at the keys of a loose dictionary. `Job` carries the
runtime state of one unit of work: its cancellation flag, its single terminal
claim and the processes spawned on its behalf. All three are guarded by the
job's own re-entrant lock.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..config.compress import DEFAULT_AUDIO_BITRATE_CEILING, DEFAULT_IMAGE_FORMAT
from ..config.convert import DEFAULT_AUDIO_KBPS, DEFAULT_IMAGE_QUALITY, DEFAULT_VIDEO_CRF
from .exceptions import InvalidPayloadException, JobCanceledException


class JobKind(str, Enum):
    DOWNLOAD = "download"
    COMPRESS = "compress"
    CONVERT = "convert"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERRORED = "errored"
    CANCELED = "canceled"


class Stage(str, Enum):
    PREPARING = "preparing"
    PROBE = "probe"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    RECODING = "recoding"
    COMPRESSING = "compressing"
    PASS1 = "pass1"
    PASS2 = "pass2"
    ENCODING = "encoding"
    DONE = "done"
    ERROR = "error"
    CANCELED = "canceled"


TERMINAL_STAGES = {
    Stage.DONE: JobState.DONE,
    Stage.ERROR: JobState.ERRORED,
    Stage.CANCELED: JobState.CANCELED,
}


# --- Payloads ---

PathLike = Union[str, Path]


def _as_path(value: Optional[PathLike]) -> Optional[Path]:
    return Path(value) if value else None


@dataclass(frozen=True)
class DownloadPayload:
    url: str
    media_type: str = "video"
    quality: str = "best"
    out_dir: Optional[Path] = None


@dataclass(frozen=True)
class CompressPayload:
    input_path: Path
    mode: str = "size"
    target_mb: Optional[float] = None
    target_percent: Optional[float] = None
    out_dir: Optional[Path] = None
    image_format: str = DEFAULT_IMAGE_FORMAT
    audio_bitrate_k: int = DEFAULT_AUDIO_BITRATE_CEILING


@dataclass(frozen=True)
class ConvertPayload:
    input_path: Path
    target_ext: str
    out_dir: Optional[Path] = None
    video_crf: int = DEFAULT_VIDEO_CRF
    audio_kbps: int = DEFAULT_AUDIO_KBPS
    image_quality: int = DEFAULT_IMAGE_QUALITY


Payload = Union[DownloadPayload, CompressPayload, ConvertPayload]

PAYLOAD_TYPES = {
    JobKind.DOWNLOAD: DownloadPayload,
    JobKind.COMPRESS: CompressPayload,
    JobKind.CONVERT: ConvertPayload,
}

# camelCase keys used by front-ends, mapped onto the dataclass fields.
_KEY_ALIASES = {
    "type": "media_type",
    "outDir": "out_dir",
    "inputPath": "input_path",
    "targetMB": "target_mb",
    "targetPercent": "target_percent",
    "imageFormat": "image_format",
    "audioBitrateK": "audio_bitrate_k",
    "targetExt": "target_ext",
    "videoCrf": "video_crf",
    "audioKbps": "audio_kbps",
    "imageQuality": "image_quality",
}

_REQUIRED_FIELDS = {
    JobKind.DOWNLOAD: ("url",),
    JobKind.COMPRESS: ("input_path",),
    JobKind.CONVERT: ("input_path", "target_ext"),
}

_PATH_FIELDS = ("input_path", "out_dir")
_NUMBER_FIELDS = (
    "target_mb", "target_percent", "audio_bitrate_k",
    "video_crf", "audio_kbps", "image_quality",
)


def payload_from_dict(kind: JobKind, data: Dict[str, Any]) -> Payload:
    """
    Builds the payload dataclass for `kind` from a plain dictionary.

    Only the structure is checked here: required keys present, strings where
    strings belong, numbers where numbers belong. Whether the file exists or the
    format combination is supported is decided later by the pipeline.

    Raises:
        InvalidPayloadException: If the dictionary does not have the right shape.
    """
    if not isinstance(data, dict):
        raise InvalidPayloadException(f"{kind.value} payload must be a mapping, got {type(data).__name__}")

    normalized = {_KEY_ALIASES.get(key, key): value for key, value in data.items()}
    payload_type = PAYLOAD_TYPES[kind]
    known = set(payload_type.__dataclass_fields__)

    unknown = sorted(set(normalized) - known)
    if unknown:
        raise InvalidPayloadException(f"Unknown {kind.value} payload field(s): {', '.join(unknown)}")
    for name in _REQUIRED_FIELDS[kind]:
        if not normalized.get(name):
            raise InvalidPayloadException(f"{kind.value} payload is missing '{name}'")

    for name, value in list(normalized.items()):
        if value is None:
            normalized.pop(name)
            continue
        if name in _PATH_FIELDS:
            if not isinstance(value, (str, Path)):
                raise InvalidPayloadException(f"'{name}' must be a path")
            normalized[name] = Path(value)
        elif name in _NUMBER_FIELDS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidPayloadException(f"'{name}' must be a number")
        elif not isinstance(value, str):
            raise InvalidPayloadException(f"'{name}' must be a string")

    return payload_type(**normalized)


def coerce_payload(kind: JobKind, payload: Union[Payload, Dict[str, Any]]) -> Payload:
    """Accepts either the payload dataclass for `kind` or a dict describing it."""
    if isinstance(payload, dict):
        return payload_from_dict(kind, payload)
    if not isinstance(payload, PAYLOAD_TYPES[kind]):
        raise InvalidPayloadException(
            f"{kind.value} queue expects {PAYLOAD_TYPES[kind].__name__}, got {type(payload).__name__}"
        )
    return payload


# --- Events ---

@dataclass
class EventMeta:
    """Advisory metadata attached to a progress event, consumed by UI/history subscribers."""

    title: Optional[str] = None
    ext: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    resolution: Optional[str] = None
    fps: Optional[float] = None
    duration_sec: Optional[float] = None
    size_mb: Optional[float] = None
    thumbnail: Optional[str] = None
    date: Optional[str] = None
    is_image: Optional[bool] = None
    is_audio: Optional[bool] = None
    is_video: Optional[bool] = None
    downloaded_mb: Optional[float] = None
    total_mb: Optional[float] = None
    speed: Optional[str] = None
    eta: Optional[str] = None

    def merged(self, other: Optional["EventMeta"]) -> "EventMeta":
        """Returns a copy of self with every field that is set on `other` overriding it."""
        if other is None:
            return EventMeta(**asdict(self))
        values = asdict(self)
        values.update({key: value for key, value in asdict(other).items() if value is not None})
        return EventMeta(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class ProgressEvent:
    """
    A point-in-time status report for one job.

    Attributes:
        job_id: The id returned by `submit`.
        kind: Which queue the job belongs to.
        stage: The pipeline stage this report belongs to.
        percent: 0-100, non-decreasing within a stage.
        filepath: The final output, only present on `done`.
        message: Human readable detail, present on `error`.
        metadata: Advisory metadata (title, codecs, size, thumbnail, ...).
    """

    job_id: str
    kind: JobKind
    stage: Stage
    percent: Optional[float] = None
    filepath: Optional[Path] = None
    message: Optional[str] = None
    metadata: Optional[EventMeta] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.job_id,
            "source": self.kind.value,
            "stage": self.stage.value,
        }
        if self.percent is not None:
            result["percent"] = self.percent
        if self.filepath is not None:
            result["filepath"] = str(self.filepath)
        if self.message is not None:
            result["message"] = self.message
        if self.metadata is not None:
            result["meta"] = self.metadata.to_dict()
        return result


# --- Job ---

def new_job_id() -> str:
    return uuid.uuid4().hex


class Job:
    """
    One unit of work owned by a TaskQueue until it reaches a terminal state.

    Attributes:
        id: Opaque unique token, assigned at submission and never reused.
        kind: The queue kind this job belongs to.
        payload: The immutable request.
        state: Queued, Running or one of the terminal states.
        tracked_processes: Live child-process handles spawned for this job.
                           Appended only while Running, drained on cancel.
    """

    def __init__(self, kind: JobKind, payload: Payload, job_id: Optional[str] = None):
        self.id: str = job_id or new_job_id()
        self.kind = kind
        self.payload = payload
        self.state: JobState = JobState.QUEUED
        self.tracked_processes: List[Any] = []
        self.lock = threading.RLock()
        self._cancel_requested = False
        self._terminal_state: Optional[JobState] = None
        self._last_stage: Optional[Stage] = None
        self._last_percent: float = 0.0
        self._delivering = False
        self._deferred_events: List[Any] = []

    def __repr__(self) -> str:
        return f"Job(id={self.id!r}, kind={self.kind.value}, state={self.state.value})"

    @property
    def is_canceled(self) -> bool:
        return self._cancel_requested

    @property
    def is_terminal(self) -> bool:
        return self._terminal_state is not None

    def mark_running(self) -> bool:
        """Moves a queued job to Running. Returns False if it was canceled meanwhile."""
        with self.lock:
            if self._cancel_requested or self.is_terminal:
                return False
            self.state = JobState.RUNNING
            return True

    def claim_terminal(self, state: JobState) -> bool:
        """
        Atomically claims the single terminal state of this job.

        Returns:
            True for the first caller; every later caller gets False and must not
            report a terminal event.
        """
        with self.lock:
            if self._terminal_state is not None:
                return False
            self._terminal_state = state
            self.state = state
            return True

    def request_cancel(self) -> List[Any]:
        """
        Sets the cancellation flag and drains the tracked processes.

        Must be called with `lock` held together with the terminal claim, so that a
        process is either never spawned or is part of the returned list.

        Returns:
            The processes that were live for this job; the caller kills them.
        """
        with self.lock:
            self._cancel_requested = True
            drained = list(self.tracked_processes)
            self.tracked_processes.clear()
            return drained

    def checkpoint(self):
        """Raises `JobCanceledException` if cancellation has been requested."""
        if self._cancel_requested:
            raise JobCanceledException(f"Job {self.id} was canceled")

    def track(self, process: Any):
        with self.lock:
            self.checkpoint()
            self.tracked_processes.append(process)

    def untrack(self, process: Any):
        with self.lock:
            if process in self.tracked_processes:
                self.tracked_processes.remove(process)

    def deliver(self, event: ProgressEvent, publish: Callable[[ProgressEvent], None]):
        """
        Hands `event` to `publish`. Must be called with `lock` held.

        An event produced by a subscriber while an earlier event of this job is
        still being delivered (a cancel from inside a callback) is held back until
        that delivery has reached every subscriber, so events keep their order.
        """
        if self._delivering:
            self._deferred_events.append(event)
            return
        self._delivering = True
        try:
            publish(event)
            while self._deferred_events:
                publish(self._deferred_events.pop(0))
        finally:
            self._delivering = False
            self._deferred_events.clear()

    def normalize_percent(self, stage: Stage, percent: Optional[float]) -> Optional[float]:
        """
        Keeps reported percentages non-decreasing within one stage.

        The running maximum resets whenever the stage changes.
        """
        with self.lock:
            if stage != self._last_stage:
                self._last_stage = stage
                self._last_percent = 0.0
            if percent is None:
                return None
            percent = max(0.0, min(100.0, float(percent)))
            if percent < self._last_percent:
                percent = self._last_percent
            self._last_percent = percent
            return percent
