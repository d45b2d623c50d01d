import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from pprint import pformat
from typing import Any, Callable, Dict, List, Optional

import ffmpeg
from loguru import logger

from ..config.media import AUDIO_EXTENSIONS, IMAGE_EXTENSIONS
from ..utils.format_utils import bytes_to_mb, extension_of

MEDIA_IMAGE = "image"
MEDIA_AUDIO = "audio"
MEDIA_VIDEO = "video"


def parse_duration(duration_str: str) -> float:
    """
    Parses a duration string into total seconds.

    This function is designed to handle two common duration formats provided by ffprobe:
    1. A simple string representing a floating-point number of seconds (e.g., "3600.5").
    2. A timecode string in the format 'HH:MM:SS.sss' (e.g., "01:00:00.500").
       Hours and minutes are optional in the timecode format.

    Args:
        duration_str: The string containing the duration to parse.

    Returns:
        The total duration in seconds as a float. Returns 0.0 if parsing fails.
    """
    try:
        return float(duration_str)
    except ValueError:
        pattern = r"(?:(\d{1,2}):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)"
        match = re.fullmatch(pattern, duration_str.strip())
        if match:
            hours_str, minutes_str, seconds_str = match.groups()
            hours = int(hours_str) if hours_str else 0
            minutes = int(minutes_str)
            seconds = float(seconds_str)
            return float(hours * 3600 + minutes * 60 + seconds)
        logger.warning(f"Could not parse duration string: {duration_str}")
    return 0.0


def classify_media(path: Path) -> str:
    """Returns "image", "audio" or "video" for `path`, judged by its extension."""
    ext = extension_of(Path(path))
    if ext in IMAGE_EXTENSIONS:
        return MEDIA_IMAGE
    if ext in AUDIO_EXTENSIONS:
        return MEDIA_AUDIO
    return MEDIA_VIDEO


def _parse_frame_rate(rate: Optional[str]) -> Optional[float]:
    if not rate or rate == "0/0":
        return None
    try:
        if "/" in rate:
            num, den = map(float, rate.split("/"))
            return round(num / den, 3) if den else None
        return float(rate)
    except ValueError:
        return None


@dataclass(frozen=True)
class ProbeResult:
    """
    Immutable metadata snapshot of one local media file.

    Attributes:
        path: The probed file.
        duration: Seconds, or None when neither the container nor a stream reports one.
        size_bytes: File size from the container, falling back to the file system.
        container: The container's format name (e.g. "mov,mp4,m4a,3gp,3g2,mj2").
        vcodec: Codec of the first video stream, lowercased.
        acodec: Codec of the first audio stream, lowercased.
        width: Width of the first video stream.
        height: Height of the first video stream.
        fps: Average frame rate of the first video stream.
        bit_rate: Overall bitrate in bits per second, if reported.
        raw: The prober's JSON output.
    """

    path: Path
    duration: Optional[float] = None
    size_bytes: Optional[int] = None
    container: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    bit_rate: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def resolution(self) -> Optional[str]:
        if self.width and self.height:
            return f"{self.width}x{self.height}"
        return None

    @property
    def size_mb(self) -> Optional[float]:
        return bytes_to_mb(self.size_bytes) if self.size_bytes is not None else None

    @property
    def has_video(self) -> bool:
        return self.vcodec is not None

    @classmethod
    def from_probe(cls, path: Path, probe: Dict[str, Any]) -> "ProbeResult":
        """
        Builds a ProbeResult from `ffprobe -show_format -show_streams` JSON.

        The duration is taken from the format section first, then from the first
        stream that carries one.
        """
        format_info = probe.get("format", {}) or {}
        streams: List[Dict[str, Any]] = probe.get("streams", []) or []

        duration_val = format_info.get("duration")
        if not duration_val:
            duration_val = next((s["duration"] for s in streams if s.get("duration")), None)
        duration = parse_duration(str(duration_val)) if duration_val is not None else None
        if duration is not None and duration <= 0:
            duration = None

        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

        size_bytes = _as_int(format_info.get("size"))
        if size_bytes is None and path.is_file():
            size_bytes = path.stat().st_size

        return cls(
            path=path,
            duration=duration,
            size_bytes=size_bytes,
            container=format_info.get("format_name"),
            vcodec=(video.get("codec_name") or "").lower() or None if video else None,
            acodec=(audio.get("codec_name") or "").lower() or None if audio else None,
            width=_as_int(video.get("width")) if video else None,
            height=_as_int(video.get("height")) if video else None,
            fps=_parse_frame_rate(video.get("avg_frame_rate")) if video else None,
            bit_rate=_as_int(format_info.get("bit_rate")),
            raw=probe,
        )


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


ProbeRun = Callable[[List[str]], str]


class MediaProbe:
    """
    Queries metadata of local files through the prober (ffprobe).

    By default the call goes through `ffmpeg.probe` with the resolved prober
    executable. A pipeline passes `run` instead, which executes the same command
    as a tracked process of its job and returns the prober's stdout, so a cancel
    kills a slow probe like any other process. `run` reports a failed prober by
    raising `ffmpeg.Error`, as `ffmpeg.probe` does.

    Args:
        prober_path: The ffprobe executable to run.
        run: Optional replacement for running the probe command.
    """

    def __init__(self, prober_path: str = "ffprobe", run: Optional[ProbeRun] = None):
        self.prober_path = prober_path
        self.run = run

    def command(self, path: Path) -> List[str]:
        return [self.prober_path, "-show_format", "-show_streams", "-of", "json", str(path)]

    def probe(self, path: Path) -> Optional[ProbeResult]:
        """
        Probes `path`.

        Returns:
            A ProbeResult, or None if the file is missing, the prober failed or
            its output could not be read.
        """
        path = Path(path)
        if not path.is_file():
            logger.warning(f"Probe skipped, file does not exist: {path}")
            return None
        try:
            if self.run is None:
                raw = ffmpeg.probe(str(path), cmd=self.prober_path)
            else:
                raw = json.loads(self.run(self.command(path)))
        except ffmpeg.Error as e:
            stderr = e.stderr.decode("utf-8", errors="replace") if e.stderr else ""
            logger.warning(f"ffmpeg.probe failed for {path}: {stderr.strip()}")
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Could not probe {path}: {e}")
            return None
        logger.trace(f"Probe data for {path.name}:\n{pformat(raw)}")
        return ProbeResult.from_probe(path, raw)

    def duration(self, path: Path) -> Optional[float]:
        result = self.probe(path)
        return result.duration if result else None


@dataclass(frozen=True)
class RemoteMedia:
    """
    What the fetcher reports about a URL before downloading it.

    Attributes:
        title: The page title, unsanitised.
        media_id: The site's id for the media.
        ext: Extension of the format the fetcher would pick by default.
        vcodec: Video codec of that format ("none" is normalised to None).
        acodec: Audio codec of that format.
        resolution: e.g. "1920x1080".
        height: Video height in pixels.
        fps: Frame rate.
        duration: Seconds.
        thumbnail: URL of the largest thumbnail offered.
    """

    title: Optional[str] = None
    media_id: Optional[str] = None
    ext: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    resolution: Optional[str] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> "RemoteMedia":
        def codec(value: Optional[str]) -> Optional[str]:
            return value if value and value != "none" else None

        height = _as_int(info.get("height"))
        resolution = info.get("resolution")
        if not resolution or resolution == "audio only":
            resolution = f"{height}p" if height else None
        fps = info.get("fps")
        duration = info.get("duration")
        return cls(
            title=info.get("title"),
            media_id=str(info["id"]) if info.get("id") is not None else None,
            ext=info.get("ext"),
            vcodec=codec(info.get("vcodec")),
            acodec=codec(info.get("acodec")),
            resolution=resolution,
            height=height,
            fps=float(fps) if isinstance(fps, (int, float)) else None,
            duration=float(duration) if isinstance(duration, (int, float)) else None,
            thumbnail=_best_thumbnail(info),
        )

    @classmethod
    def from_json(cls, text: str) -> Optional["RemoteMedia"]:
        """
        Decodes the fetcher's `-j` output. With playlists the fetcher prints one
        object per line; the first one is used.

        Returns:
            The record, or None if no line holds a JSON object.
        """
        for line in text.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                info = json.loads(line)
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping undecodable fetcher JSON line: {e}")
                continue
            if isinstance(info, dict):
                return cls.from_info(info)
        return None


def _best_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    thumbnails = info.get("thumbnails") or []
    candidates = [t for t in thumbnails if isinstance(t, dict) and t.get("url")]
    if candidates:
        best = max(
            candidates,
            key=lambda t: (
                t.get("preference") or 0,
                (t.get("width") or 0) * (t.get("height") or 0),
            ),
        )
        return best["url"]
    return info.get("thumbnail")
