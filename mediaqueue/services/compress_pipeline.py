"""
The compress pipeline: shrink an image, audio or video file to a target size.

- Images: an encode-measure-adjust loop over a normalized 0-100 quality, since
  encoder quality is not proportional to output size.
- Audio and video: a bitrate is allocated in closed form from the target size
  and the duration. Video is encoded in two passes, audio in one.

Stages: preparing -> probe -> compressing (images) | encoding (audio) |
pass1 -> pass2 (video) -> done.
"""
import math
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..config.compress import (
    AUDIO_BITRATE_FLOOR,
    AUDIO_CODEC,
    AUDIO_ONLY_BITRATE_MAX,
    AUDIO_ONLY_BITRATE_MIN,
    AUDIO_OUTPUT_EXT,
    AUDIO_RESERVE_FOR_VIDEO,
    ENCODE_START_PERCENT,
    IMAGE_FORMATS,
    IMAGE_QUALITY_MAX,
    IMAGE_QUALITY_MIN,
    IMAGE_QUALITY_STEP_DOWN,
    IMAGE_QUALITY_STEP_UP,
    IMAGE_START_QUALITY,
    MAX_IMAGE_ATTEMPTS,
    MJPEG_QSCALE_MAX,
    MJPEG_QSCALE_MIN,
    SIZE_TOLERANCE,
    TOTAL_BITRATE_FLOOR,
    VIDEO_BITRATE_FLOOR,
    VIDEO_CODEC,
    VIDEO_OUTPUT_EXT,
)
from ..domain.exceptions import InvalidPayloadException, NoDurationFoundException, OutputMissingException
from ..domain.media import MEDIA_AUDIO, MEDIA_IMAGE, MEDIA_VIDEO, classify_media
from ..domain.models import CompressPayload, EventMeta, Stage
from ..utils.format_utils import BYTES_PER_MB, file_size_mb, formatted_size, path_to_file_url
from ..utils.progress_parser import encoder_percent
from .pipeline_base import JobPipeline

MODES = ("size", "percent")


# --- Image quality search ---

def mjpeg_qscale(quality: int) -> int:
    """Maps the 0-100 quality onto mjpeg's inverted 2 (best) .. 31 (worst) scale."""
    return min(MJPEG_QSCALE_MAX, max(MJPEG_QSCALE_MIN, round((100 - quality) / 2)))


def image_codec_args(image_format: str, quality: int) -> List[str]:
    if image_format == "webp":
        return ["-c:v", "libwebp", "-q:v", str(quality)]
    return ["-c:v", "mjpeg", "-q:v", str(mjpeg_qscale(quality))]


def next_quality(quality: int, size_mb: float, target_mb: float) -> int:
    """One step of the quality search: down when too big, up (less) when too small."""
    if size_mb > target_mb:
        quality -= IMAGE_QUALITY_STEP_DOWN
    else:
        quality += IMAGE_QUALITY_STEP_UP
    return max(IMAGE_QUALITY_MIN, min(IMAGE_QUALITY_MAX, quality))


def within_tolerance(size_mb: float, target_mb: float) -> bool:
    return abs(size_mb - target_mb) / target_mb < SIZE_TOLERANCE


def search_progress(attempt: int) -> int:
    return min(95, 20 + attempt * 15)


# --- Bitrate allocation ---

@dataclass(frozen=True)
class BitrateAllocation:
    """Bitrates in kbps. `video_kbps` is None for audio-only inputs."""

    total_kbps: int
    audio_kbps: int
    video_kbps: Optional[int] = None


def allocate_bitrate(
    target_mb: float,
    duration: float,
    has_video: bool = True,
    audio_ceiling_kbps: int = 160,
) -> BitrateAllocation:
    """
    Splits the bit budget of `target_mb` over `duration` seconds.

    The total never drops below its floor. For video, audio takes what is left
    after a reserve for video, capped at `audio_ceiling_kbps` (itself never below
    the audio floor) and floored, and
    video gets the rest with a floor of its own. Audio-only inputs get the whole
    total clamped to the usable audio range.

    Raises:
        NoDurationFoundException: If `duration` is not positive.
    """
    if not duration or duration <= 0 or not math.isfinite(duration):
        raise NoDurationFoundException(f"Cannot allocate a bitrate for duration {duration!r}")
    total = max(TOTAL_BITRATE_FLOOR, math.floor(target_mb * BYTES_PER_MB * 8 / duration / 1000))
    if not has_video:
        audio = max(AUDIO_ONLY_BITRATE_MIN, min(AUDIO_ONLY_BITRATE_MAX, total))
        return BitrateAllocation(total_kbps=total, audio_kbps=audio)
    ceiling = max(AUDIO_BITRATE_FLOOR, audio_ceiling_kbps)
    audio = min(ceiling, max(AUDIO_BITRATE_FLOOR, total - AUDIO_RESERVE_FOR_VIDEO))
    video = max(VIDEO_BITRATE_FLOOR, total - audio)
    return BitrateAllocation(total_kbps=total, audio_kbps=audio, video_kbps=video)


def target_size_mb(payload: CompressPayload, input_mb: float) -> float:
    """
    The size to aim for. Percent mode rounds to whole megabytes, never below 1.

    Raises:
        InvalidPayloadException: If the mode's target value is missing or not positive.
    """
    if payload.mode == "percent":
        if not payload.target_percent or payload.target_percent <= 0:
            raise InvalidPayloadException("Percent mode needs a positive target_percent.")
        return max(1, round(input_mb * payload.target_percent / 100))
    if not payload.target_mb or payload.target_mb <= 0:
        raise InvalidPayloadException("Size mode needs a positive target_mb.")
    return payload.target_mb


def format_target(target_mb: float) -> str:
    return f"{target_mb:g}"


class CompressPipeline(JobPipeline):
    """
    Compresses one local file to roughly `target_mb` megabytes.

    The output goes next to the input (or into `out_dir`) as
    `name (compressed-<T>MB).<ext>`: jpg/webp for images, m4a for audio and mp4
    for video.
    """

    payload: CompressPayload

    def validate(self):
        if self.payload.mode not in MODES:
            raise InvalidPayloadException(f"Unknown compress mode '{self.payload.mode}'. Expected one of {MODES}.")
        if self.payload.image_format not in IMAGE_FORMATS:
            raise InvalidPayloadException(
                f"Unknown image format '{self.payload.image_format}'. Expected one of {IMAGE_FORMATS}."
            )
        if not self.input_path.is_file():
            raise InvalidPayloadException(f"Input file not found: {self.input_path}")

    def run(self) -> Path:
        self.input_path = Path(self.payload.input_path).expanduser().resolve()
        self.validate()

        media_kind = classify_media(self.input_path)
        input_mb = file_size_mb(self.input_path)
        target_mb = target_size_mb(self.payload, input_mb)

        if media_kind == MEDIA_IMAGE:
            out_ext = "webp" if self.payload.image_format == "webp" else "jpg"
        elif media_kind == MEDIA_AUDIO:
            out_ext = AUDIO_OUTPUT_EXT
        else:
            out_ext = VIDEO_OUTPUT_EXT
        out_dir = Path(self.payload.out_dir).expanduser().resolve() if self.payload.out_dir else self.input_path.parent
        output = self.resolve_output_path(
            out_dir / f"{self.input_path.stem} (compressed-{format_target(target_mb)}MB).{out_ext}",
            title=self.input_path.stem,
            ext=out_ext,
        )
        logger.info(
            f"Compressing {self.input_path.name} ({formatted_size(self.input_path.stat().st_size)}) "
            f"to ~{format_target(target_mb)} MB -> {output.name}"
        )

        self.emit(
            Stage.PROBE,
            0,
            meta=EventMeta(
                title=output.name,
                is_image=media_kind == MEDIA_IMAGE,
                is_audio=media_kind == MEDIA_AUDIO,
                is_video=media_kind == MEDIA_VIDEO,
                date=datetime.now().isoformat(timespec="seconds"),
                thumbnail=path_to_file_url(self.input_path) if media_kind == MEDIA_IMAGE else None,
            ),
        )
        self.checkpoint()

        if media_kind == MEDIA_IMAGE:
            self.compress_image(output, target_mb)
            self.meta = self.meta.merged(EventMeta(thumbnail=path_to_file_url(output)))
            return output

        probe = self.probe_media(self.input_path)
        duration = probe.duration if probe else None
        if not duration or duration <= 0:
            raise NoDurationFoundException(f"Could not determine the duration of {self.input_path.name}")
        self.emit(
            Stage.PROBE,
            100,
            meta=EventMeta(
                duration_sec=duration,
                vcodec=probe.vcodec,
                acodec=probe.acodec,
                resolution=probe.resolution,
                fps=probe.fps,
            ),
        )

        if media_kind == MEDIA_VIDEO:
            thumbnail = self.extract_thumbnail(self.input_path, duration)
            if thumbnail:
                self.emit(Stage.PROBE, 100, meta=EventMeta(thumbnail=thumbnail))

        has_video = media_kind == MEDIA_VIDEO
        allocation = allocate_bitrate(target_mb, duration, has_video, self.payload.audio_bitrate_k)
        logger.debug(f"Bitrate allocation for {self.input_path.name}: {allocation}")
        if has_video:
            self.compress_video(output, allocation, duration)
        else:
            self.compress_audio(output, allocation, duration)
        return output

    # --- Images ---

    def compress_image(self, output: Path, target_mb: float) -> int:
        """
        Runs the quality search, writing every attempt to `output`.

        The last attempt is accepted even when it is still outside the tolerance.

        Returns:
            The number of encode attempts made.
        """
        image_format = self.payload.image_format
        quality = IMAGE_START_QUALITY[image_format]
        self.emit(Stage.COMPRESSING, 0)

        attempt = 0
        for attempt in range(1, MAX_IMAGE_ATTEMPTS + 1):
            cmd_list = [
                self.binaries.encoder, "-hide_banner", "-nostdin", "-y",
                "-i", str(self.input_path),
                *image_codec_args(image_format, quality),
                str(output),
            ]
            self.run_process(cmd_list, label=f"ffmpeg {image_format} attempt {attempt}")
            if not output.is_file():
                raise OutputMissingException(f"Encoder wrote no {image_format} output on attempt {attempt}")

            size_mb = file_size_mb(output)
            logger.debug(
                f"{self.input_path.name} attempt {attempt}: quality {quality} -> {size_mb:.3f} MB (target {target_mb} MB)"
            )
            self.emit(Stage.COMPRESSING, search_progress(attempt))
            if within_tolerance(size_mb, target_mb):
                break
            quality = next_quality(quality, size_mb, target_mb)
        return attempt

    # --- Audio ---

    def compress_audio(self, output: Path, allocation: BitrateAllocation, duration: float):
        self.emit(Stage.ENCODING, ENCODE_START_PERCENT)
        cmd_list = [
            self.binaries.encoder, "-hide_banner", "-nostdin", "-y",
            "-i", str(self.input_path),
            "-vn", "-c:a", AUDIO_CODEC, "-b:a", f"{allocation.audio_kbps}k",
            str(output),
        ]
        self.run_process(cmd_list, on_line=self._progress_handler(Stage.ENCODING, duration), label="ffmpeg audio")

    # --- Video ---

    def compress_video(self, output: Path, allocation: BitrateAllocation, duration: float):
        """
        Two-pass encode. The first pass only measures and writes to the null
        muxer; its log files live in the job's temp directory.
        """
        passlog = self.temp_dir / "passlog"
        common = [
            self.binaries.encoder, "-hide_banner", "-nostdin", "-y",
            "-i", str(self.input_path),
            "-c:v", VIDEO_CODEC, "-b:v", f"{allocation.video_kbps}k",
            "-passlogfile", str(passlog),
        ]

        self.emit(Stage.PASS1, ENCODE_START_PERCENT)
        self.run_process(
            [*common, "-pass", "1", "-an", "-f", "null", null_sink()],
            on_line=self._progress_handler(Stage.PASS1, duration),
            label="ffmpeg pass 1",
        )

        self.emit(Stage.PASS2, 0)
        self.run_process(
            [
                *common, "-pass", "2",
                "-c:a", AUDIO_CODEC, "-b:a", f"{allocation.audio_kbps}k",
                "-movflags", "+faststart",
                str(output),
            ],
            on_line=self._progress_handler(Stage.PASS2, duration),
            label="ffmpeg pass 2",
        )

    def _progress_handler(self, stage: Stage, duration: float):
        def on_line(line: str, stream_name: str):
            percent = encoder_percent(line, duration)
            if percent is not None:
                self.emit(stage, percent)

        return on_line


def null_sink() -> str:
    return "NUL" if os.name == "nt" else "/dev/null"
