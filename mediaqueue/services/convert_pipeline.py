"""
The convert pipeline: re-encode a file into another format.

The input and output media kinds pick one of four routes, and each route maps
the target extension to encoder arguments:

    image -> image                image_args
    audio -> audio                audio_args
    video or audio -> container   video_args   (mp4, mkv, mov, webm, gif)
    video -> audio                audio_args   (audio extraction)

Any other combination fails with UnsupportedFormatException before a process is
spawned. Stages: preparing -> probe -> encoding -> done.
"""
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..config.convert import (
    COLLISION_SUFFIX,
    GIF_FILTER,
    OPUS_MAX_KBPS,
    OPUS_MIN_KBPS,
    UNKNOWN_DURATION_PERCENT,
)
from ..config.media import AUDIO_EXTENSIONS, VIDEO_CONTAINER_EXTENSIONS
from ..domain.exceptions import InvalidPayloadException, UnsupportedFormatException
from ..domain.media import MEDIA_AUDIO, MEDIA_IMAGE, MEDIA_VIDEO, classify_media
from ..domain.models import ConvertPayload, EventMeta, Stage
from ..utils.format_utils import extension_of, path_to_file_url
from ..utils.progress_parser import encoder_percent
from .compress_pipeline import mjpeg_qscale
from .pipeline_base import JobPipeline

ROUTE_IMAGE = "image"
ROUTE_AUDIO = "audio"
ROUTE_VIDEO = "video"
ROUTE_EXTRACT_AUDIO = "extract_audio"

# Image targets the encoder can write.
IMAGE_TARGETS = ("webp", "jpg", "jpeg", "png", "bmp", "tiff", "tif")


def select_route(input_kind: str, target_ext: str) -> str:
    """
    Picks the conversion route for an input media kind and a target extension.

    Raises:
        UnsupportedFormatException: If no route handles the combination.
    """
    if input_kind == MEDIA_IMAGE and target_ext in IMAGE_TARGETS:
        return ROUTE_IMAGE
    if input_kind == MEDIA_AUDIO and target_ext in AUDIO_EXTENSIONS:
        return ROUTE_AUDIO
    if input_kind in (MEDIA_VIDEO, MEDIA_AUDIO) and target_ext in VIDEO_CONTAINER_EXTENSIONS:
        return ROUTE_VIDEO
    if input_kind == MEDIA_VIDEO and target_ext in AUDIO_EXTENSIONS:
        return ROUTE_EXTRACT_AUDIO
    raise UnsupportedFormatException(f"Cannot convert {input_kind} input to '{target_ext}'.")


def clamp_quality(quality: int) -> int:
    return max(1, min(100, int(quality)))


def image_args(target_ext: str, payload: ConvertPayload) -> List[str]:
    """webp takes the quality directly; mjpeg's scale is inverted; the rest are lossless."""
    quality = clamp_quality(payload.image_quality)
    if target_ext == "webp":
        return ["-c:v", "libwebp", "-q:v", str(quality)]
    if target_ext in ("jpg", "jpeg"):
        return ["-c:v", "mjpeg", "-q:v", str(mjpeg_qscale(quality))]
    return []


def audio_args(target_ext: str, payload: ConvertPayload) -> List[str]:
    kbps = payload.audio_kbps
    codecs: Dict[str, List[str]] = {
        "mp3": ["-c:a", "libmp3lame", "-b:a", f"{kbps}k"],
        "aac": ["-c:a", "aac", "-b:a", f"{kbps}k"],
        "m4a": ["-c:a", "aac", "-b:a", f"{kbps}k"],
        "ogg": ["-c:a", "libvorbis", "-q:a", "5"],
        "opus": ["-c:a", "libopus", "-b:a", f"{max(OPUS_MIN_KBPS, min(OPUS_MAX_KBPS, kbps))}k"],
        "flac": ["-c:a", "flac"],
        "wav": ["-c:a", "pcm_s16le"],
    }
    return ["-vn", *codecs.get(target_ext, ["-c:a", "aac", "-b:a", f"{kbps}k"])]


def video_args(target_ext: str, payload: ConvertPayload) -> List[str]:
    if target_ext == "webm":
        return [
            "-c:v", "libvpx-vp9", "-b:v", "0", "-crf", str(payload.video_crf),
            "-c:a", "libopus", "-b:a", f"{payload.audio_kbps}k",
        ]
    if target_ext == "gif":
        return ["-vf", GIF_FILTER, "-loop", "0"]
    return [
        "-c:v", "libx264", "-crf", str(payload.video_crf), "-preset", "medium",
        "-c:a", "aac", "-b:a", f"{payload.audio_kbps}k",
    ]


ROUTE_ARGS: Dict[str, Callable[[str, ConvertPayload], List[str]]] = {
    ROUTE_IMAGE: image_args,
    ROUTE_AUDIO: audio_args,
    ROUTE_VIDEO: video_args,
    ROUTE_EXTRACT_AUDIO: audio_args,
}


def default_output_path(input_path: Path, target_ext: str, out_dir: Optional[Path] = None) -> Path:
    """`name.<target>`, or `name (converted).<target>` when that is the input itself."""
    directory = out_dir or input_path.parent
    candidate = directory / f"{input_path.stem}.{target_ext}"
    if candidate.resolve() == input_path.resolve():
        candidate = directory / f"{input_path.stem}{COLLISION_SUFFIX}.{target_ext}"
    return candidate


class ConvertPipeline(JobPipeline):
    """Converts one local file into the format named by `target_ext`."""

    payload: ConvertPayload

    def run(self) -> Path:
        self.input_path = Path(self.payload.input_path).expanduser().resolve()
        if not self.input_path.is_file():
            raise InvalidPayloadException(f"Input file not found: {self.input_path}")
        target_ext = self.payload.target_ext.lower().lstrip(".").strip()
        if not target_ext:
            raise InvalidPayloadException("Convert payload has an empty target_ext.")

        input_kind = classify_media(self.input_path)
        route = select_route(input_kind, target_ext)

        out_dir = Path(self.payload.out_dir).expanduser().resolve() if self.payload.out_dir else None
        output = self.resolve_output_path(
            default_output_path(self.input_path, target_ext, out_dir),
            title=self.input_path.stem,
            ext=target_ext,
        )
        self.emit(
            Stage.PREPARING,
            meta=EventMeta(
                title=output.name,
                is_image=input_kind == MEDIA_IMAGE,
                is_audio=input_kind == MEDIA_AUDIO,
                is_video=input_kind == MEDIA_VIDEO,
                date=datetime.now().isoformat(timespec="seconds"),
                thumbnail=path_to_file_url(self.input_path) if input_kind == MEDIA_IMAGE else None,
            ),
        )

        duration = None
        if route != ROUTE_IMAGE:
            self.emit(Stage.PROBE, 0)
            probe = self.probe_media(self.input_path)
            duration = probe.duration if probe else None
            if probe is not None:
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
            if input_kind == MEDIA_VIDEO and route == ROUTE_VIDEO:
                thumbnail = self.extract_thumbnail(self.input_path, duration)
                if thumbnail:
                    self.emit(Stage.PROBE, 100, meta=EventMeta(thumbnail=thumbnail))

        self.encode(route, target_ext, output, duration)
        if route == ROUTE_IMAGE:
            self.meta = self.meta.merged(EventMeta(thumbnail=path_to_file_url(output)))
        return output

    def encode(self, route: str, target_ext: str, output: Path, duration: Optional[float]):
        cmd_list = [
            self.binaries.encoder, "-hide_banner", "-nostdin", "-y",
            "-i", str(self.input_path),
            *ROUTE_ARGS[route](target_ext, self.payload),
            str(output),
        ]

        if duration:
            self.emit(Stage.ENCODING, 0)
        else:
            # No authoritative signal without a duration.
            self.emit(Stage.ENCODING, UNKNOWN_DURATION_PERCENT if route != ROUTE_IMAGE else 0)

        def on_line(line: str, stream_name: str):
            percent = encoder_percent(line, duration)
            if percent is not None:
                self.emit(Stage.ENCODING, percent)

        self.run_process(cmd_list, on_line=on_line, label=f"ffmpeg {route} -> {extension_of(output)}")
