"""
The download pipeline: fetch a URL with the fetcher (yt-dlp), optionally
re-encode the result for compatibility, and report the final file.

Stages: preparing -> downloading -> [merging] -> [recoding] -> done.
"""
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..config.common import DOWNLOAD_DIR, TEMP_SUFFIXES
from ..config.download import (
    AUDIO_OUTPUT_EXT,
    BEST_SELECTOR,
    CAPPED_HEIGHTS,
    COMPATIBLE_VIDEO_CODEC_PREFIXES,
    FETCH_CONCURRENT_FRAGMENTS,
    HIGH_RES_SELECTORS,
    PROGRESS_TEMPLATE,
    QUALITY_TIERS,
    RECODE_MAX_HEIGHT,
    RECODE_VIDEO_ARGS,
    VIDEO_OUTPUT_EXT,
)
from ..domain.exceptions import InvalidPayloadException, OutputMissingException, ProcessException
from ..domain.media import RemoteMedia
from ..domain.models import DownloadPayload, EventMeta, Stage
from ..utils.format_utils import parse_height, sanitize_filename
from ..utils.process_runner import STDOUT
from ..utils.progress_parser import encoder_percent, parse_download_line
from .pipeline_base import JobPipeline

MEDIA_TYPES = ("video", "audio")


def h264_capped_selector(height: int) -> str:
    """H.264 in MP4 up to `height`, then any non-AV1 MP4, then any MP4."""
    return (
        f"bv*[height<={height}][vcodec^=avc1][ext=mp4]+ba[acodec^=mp4a]/"
        f"bv*[height<={height}][vcodec!^=av01][ext=mp4]+ba/"
        f"b[height<={height}][ext=mp4]"
    )


def format_selector(quality: str, source_height: Optional[int] = None) -> str:
    """
    Returns the fetcher format selector for a quality tier.

    "best" on a source that is at most 1080p tall uses the H.264 branch, so
    ordinary videos arrive in the most compatible codec.
    """
    if quality in HIGH_RES_SELECTORS:
        return HIGH_RES_SELECTORS[quality]
    if quality in CAPPED_HEIGHTS:
        return h264_capped_selector(CAPPED_HEIGHTS[quality])
    if source_height and source_height <= RECODE_MAX_HEIGHT:
        return h264_capped_selector(RECODE_MAX_HEIGHT)
    return BEST_SELECTOR


def needs_recode(height: Optional[int], vcodec: Optional[str]) -> bool:
    """True for a video of at most 1080p whose codec is not H.264."""
    if not height or height > RECODE_MAX_HEIGHT:
        return False
    codec = (vcodec or "").lower()
    return not codec.startswith(COMPATIBLE_VIDEO_CODEC_PREFIXES)


class DownloadPipeline(JobPipeline):
    """
    Downloads one URL.

    The fetcher is started with a progress template of our own, so progress is
    read from a structured channel; the regex heuristics of the progress parser
    only serve as a fallback.
    """

    payload: DownloadPayload

    def __init__(self, job, context):
        super().__init__(job, context)
        self.remote: Optional[RemoteMedia] = None
        self.fetcher_error: Optional[str] = None

    def validate(self):
        if self.payload.media_type not in MEDIA_TYPES:
            raise InvalidPayloadException(f"Unknown media type '{self.payload.media_type}'. Expected one of {MEDIA_TYPES}.")
        if self.payload.quality not in QUALITY_TIERS:
            raise InvalidPayloadException(f"Unknown quality '{self.payload.quality}'. Expected one of {QUALITY_TIERS}.")

    @property
    def is_audio(self) -> bool:
        return self.payload.media_type == "audio"

    def run(self) -> Path:
        self.validate()
        out_dir = Path(self.payload.out_dir or self.context.download_dir or DOWNLOAD_DIR).expanduser().resolve()

        self.remote = self.fetch_metadata()
        remote = self.remote or RemoteMedia()
        self.emit(
            Stage.PREPARING,
            meta=EventMeta(
                title=remote.title,
                ext=remote.ext,
                vcodec=remote.vcodec,
                acodec=remote.acodec,
                resolution=remote.resolution,
                fps=remote.fps,
                duration_sec=remote.duration,
                thumbnail=remote.thumbnail,
                date=datetime.now().isoformat(timespec="seconds"),
                is_audio=self.is_audio,
                is_video=not self.is_audio,
                is_image=False,
            ),
        )

        final_ext = AUDIO_OUTPUT_EXT if self.is_audio else VIDEO_OUTPUT_EXT
        planned = self.resolve_output_path(
            out_dir / f"{self.default_stem(remote)}.{final_ext}",
            title=remote.title,
            resolution=remote.resolution,
            media_id=remote.media_id,
            ext=final_ext,
        )

        self.emit(Stage.DOWNLOADING, 0)
        self.run_process(self.build_fetch_command(planned, remote), on_line=self.on_fetch_line, label="yt-dlp")
        output = self.locate_output(planned)

        if not self.is_audio:
            output = self.recode_if_needed(output, remote)
        return output

    @staticmethod
    def default_stem(remote: RemoteMedia) -> str:
        """`Title [resolution] (id)`, sanitised."""
        stem = sanitize_filename(remote.title or "video", fallback="video")
        if remote.resolution:
            stem += f" [{remote.resolution}]"
        if remote.media_id:
            stem += f" ({sanitize_filename(remote.media_id)})"
        return stem

    def fetch_metadata(self) -> Optional[RemoteMedia]:
        """
        Asks the fetcher for the media's metadata (`-j`).

        A failure here is not fatal: the download continues under a generic name.
        """
        stdout_lines: List[str] = []

        def collect(line: str, stream_name: str):
            if stream_name == STDOUT:
                stdout_lines.append(line)

        cmd_list = [self.binaries.fetcher, "-j", "--no-warnings", "--no-playlist", self.payload.url]
        try:
            self.run_process(cmd_list, on_line=collect, label="yt-dlp metadata")
        except ProcessException as e:
            logger.warning(f"Metadata lookup failed for {self.payload.url}: {e}")
            return None
        remote = RemoteMedia.from_json("\n".join(stdout_lines))
        if remote is None:
            logger.warning(f"Fetcher printed no metadata for {self.payload.url}")
        return remote

    def build_fetch_command(self, planned: Path, remote: RemoteMedia) -> List[str]:
        # The fetcher fills in the extension; "%" is its template escape.
        template = planned.parent / (planned.stem.replace("%", "%%") + ".%(ext)s")
        cmd_list = [
            self.binaries.fetcher,
            "-N", str(FETCH_CONCURRENT_FRAGMENTS),
            "--no-playlist",
            "--no-warnings",
            "--progress",
            "--newline",
            "--no-color",
            "--force-overwrites",
            "--no-continue",
            "--no-keep-fragments",
            "--progress-template", PROGRESS_TEMPLATE,
            "-o", str(template),
        ]
        encoder = self.binaries.encoder
        if os.path.isabs(encoder):
            cmd_list += ["--ffmpeg-location", encoder]
        if self.is_audio:
            cmd_list += ["-x", "--audio-format", AUDIO_OUTPUT_EXT]
        else:
            cmd_list += [
                "-f", format_selector(self.payload.quality, parse_height(remote.resolution) or remote.height),
                "--merge-output-format", VIDEO_OUTPUT_EXT,
                "--remux-video", VIDEO_OUTPUT_EXT,
            ]
        cmd_list.append(self.payload.url)
        return cmd_list

    def on_fetch_line(self, line: str, stream_name: str):
        if self.job.is_canceled:
            return
        fragment = parse_download_line(line)
        if fragment is None:
            return
        if fragment.error:
            self.fetcher_error = fragment.error
        elif fragment.already_downloaded:
            logger.info(f"Fetcher reports the file already exists: {line.strip()}")
        elif fragment.stage is not None:
            self.emit(fragment.stage, fragment.percent, meta=fragment.meta)

    def locate_output(self, planned: Path) -> Path:
        """
        Finds the fetched file. It is normally `planned`; if the site only had
        another container, it is the sibling with the same stem.
        """
        if planned.is_file():
            return planned
        candidates = [
            p for p in planned.parent.glob(f"{glob_escape(planned.stem)}.*")
            if p.is_file() and not p.name.endswith(TEMP_SUFFIXES) and ".temp." not in p.name
        ]
        if len(candidates) == 1:
            logger.info(f"Fetched file has a different extension: {candidates[0].name}")
            self.planned_output = candidates[0]
            return candidates[0]
        detail = f" ({self.fetcher_error})" if self.fetcher_error else ""
        raise OutputMissingException(f"Fetcher finished but {planned.name} was not written{detail}")

    def recode_if_needed(self, fetched: Path, remote: RemoteMedia) -> Path:
        """
        Re-encodes a fetched video of at most 1080p to H.264/AAC MP4 when it
        arrived in another codec, replacing the fetched file.
        """
        self.checkpoint()
        local = self.probe_media(fetched)
        height = local.height if local and local.height else parse_height(remote.resolution) or remote.height
        vcodec = local.vcodec if local and local.vcodec else remote.vcodec
        duration = local.duration if local and local.duration else remote.duration
        if local is not None and not local.has_video:
            return fetched
        if not needs_recode(height, vcodec):
            return fetched

        logger.info(f"Re-encoding {fetched.name} ({vcodec}, {height}p) to H.264.")
        self.emit(Stage.RECODING, 0)
        final = fetched.with_suffix(f".{VIDEO_OUTPUT_EXT}")
        temp_output = final.parent / f"{final.stem}.temp.{VIDEO_OUTPUT_EXT}"
        self.extra_outputs.append(temp_output)
        cmd_list = [
            self.binaries.encoder, "-hide_banner", "-nostdin", "-y",
            "-i", str(fetched),
            *RECODE_VIDEO_ARGS,
            str(temp_output),
        ]

        def on_line(line: str, stream_name: str):
            percent = encoder_percent(line, duration)
            if percent is not None:
                self.emit(Stage.RECODING, percent)

        self.run_process(cmd_list, on_line=on_line, label="ffmpeg recode")
        if not temp_output.is_file() or temp_output.stat().st_size == 0:
            raise OutputMissingException(f"Re-encode produced no output for {fetched.name}")
        os.replace(temp_output, final)
        if fetched != final and fetched.exists():
            fetched.unlink()
        self.planned_output = final
        self.emit(Stage.RECODING, 100, meta=EventMeta(vcodec="h264"))
        return final


def glob_escape(text: str) -> str:
    """Escapes the characters `Path.glob` treats as wildcards."""
    return "".join(f"[{ch}]" if ch in "*?[]" else ch for ch in text)
