"""
Command-Line Interface (CLI) setup for the media job queue.

This module uses Python's `argparse` to define one subcommand per job kind and
turns the parsed arguments into the matching payload dataclass.
"""
import argparse
from pathlib import Path
from typing import List, Optional

from .config.compress import DEFAULT_AUDIO_BITRATE_CEILING, DEFAULT_IMAGE_FORMAT, IMAGE_FORMATS
from .config.convert import DEFAULT_AUDIO_KBPS, DEFAULT_IMAGE_QUALITY, DEFAULT_VIDEO_CRF
from .config.download import QUALITY_TIERS
from .domain.models import CompressPayload, ConvertPayload, DownloadPayload, JobKind, Payload


def _add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--out-dir", type=str, default=None,
        help="Directory for the output file. Defaults to the input's directory (downloads: the download dir).",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set the logging level.",
    )
    parser.add_argument(
        "--verify-tools", action="store_true",
        help="Run yt-dlp, ffmpeg and ffprobe with their version flag before starting.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Download, compress and convert media files.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    download = subparsers.add_parser("download", help="Download media from a URL.")
    download.add_argument("url", help="The page or media URL.")
    download.add_argument("--type", dest="media_type", choices=["video", "audio"], default="video")
    download.add_argument("--quality", choices=QUALITY_TIERS, default="best")
    _add_common_arguments(download)

    compress = subparsers.add_parser("compress", help="Compress a file to a target size.")
    compress.add_argument("input_path", help="The file to compress.")
    target = compress.add_mutually_exclusive_group(required=True)
    target.add_argument("--target-mb", type=float, help="Target size in megabytes.")
    target.add_argument("--target-percent", type=float, help="Target size as a percentage of the input.")
    compress.add_argument("--image-format", choices=IMAGE_FORMATS, default=DEFAULT_IMAGE_FORMAT)
    compress.add_argument(
        "--audio-bitrate", type=int, default=DEFAULT_AUDIO_BITRATE_CEILING,
        help="Highest audio bitrate (kbps) used when compressing video.",
    )
    _add_common_arguments(compress)

    convert = subparsers.add_parser("convert", help="Convert a file to another format.")
    convert.add_argument("input_path", help="The file to convert.")
    convert.add_argument("--to", dest="target_ext", required=True, help="Target extension, e.g. mp4, mp3, webp.")
    convert.add_argument("--crf", type=int, default=DEFAULT_VIDEO_CRF, help="Video CRF for mp4/mkv/mov/webm.")
    convert.add_argument("--audio-kbps", type=int, default=DEFAULT_AUDIO_KBPS)
    convert.add_argument("--image-quality", type=int, default=DEFAULT_IMAGE_QUALITY, help="0-100.")
    _add_common_arguments(convert)

    return parser


def get_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parses command-line arguments.

    Args:
        argv: Arguments to parse instead of `sys.argv[1:]`.

    Returns:
        argparse.Namespace: The parsed arguments; `command` names the job kind.
    """
    return build_parser().parse_args(argv)


def build_payload(args: argparse.Namespace) -> Payload:
    """Turns parsed arguments into the payload for `args.command`."""
    out_dir = Path(args.out_dir) if args.out_dir else None
    kind = JobKind(args.command)
    if kind == JobKind.DOWNLOAD:
        return DownloadPayload(url=args.url, media_type=args.media_type, quality=args.quality, out_dir=out_dir)
    if kind == JobKind.COMPRESS:
        return CompressPayload(
            input_path=Path(args.input_path),
            mode="percent" if args.target_percent is not None else "size",
            target_mb=args.target_mb,
            target_percent=args.target_percent,
            out_dir=out_dir,
            image_format=args.image_format,
            audio_bitrate_k=args.audio_bitrate,
        )
    return ConvertPayload(
        input_path=Path(args.input_path),
        target_ext=args.target_ext,
        out_dir=out_dir,
        video_crf=args.crf,
        audio_kbps=args.audio_kbps,
        image_quality=args.image_quality,
    )
