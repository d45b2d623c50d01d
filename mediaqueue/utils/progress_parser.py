"""
Turns raw tool output into progress fragments.

Everything here is stateless apart from `LineBuffer`, which only reassembles
lines from arbitrary chunks. The parsers are best-effort telemetry: a line that
matches nothing is dropped, and no line is ever needed for a job to finish.

Two kinds of input are handled:

- The fetcher is launched with our own progress template, so its progress lines
  start with `PROGRESS_TAG` and are split on "|". These take precedence.
- Everything else is matched with heuristic regexes (`[download] 42.0% of ...`,
  `time=00:01:02.50`). Those patterns are lossy and order-sensitive: the first
  matching pattern wins, and a tool changing its wording silently turns the
  heuristic off.
"""

import codecs
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..config.download import PROGRESS_TAG
from ..domain.models import EventMeta, Stage
from .format_utils import bytes_to_mb, to_mb

ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")

_SIZE_UNITS = r"(KiB|MiB|GiB|TiB|KB|MB|GB|TB)"
DOWNLOAD_PERCENT_RE = re.compile(r"\[download\][^\n]*?(\d+(?:\.\d+)?)%", re.IGNORECASE)
DOWNLOAD_TOTAL_RE = re.compile(rf"\bof\s+~?\s*([\d.]+)\s*{_SIZE_UNITS}\b", re.IGNORECASE)
DOWNLOAD_PAIR_RE = re.compile(
    rf"([\d.]+)\s*{_SIZE_UNITS}\s*/\s*([\d.]+)\s*{_SIZE_UNITS}", re.IGNORECASE
)
DOWNLOAD_SPEED_RE = re.compile(r"([0-9.]+\s*(?:KiB|MiB|GiB|KB|MB|GB|TB)/s)", re.IGNORECASE)
DOWNLOAD_ETA_RE = re.compile(r"\b(?:ETA\s+)?(\d{1,2}:\d{2}(?::\d{2})?)\b", re.IGNORECASE)
MERGING_RE = re.compile(
    r"\[(?:Merger|ffmpeg)\]\s+(?:Merging|Muxing)\b|\b(?:Merging formats|Merging output|Muxing)\b",
    re.IGNORECASE,
)
ALREADY_DOWNLOADED_RE = re.compile(r"\[download\]\s+(.*)\s+has already been downloaded", re.IGNORECASE)
ERROR_LINE_RE = re.compile(r"\bERROR\b")
ENCODER_TIME_RE = re.compile(r"time=\s*(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)")

MAX_RUNNING_PERCENT = 99.0


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


class LineBuffer:
    """
    Reassembles complete lines from a stream of byte chunks.

    Splits on "\\n", "\\r\\n" and bare "\\r" (progress bars redraw with "\\r").
    An incomplete tail is kept until more data arrives. A chunk ending in "\\r"
    keeps that "\\r" back too, since the next chunk may start with the "\\n" of
    the same "\\r\\n". Multi-byte UTF-8 characters split across chunks are
    decoded correctly; invalid bytes are replaced. ANSI escape sequences are
    removed from every emitted line.

    Args:
        on_line: Called once per complete line, without the terminator.
    """

    def __init__(self, on_line: Callable[[str], None]):
        self.on_line = on_line
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes):
        self._pending += self._decoder.decode(chunk)
        self._emit_complete()

    def flush(self):
        """Emits whatever is left once the stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        self._emit_complete()
        tail = self._pending.rstrip("\r")
        self._pending = ""
        if tail:
            self.on_line(strip_ansi(tail))

    def _emit_complete(self):
        text = self._pending
        hold_cr = text.endswith("\r")
        if hold_cr:
            text = text[:-1]
        parts = _LINE_SPLIT_RE.split(text)
        self._pending = parts.pop() + ("\r" if hold_cr else "")
        for part in parts:
            self.on_line(strip_ansi(part))


@dataclass
class ProgressFragment:
    """
    What one line of output says about a job, if anything.

    Attributes:
        stage: The stage the line belongs to, when it implies one.
        percent: Progress within that stage.
        meta: Transfer details (downloaded/total MB, speed, ETA).
        error: The text of an error line reported by the tool.
        already_downloaded: The fetcher found a complete file from an earlier run.
    """

    stage: Optional[Stage] = None
    percent: Optional[float] = None
    meta: EventMeta = field(default_factory=EventMeta)
    error: Optional[str] = None
    already_downloaded: bool = False


def _parse_number(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    cleaned = text.replace("%", "").replace(",", ".").strip()
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return value if value == value and value not in (float("inf"), float("-inf")) else None


def _clean_field(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text if text and text not in ("N/A", "NA", "Unknown", "None") else None


def parse_structured_progress(line: str) -> Optional[ProgressFragment]:
    """
    Parses a line written by our fetcher progress template.

    Format: `<tag> percent|downloaded_bytes|total_bytes|speed|eta`.

    Returns:
        A `downloading` fragment, or None if the line does not carry the tag.
    """
    text = line.strip()
    if not text.startswith(PROGRESS_TAG):
        return None
    fields: List[Optional[str]] = list(text[len(PROGRESS_TAG):].split("|"))
    fields += [None] * (5 - len(fields))
    percent_str, downloaded_str, total_str, speed_str, eta_str = fields[:5]

    meta = EventMeta()
    downloaded = _parse_number(downloaded_str)
    total = _parse_number(total_str)
    if downloaded is not None:
        meta.downloaded_mb = bytes_to_mb(downloaded)
    if total is not None:
        meta.total_mb = bytes_to_mb(total)
    meta.speed = _clean_field(speed_str)
    meta.eta = _clean_field(eta_str)

    percent = _parse_number(percent_str)
    if percent is None and downloaded is not None and total:
        percent = downloaded / total * 100
    return ProgressFragment(stage=Stage.DOWNLOADING, percent=percent, meta=meta)


def parse_download_line(line: str) -> Optional[ProgressFragment]:
    """
    Interprets one line of fetcher output.

    The structured channel is tried first; after that the heuristics run in a
    fixed order: percent line, merge/mux line, already-downloaded line, error line.

    Returns:
        The fragment the line implies, or None if it says nothing useful.
    """
    text = line.strip()
    if not text:
        return None

    structured = parse_structured_progress(text)
    if structured is not None:
        return structured

    percent_match = DOWNLOAD_PERCENT_RE.search(text)
    if percent_match:
        meta = EventMeta()
        total_match = DOWNLOAD_TOTAL_RE.search(text)
        if total_match:
            meta.total_mb = to_mb(float(total_match.group(1)), total_match.group(2))
        else:
            pair_match = DOWNLOAD_PAIR_RE.search(text)
            if pair_match:
                meta.downloaded_mb = to_mb(float(pair_match.group(1)), pair_match.group(2))
                meta.total_mb = to_mb(float(pair_match.group(3)), pair_match.group(4))
        speed_match = DOWNLOAD_SPEED_RE.search(text)
        if speed_match:
            meta.speed = speed_match.group(1)
        eta_match = DOWNLOAD_ETA_RE.search(text)
        if eta_match:
            meta.eta = eta_match.group(1)
        return ProgressFragment(
            stage=Stage.DOWNLOADING, percent=float(percent_match.group(1)), meta=meta
        )

    if MERGING_RE.search(text):
        return ProgressFragment(stage=Stage.MERGING)

    if ALREADY_DOWNLOADED_RE.search(text):
        return ProgressFragment(already_downloaded=True)

    if ERROR_LINE_RE.search(text):
        return ProgressFragment(error=text)

    return None


def parse_encoder_time(line: str) -> Optional[float]:
    """
    Extracts the elapsed media time from an encoder status line.

    Returns:
        Seconds encoded so far, or None if the line has no `time=` field.
    """
    match = ENCODER_TIME_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def encoder_percent(line: str, duration: Optional[float]) -> Optional[float]:
    """
    Converts an encoder status line into a percentage of `duration`.

    The result is clamped to [0, 99]; 100 is reserved for a confirmed output.
    """
    if not duration or duration <= 0:
        return None
    elapsed = parse_encoder_time(line)
    if elapsed is None:
        return None
    return max(0.0, min(MAX_RUNNING_PERCENT, elapsed / duration * 100))
