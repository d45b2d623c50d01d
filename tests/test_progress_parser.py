"""Tests for line reassembly and progress parsing."""

import pytest

from mediaqueue.config.download import PROGRESS_TAG
from mediaqueue.domain.models import Stage
from mediaqueue.utils.progress_parser import (
    LineBuffer,
    encoder_percent,
    parse_download_line,
    parse_encoder_time,
    parse_structured_progress,
    strip_ansi,
)


@pytest.fixture
def lines():
    collected = []
    return collected


class TestLineBuffer:
    def test_splits_on_all_terminators(self, lines):
        buffer = LineBuffer(lines.append)
        buffer.feed(b"one\ntwo\r\nthree\rfour")
        buffer.flush()
        assert lines == ["one", "two", "three", "four"]

    def test_carriage_return_at_chunk_edge(self, lines):
        buffer = LineBuffer(lines.append)
        buffer.feed(b"10%\r20%\r")
        assert lines == ["10%"]
        buffer.feed(b"\n30%\n")
        assert lines == ["10%", "20%", "30%"]

    def test_partial_line_waits_for_more_data(self, lines):
        buffer = LineBuffer(lines.append)
        buffer.feed(b"hal")
        assert lines == []
        buffer.feed(b"f\n")
        assert lines == ["half"]

    def test_multibyte_character_split_across_chunks(self, lines):
        encoded = "café 音楽\n".encode("utf-8")
        buffer = LineBuffer(lines.append)
        for i in range(len(encoded)):
            buffer.feed(encoded[i:i + 1])
        assert lines == ["café 音楽"]

    def test_invalid_bytes_are_replaced(self, lines):
        buffer = LineBuffer(lines.append)
        buffer.feed(b"bad \xff byte\n")
        assert lines == ["bad � byte"]

    def test_ansi_sequences_removed(self, lines):
        buffer = LineBuffer(lines.append)
        buffer.feed(b"\x1b[0;32mok\x1b[0m\n")
        assert lines == ["ok"]

    def test_flush_without_tail_emits_nothing(self, lines):
        buffer = LineBuffer(lines.append)
        buffer.feed(b"done\n")
        buffer.flush()
        assert lines == ["done"]


class TestStructuredProgress:
    def test_full_line(self):
        fragment = parse_structured_progress(f"{PROGRESS_TAG}  42.0%|1048576|2097152|1.00MiB/s|00:05")
        assert fragment.stage == Stage.DOWNLOADING
        assert fragment.percent == pytest.approx(42.0)
        assert fragment.meta.downloaded_mb == pytest.approx(1.0)
        assert fragment.meta.total_mb == pytest.approx(2.0)
        assert fragment.meta.speed == "1.00MiB/s"
        assert fragment.meta.eta == "00:05"

    def test_percent_derived_from_bytes(self):
        fragment = parse_structured_progress(f"{PROGRESS_TAG} NA|524288|2097152|NA|NA")
        assert fragment.percent == pytest.approx(25.0)
        assert fragment.meta.speed is None
        assert fragment.meta.eta is None

    def test_short_line_is_padded(self):
        fragment = parse_structured_progress(f"{PROGRESS_TAG} 10%")
        assert fragment.percent == pytest.approx(10.0)
        assert fragment.meta.total_mb is None

    def test_untagged_line(self):
        assert parse_structured_progress("[download] 10%") is None


class TestDownloadHeuristics:
    """The regex fallback: lossy, and the first matching pattern wins."""

    def test_structured_takes_precedence(self):
        fragment = parse_download_line(f"{PROGRESS_TAG} 77.0%|0|0|NA|NA")
        assert fragment.percent == pytest.approx(77.0)

    def test_percent_with_total(self):
        fragment = parse_download_line("[download]  42.0% of 10.00MiB at 1.00MiB/s ETA 00:05")
        assert fragment.stage == Stage.DOWNLOADING
        assert fragment.percent == pytest.approx(42.0)
        assert fragment.meta.total_mb == pytest.approx(10.0)
        assert fragment.meta.speed == "1.00MiB/s"
        assert fragment.meta.eta == "00:05"

    def test_percent_with_downloaded_pair(self):
        fragment = parse_download_line("[download]  50.0% 5.00MiB / 10.00MiB")
        assert fragment.meta.downloaded_mb == pytest.approx(5.0)
        assert fragment.meta.total_mb == pytest.approx(10.0)

    def test_merging(self):
        fragment = parse_download_line('[Merger] Merging formats into "x.mp4"')
        assert fragment.stage == Stage.MERGING
        assert fragment.percent is None

    def test_already_downloaded(self):
        fragment = parse_download_line("[download] x.mp4 has already been downloaded")
        assert fragment.already_downloaded

    def test_error_line(self):
        fragment = parse_download_line("ERROR: [youtube] abc: Video unavailable")
        assert fragment.error.startswith("ERROR:")

    def test_percent_line_wins_over_error_word(self):
        fragment = parse_download_line("[download] 12.5% ERROR retrying fragment")
        assert fragment.stage == Stage.DOWNLOADING
        assert fragment.error is None

    @pytest.mark.parametrize("line", ["", "   ", "[info] Downloading webpage", "random chatter"])
    def test_unrecognised_lines(self, line):
        assert parse_download_line(line) is None


class TestEncoderTime:
    def test_parse_time(self):
        assert parse_encoder_time("frame=10 time=01:02:03.50 bitrate=1k") == pytest.approx(3723.5)

    def test_no_time(self):
        assert parse_encoder_time("Stream mapping:") is None

    def test_percent_of_duration(self):
        assert encoder_percent("time=00:00:05.00", 20) == pytest.approx(25.0)

    def test_percent_capped_below_done(self):
        assert encoder_percent("time=00:01:00.00", 30) == pytest.approx(99.0)

    def test_percent_needs_duration(self):
        assert encoder_percent("time=00:00:05.00", None) is None
        assert encoder_percent("time=00:00:05.00", 0) is None

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[1mbold\x1b[0m") == "bold"
