"""Tests for argument parsing and the command-line entry point."""

from pathlib import Path

import pytest

import main as entry_point
from mediaqueue.cli import build_payload, get_args
from mediaqueue.domain.models import CompressPayload, ConvertPayload, DownloadPayload


class TestBuildPayload:
    def test_download(self):
        payload = build_payload(get_args(["download", "https://example.com/v", "--type", "audio", "--quality", "720p"]))
        assert payload == DownloadPayload(url="https://example.com/v", media_type="audio", quality="720p")

    def test_compress_percent(self):
        payload = build_payload(get_args(["compress", "clip.mp4", "--target-percent", "40", "--out-dir", "/out"]))
        assert isinstance(payload, CompressPayload)
        assert payload.mode == "percent"
        assert payload.target_percent == 40
        assert payload.out_dir == Path("/out")

    def test_compress_size(self):
        payload = build_payload(get_args(["compress", "clip.mp4", "--target-mb", "8"]))
        assert payload.mode == "size"
        assert payload.target_mb == 8

    def test_compress_needs_exactly_one_target(self):
        with pytest.raises(SystemExit):
            get_args(["compress", "clip.mp4"])
        with pytest.raises(SystemExit):
            get_args(["compress", "clip.mp4", "--target-mb", "8", "--target-percent", "40"])

    def test_convert(self):
        payload = build_payload(get_args(["convert", "song.wav", "--to", "mp3", "--audio-kbps", "256"]))
        assert payload == ConvertPayload(input_path=Path("song.wav"), target_ext="mp3", audio_kbps=256)


class TestMain:
    def test_convert_job_exit_code(self, fake_tools, media_dir, monkeypatch):
        monkeypatch.setattr(entry_point, "BinaryResolver", lambda: fake_tools.resolver())
        monkeypatch.setattr(entry_point, "ERROR_LOG_DIR", None)
        source = media_dir / "song.wav"
        source.write_bytes(b"\0" * 1024)

        assert entry_point.main(["convert", str(source), "--to", "mp3", "--verify-tools"]) == entry_point.EXIT_OK
        assert (media_dir / "song.mp3").is_file()

    def test_failed_job_exit_code(self, fake_tools, media_dir, monkeypatch):
        monkeypatch.setattr(entry_point, "BinaryResolver", lambda: fake_tools.resolver())
        monkeypatch.setattr(entry_point, "ERROR_LOG_DIR", None)
        source = media_dir / "photo.jpg"
        source.write_bytes(b"\0" * 1024)

        assert entry_point.main(["convert", str(source), "--to", "mp3"]) == entry_point.EXIT_ERROR
