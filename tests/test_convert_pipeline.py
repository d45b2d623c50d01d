"""Tests for route selection and convert jobs."""

import time
from pathlib import Path

import pytest

from mediaqueue.config.convert import UNKNOWN_DURATION_PERCENT
from mediaqueue.domain.exceptions import UnsupportedFormatException
from mediaqueue.domain.media import MEDIA_AUDIO, MEDIA_IMAGE, MEDIA_VIDEO
from mediaqueue.domain.models import ConvertPayload, Stage
from mediaqueue.services.convert_pipeline import (
    ROUTE_AUDIO,
    ROUTE_EXTRACT_AUDIO,
    ROUTE_IMAGE,
    ROUTE_VIDEO,
    audio_args,
    default_output_path,
    image_args,
    select_route,
    video_args,
)


class TestSelectRoute:
    @pytest.mark.parametrize(
        "input_kind, target_ext, route",
        [
            (MEDIA_IMAGE, "webp", ROUTE_IMAGE),
            (MEDIA_IMAGE, "png", ROUTE_IMAGE),
            (MEDIA_AUDIO, "mp3", ROUTE_AUDIO),
            (MEDIA_AUDIO, "mp4", ROUTE_VIDEO),
            (MEDIA_VIDEO, "mkv", ROUTE_VIDEO),
            (MEDIA_VIDEO, "gif", ROUTE_VIDEO),
            (MEDIA_VIDEO, "opus", ROUTE_EXTRACT_AUDIO),
        ],
    )
    def test_supported(self, input_kind, target_ext, route):
        assert select_route(input_kind, target_ext) == route

    @pytest.mark.parametrize(
        "input_kind, target_ext",
        [(MEDIA_IMAGE, "mp3"), (MEDIA_AUDIO, "png"), (MEDIA_VIDEO, "webp"), (MEDIA_VIDEO, "xyz")],
    )
    def test_unsupported(self, input_kind, target_ext):
        with pytest.raises(UnsupportedFormatException):
            select_route(input_kind, target_ext)


class TestRouteArgs:
    def payload(self, **kwargs):
        return ConvertPayload(input_path=Path("/in/x"), target_ext="x", **kwargs)

    def test_opus_bitrate_is_clamped(self):
        assert "256k" in audio_args("opus", self.payload(audio_kbps=320))
        assert "64k" in audio_args("opus", self.payload(audio_kbps=32))

    def test_audio_drops_video(self):
        assert audio_args("mp3", self.payload())[0] == "-vn"

    def test_jpeg_quality_on_inverted_scale(self):
        assert image_args("jpg", self.payload(image_quality=100)) == ["-c:v", "mjpeg", "-q:v", "2"]

    def test_lossless_image_targets(self):
        assert image_args("png", self.payload()) == []

    def test_webm_uses_vp9(self):
        args = video_args("webm", self.payload(video_crf=30))
        assert args[args.index("-c:v") + 1] == "libvpx-vp9"
        assert args[args.index("-crf") + 1] == "30"


class TestDefaultOutputPath:
    def test_plain(self, tmp_path):
        assert default_output_path(tmp_path / "song.wav", "mp3") == tmp_path / "song.mp3"

    def test_same_extension_gets_suffix(self, tmp_path):
        assert default_output_path(tmp_path / "song.mp3", "mp3") == tmp_path / "song (converted).mp3"

    def test_out_dir(self, tmp_path):
        assert default_output_path(tmp_path / "a.png", "webp", tmp_path / "out") == tmp_path / "out" / "a.webp"


def convert(queues, recorder, payload):
    job_id = queues.submit("convert", payload)
    assert queues.wait_idle(30)
    return job_id, recorder.terminal(job_id)


class TestConvert:
    def test_video_to_container(self, queues, recorder, fake_tools, media_dir):
        source = media_dir / "clip.mkv"
        source.write_bytes(b"\0" * 1024)

        job_id, terminal = convert(queues, recorder, {"inputPath": str(source), "targetExt": "MP4"})

        assert [e.stage for e in terminal] == [Stage.DONE]
        assert terminal[0].filepath == media_dir / "clip.mp4"
        assert terminal[0].metadata.thumbnail.startswith("file://")
        assert recorder.stages(job_id) == [Stage.PREPARING, Stage.PROBE, Stage.ENCODING, Stage.DONE]
        encode = [call for call in fake_tools.calls("ffmpeg") if call[-1] == str(media_dir / "clip.mp4")][0]
        assert encode[encode.index("-c:v") + 1] == "libx264"

    def test_image_skips_probe(self, queues, recorder, fake_tools, media_dir):
        source = media_dir / "photo.png"
        source.write_bytes(b"\0" * 1024)

        job_id, terminal = convert(queues, recorder, {"input_path": str(source), "target_ext": "webp"})

        assert [e.stage for e in terminal] == [Stage.DONE]
        assert Stage.PROBE not in recorder.stages(job_id)
        assert fake_tools.calls("ffprobe") == []
        assert terminal[0].metadata.is_image

    def test_same_format_does_not_overwrite_input(self, queues, recorder, fake_tools, media_dir):
        source = media_dir / "song.mp3"
        source.write_bytes(b"original")

        job_id, terminal = convert(queues, recorder, {"input_path": str(source), "target_ext": "mp3"})

        assert terminal[0].filepath == media_dir / "song (converted).mp3"
        assert source.read_bytes() == b"original"

    def test_unknown_duration_reports_fixed_progress(self, queues, recorder, fake_tools, media_dir, monkeypatch):
        monkeypatch.setenv("FAKE_FFPROBE_EXIT", "1")
        source = media_dir / "voice.wav"
        source.write_bytes(b"\0" * 1024)

        job_id, terminal = convert(queues, recorder, {"input_path": str(source), "target_ext": "flac"})

        assert [e.stage for e in terminal] == [Stage.DONE]
        encoding = [e.percent for e in recorder.for_job(job_id) if e.stage == Stage.ENCODING]
        assert encoding == [UNKNOWN_DURATION_PERCENT]

    def test_unsupported_combination_spawns_nothing(self, queues, recorder, fake_tools, media_dir):
        source = media_dir / "photo.jpg"
        source.write_bytes(b"\0" * 1024)

        job_id, terminal = convert(queues, recorder, {"input_path": str(source), "target_ext": "mp3"})

        assert [e.stage for e in terminal] == [Stage.ERROR]
        assert "Cannot convert image" in terminal[0].message
        assert fake_tools.calls() == []

    def test_encoder_failure_removes_partial_output_but_not_input(
        self, queues, recorder, fake_tools, media_dir, monkeypatch
    ):
        monkeypatch.setenv("FAKE_FFMPEG_EXIT", "1")
        source = media_dir / "song.wav"
        source.write_bytes(b"\0" * 1024)
        (media_dir / "song.mp3.part").write_bytes(b"junk")

        job_id, terminal = convert(queues, recorder, {"input_path": str(source), "target_ext": "mp3"})

        assert [e.stage for e in terminal] == [Stage.ERROR]
        assert "Error while opening encoder" in terminal[0].message
        assert sorted(p.name for p in media_dir.iterdir()) == ["song.wav"]

    def test_cancel_kills_a_running_prober(self, queues, recorder, fake_tools, media_dir, monkeypatch):
        monkeypatch.setenv("FAKE_FFPROBE_SLEEP", "30")
        source = media_dir / "clip.mkv"
        source.write_bytes(b"\0" * 1024)

        job_id = queues.submit("convert", {"input_path": str(source), "target_ext": "mp4"})
        job = queues.owner(job_id).job(job_id)
        deadline = time.monotonic() + 10
        while not job.tracked_processes and time.monotonic() < deadline:
            time.sleep(0.01)

        started = time.monotonic()
        assert queues.cancel(job_id) is True
        assert queues.wait_idle(10)
        assert time.monotonic() - started < 10
        assert [e.stage for e in recorder.terminal(job_id)] == [Stage.CANCELED]
        assert fake_tools.calls("ffmpeg") == []
        assert sorted(p.name for p in media_dir.iterdir()) == ["clip.mkv"]
