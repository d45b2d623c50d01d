"""Tests for the progress bus and the file logs fed by EventLogger."""

from pathlib import Path

import yaml

from mediaqueue.domain.models import EventMeta, JobKind, ProgressEvent, Stage
from mediaqueue.services.event_bus import ProgressBus
from mediaqueue.services.logging_service import ErrorLog, EventLogger, SuccessLog


def event(stage, **kwargs):
    return ProgressEvent(job_id="job-1", kind=JobKind.COMPRESS, stage=stage, **kwargs)


class TestProgressBus:
    def test_failing_subscriber_does_not_block_others(self):
        bus = ProgressBus()
        received = []

        def broken(_event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(event(Stage.PREPARING))
        assert [e.stage for e in received] == [Stage.PREPARING]

    def test_unsubscribe(self):
        bus = ProgressBus()
        received = []
        unsubscribe = bus.subscribe(received.append)
        assert len(bus) == 1
        unsubscribe()
        unsubscribe()
        bus.publish(event(Stage.PREPARING))
        assert received == []
        assert len(bus) == 0


class TestErrorLog:
    def test_appends_reports_with_separator(self, tmp_path):
        log = ErrorLog(tmp_path)
        log.write("first", "detail")
        log.write("second")
        content = log.log_file_path.read_text(encoding="utf-8")
        assert content == f"first\ndetail\n{'=' * 50}\nsecond\n{'=' * 50}\n"

    def test_file_path_uses_parent_directory(self, tmp_path):
        existing = tmp_path / "some.txt"
        existing.write_text("x")
        assert ErrorLog(existing).log_file_path == tmp_path / "error.txt"


class TestSuccessLog:
    def test_entries_are_indexed(self, tmp_path):
        log = SuccessLog(tmp_path)
        log.write({"job_id": "a"})
        log.write({"job_id": "b"})
        assert [(e["index"], e["job_id"]) for e in log.read_entries()] == [(1, "a"), (2, "b")]

    def test_corrupt_file_starts_over(self, tmp_path):
        log = SuccessLog(tmp_path)
        log.log_file_path.write_text("just a string", encoding="utf-8")
        log.write({"job_id": "a"})
        assert log.read_entries() == [{"index": 1, "job_id": "a"}]


class TestEventLogger:
    def test_done_and_error_reach_the_files(self, tmp_path):
        event_logger = EventLogger(tmp_path)
        event_logger(event(Stage.PASS1, percent=40.0))
        event_logger(event(
            Stage.DONE,
            percent=100.0,
            filepath=Path("/out/clip.mp4"),
            metadata=EventMeta(title="clip", size_mb=1.2),
        ))
        event_logger(ProgressEvent(job_id="job-2", kind=JobKind.CONVERT, stage=Stage.ERROR, message="bad input"))

        entries = yaml.safe_load((tmp_path / "completed.yaml").read_text(encoding="utf-8"))
        assert len(entries) == 1
        assert entries[0]["job_id"] == "job-1"
        assert entries[0]["kind"] == "compress"
        assert entries[0]["output"] == str(Path("/out/clip.mp4"))
        assert entries[0]["title"] == "clip"
        errors = (tmp_path / "error.txt").read_text(encoding="utf-8")
        assert "convert job job-2" in errors
        assert "Error: bad input" in errors

    def test_console_only(self, tmp_path):
        event_logger = EventLogger(None)
        event_logger(event(Stage.CANCELED))
        assert event_logger.error_log is None
        assert list(tmp_path.iterdir()) == []
