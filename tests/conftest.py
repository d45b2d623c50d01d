"""Pytest configuration and fixtures.

The external tools are replaced with small Python scripts written into the
test's temp directory, so the real spawn/read/kill code runs against them.
Their behaviour is steered through environment variables (FAKE_*), and every
invocation is appended to a JSON-lines log.
"""

import json
import os
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List

import pytest

from mediaqueue.domain.models import ProgressEvent, Stage
from mediaqueue.pipeline.dispatcher import MediaQueues
from mediaqueue.utils.binaries import ENCODER, FETCHER, PROBER, TOOL_EXECUTABLES, BinaryResolver

_LOG_CALL = """
import json, os, sys, time
args = sys.argv[1:]
log_path = os.environ.get("FAKE_TOOL_LOG")
if log_path:
    with open(log_path, "a", encoding="utf-8") as log_file:
        log_file.write(json.dumps([__TOOL__, *args]) + "\\n")
"""

FAKE_FFMPEG = _LOG_CALL.replace("__TOOL__", '"ffmpeg"') + """
if "-version" in args:
    print("ffmpeg version 6.0-fake")
    sys.exit(0)
exit_code = int(os.environ.get("FAKE_FFMPEG_EXIT", "0"))
if exit_code:
    sys.stderr.write("Error while opening encoder for output stream\\n")
    sys.exit(exit_code)
output = args[-1]
if output not in ("/dev/null", "NUL", "-"):
    with open(output, "wb") as out_file:
        out_file.write(b"\\0" * int(os.environ.get("FAKE_FFMPEG_BYTES", "4096")))
steps = int(os.environ.get("FAKE_FFMPEG_STEPS", "3"))
delay = float(os.environ.get("FAKE_FFMPEG_SLEEP", "0"))
for i in range(1, steps + 1):
    sys.stderr.write(f"frame={i * 30} fps=30 q=28.0 size=N/A time=00:00:{i:02d}.00 bitrate=N/A speed=1x\\n")
    sys.stderr.flush()
    time.sleep(delay)
"""

FAKE_FFPROBE = _LOG_CALL.replace("__TOOL__", '"ffprobe"') + """
if "-version" in args:
    print("ffprobe version 6.0-fake")
    sys.exit(0)
if os.environ.get("FAKE_FFPROBE_EXIT"):
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)
time.sleep(float(os.environ.get("FAKE_FFPROBE_SLEEP", "0")))
duration = os.environ.get("FAKE_FFPROBE_DURATION", "10.0")
vcodec = os.environ.get("FAKE_FFPROBE_VCODEC", "h264")
fmt = {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "size": "4096", "bit_rate": "800000"}
if duration:
    fmt["duration"] = duration
streams = []
if vcodec:
    streams.append({"codec_type": "video", "codec_name": vcodec, "width": 1280, "height": 720, "avg_frame_rate": "30/1"})
streams.append({"codec_type": "audio", "codec_name": "aac"})
print(json.dumps({"format": fmt, "streams": streams}))
"""

FAKE_YTDLP = _LOG_CALL.replace("__TOOL__", '"yt-dlp"') + """
if "--version" in args:
    print("2024.01.01-fake")
    sys.exit(0)
exit_code = int(os.environ.get("FAKE_YTDLP_EXIT", "0"))
if exit_code:
    sys.stderr.write("ERROR: [generic] Unsupported URL\\n")
    sys.exit(exit_code)
if "-j" in args:
    print(json.dumps({
        "id": "abc123",
        "title": "Test Clip",
        "ext": "mp4",
        "vcodec": os.environ.get("FAKE_YTDLP_VCODEC", "avc1.64001F"),
        "acodec": "mp4a.40.2",
        "resolution": "1280x720",
        "height": 720,
        "fps": 30,
        "duration": 10,
        "thumbnails": [{"url": "https://example.com/small.jpg", "width": 120, "height": 90}],
    }))
    sys.exit(0)
template = args[args.index("-o") + 1]
ext = args[args.index("--audio-format") + 1] if "-x" in args else "mp4"
output = template.replace("%(ext)s", ext).replace("%%", "%")
with open(output + ".part", "wb") as part_file:
    part_file.write(b"\\0" * 16)
steps = int(os.environ.get("FAKE_YTDLP_STEPS", "3"))
delay = float(os.environ.get("FAKE_YTDLP_SLEEP", "0"))
total = 2097152
for i in range(1, steps + 1):
    print(f"[MQPROGRESS] {i * 100 / steps:5.1f}%|{total * i // steps}|{total}|1.00MiB/s|00:0{steps - i}", flush=True)
    time.sleep(delay)
os.replace(output + ".part", output)
with open(output, "wb") as out_file:
    out_file.write(b"\\0" * int(os.environ.get("FAKE_YTDLP_BYTES", "4096")))
"""

FAKE_SCRIPTS = {
    FETCHER: FAKE_YTDLP,
    ENCODER: FAKE_FFMPEG,
    PROBER: FAKE_FFPROBE,
}


class FakeTools:
    """The fake executables of one test and the log of their invocations."""

    def __init__(self, paths: Dict[str, str], log_path: Path):
        self.paths = paths
        self.log_path = log_path

    def resolver(self) -> BinaryResolver:
        return BinaryResolver(bin_dir=None, overrides=self.paths)

    def calls(self, tool_name: str = None) -> List[List[str]]:
        """Recorded argv lists, the tool name first. Filtered by `tool_name` if given."""
        if not self.log_path.is_file():
            return []
        calls = [json.loads(line) for line in self.log_path.read_text(encoding="utf-8").splitlines() if line]
        if tool_name is not None:
            calls = [call for call in calls if call[0] == tool_name]
        return calls


class EventRecorder:
    """A progress subscriber that keeps every event and lets tests wait for one."""

    def __init__(self):
        self.events: List[ProgressEvent] = []
        self._cond = threading.Condition()

    def __call__(self, event: ProgressEvent):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def for_job(self, job_id: str) -> List[ProgressEvent]:
        with self._cond:
            return [e for e in self.events if e.job_id == job_id]

    def stages(self, job_id: str) -> List[Stage]:
        """Stages of a job with consecutive repeats collapsed."""
        collapsed: List[Stage] = []
        for event in self.for_job(job_id):
            if not collapsed or collapsed[-1] != event.stage:
                collapsed.append(event.stage)
        return collapsed

    def terminal(self, job_id: str) -> List[ProgressEvent]:
        return [e for e in self.for_job(job_id) if e.is_terminal]

    def wait_for(self, predicate: Callable[[ProgressEvent], bool], timeout: float = 10.0) -> ProgressEvent:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                for event in self.events:
                    if predicate(event):
                        return event
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError("Timed out waiting for a progress event")
                self._cond.wait(remaining)


@pytest.fixture(autouse=True)
def thumbnail_dir(tmp_path, monkeypatch):
    """Keeps thumbnails inside the test's temp directory."""
    target = tmp_path / "thumbnails"
    monkeypatch.setattr("mediaqueue.services.pipeline_base.THUMBNAIL_DIR", target)
    return target


@pytest.fixture
def fake_tools(tmp_path, monkeypatch) -> FakeTools:
    if os.name == "nt":
        pytest.skip("The fake tools are POSIX scripts.")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    paths = {}
    for tool, body in FAKE_SCRIPTS.items():
        script = bin_dir / TOOL_EXECUTABLES[tool]
        script.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        script.chmod(0o755)
        paths[tool] = str(script)
    log_path = tmp_path / "tools.log"
    monkeypatch.setenv("FAKE_TOOL_LOG", str(log_path))
    return FakeTools(paths, log_path)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def queues(fake_tools, recorder, tmp_path):
    media_queues = MediaQueues(binaries=fake_tools.resolver(), download_dir=tmp_path / "downloads")
    media_queues.subscribe(recorder)
    yield media_queues
    media_queues.shutdown(cancel_running=True, wait=True)


@pytest.fixture
def media_dir(tmp_path) -> Path:
    directory = tmp_path / "media"
    directory.mkdir()
    return directory
