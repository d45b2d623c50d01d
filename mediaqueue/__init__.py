"""
mediaqueue: concurrent download, compress and convert queues driving yt-dlp,
ffmpeg and ffprobe as supervised subprocesses.
"""

__version__ = "0.1.0"
