"""
This package contains the core domain models of the media job queue.

The domain layer describes jobs, their payloads and the events they produce,
independent of how the queues schedule them or which tools do the work.

Modules:
    exceptions.py: Custom exception types; each maps to a terminal outcome of a job.
    models.py: Job kinds, states and stages, the per-kind payload dataclasses,
               progress events and the `Job` class with its cancellation and
               terminal-claim bookkeeping.
    media.py: `MediaProbe` and `ProbeResult`, which wrap `ffprobe` through
              ffmpeg-python, `RemoteMedia` for fetcher metadata, and media
              kind classification.
"""
