"""
This package contains the job queues of the media job queue application.

A TaskQueue owns the jobs of one kind: it admits them in FIFO order up to its
concurrency ceiling, runs their pipelines on its own worker threads, and handles
cancellation. The dispatcher builds one queue per kind (download, compress,
convert) and routes submit/cancel/remove calls to them.
"""
