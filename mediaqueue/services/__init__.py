"""
Services Package for the media job queue.

This package contains the "service layer": the classes that carry one job from
its payload to a finished file, and the collaborators they report to.

- **Pipelines (`DownloadPipeline`, `CompressPipeline`, `ConvertPipeline`):**
  Each one hardcodes the stage order of its job kind on top of the shared
  `JobPipeline` skeleton, which owns the cancellation checkpoints, process
  tracking, partial-output cleanup and the error boundary.

- **Progress Bus (`ProgressBus`):**
  The observer channel every pipeline publishes its events to.

- **Logging Service (`EventLogger`, `ErrorLog`, `SuccessLog`):**
  A bus subscriber that logs events to the console and, optionally, writes
  errors as plain text and finished jobs as YAML.
"""
