"""
Configuration Package for the media job queue.

This package centralizes all the static configuration settings for the application.
By separating configuration from the application logic, it becomes easier to manage
and modify parameters without changing the core code.

This package includes settings for:
- Common settings like logging format, tool locations and concurrency ceilings,
  loaded partly from an optional `config.user.yaml`.
- Extension tables used to classify media files.
- Per-queue parameters for downloading, compressing and converting.
"""
