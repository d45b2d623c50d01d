"""
Utilities Package for the media job queue.

This package contains helper modules that support the pipelines without being
specific to any one job kind.

Modules:
    - process_runner.py: Spawns one external tool, streams its output line by
      line and kills its whole process tree on request.
    - progress_parser.py: Reassembles lines from raw chunks and turns tool
      output into normalized progress fragments.
    - binaries.py: Locates the fetcher, encoder and prober executables.
    - format_utils.py: Size conversions, file naming and human-readable sizes.
"""
