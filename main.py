"""
Main entry point for the media job queue.

This script parses the command line, submits one download, compress or convert
job, logs its progress events until it finishes, and exits with a non-zero code
if the job failed. Ctrl-C cancels the running job.
"""

import sys
import threading
from typing import List, Optional

from loguru import logger

from mediaqueue.cli import build_payload, get_args
from mediaqueue.config.common import ERROR_LOG_DIR, LOGGER_FORMAT
from mediaqueue.domain.exceptions import MediaQueueException
from mediaqueue.domain.models import ProgressEvent, Stage
from mediaqueue.pipeline.dispatcher import MediaQueues
from mediaqueue.services.logging_service import EventLogger
from mediaqueue.utils.binaries import BinaryResolver

# Configure the logger for initial setup.
# The level is overridden once the arguments are parsed.
logger.remove()
logger.add(sys.stderr, level="INFO", format=LOGGER_FORMAT)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELED = 130


def main(argv: Optional[List[str]] = None) -> int:
    """
    Runs one job from the command line.

    1. Parses the arguments and reconfigures the logger.
    2. Optionally verifies that the external tools run.
    3. Submits the job and waits for its terminal event.

    Returns:
        The process exit code.
    """
    args = get_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level, format=LOGGER_FORMAT)
    logger.debug(f"Parsed arguments: {args}")

    binaries = BinaryResolver()
    if args.verify_tools and not binaries.verify_all():
        logger.error("Tool check failed. See the messages above.")
        return EXIT_ERROR

    queues = MediaQueues(binaries=binaries)
    queues.subscribe(EventLogger(ERROR_LOG_DIR))

    finished = threading.Event()
    outcome = {"stage": None}

    def on_event(event: ProgressEvent):
        if event.is_terminal:
            outcome["stage"] = event.stage
            finished.set()

    queues.subscribe(on_event)
    try:
        job_id = queues.submit(args.command, build_payload(args))
    except MediaQueueException as e:
        logger.error(f"Invalid job: {e}")
        queues.shutdown()
        return EXIT_ERROR
    logger.info(f"Submitted {args.command} job {job_id}")

    try:
        while not finished.wait(0.5):
            pass
    except KeyboardInterrupt:
        logger.warning("Interrupted, canceling the job...")
        queues.cancel(job_id)
        finished.wait()
    finally:
        queues.shutdown(cancel_running=True)

    if outcome["stage"] == Stage.DONE:
        logger.success("Media queue finished.")
        return EXIT_OK
    if outcome["stage"] == Stage.CANCELED:
        return EXIT_CANCELED
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
