"""
Builds the three queues and routes calls to them by job kind.

There is one explicit factory per queue kind. `MediaQueues` wires all three to
one progress bus and one binary resolver and remembers which queue owns each
job id, so callers can cancel by id alone.
"""
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from loguru import logger

from ..config.common import (
    COMPRESS_CONCURRENCY,
    CONVERT_CONCURRENCY,
    DOWNLOAD_CONCURRENCY,
    DOWNLOAD_DIR,
)
from ..domain.models import JobKind, Payload, ProgressEvent
from ..services.compress_pipeline import CompressPipeline
from ..services.convert_pipeline import ConvertPipeline
from ..services.download_pipeline import DownloadPipeline
from ..services.event_bus import ProgressBus
from ..services.pipeline_base import OutputPathPolicy, PipelineContext
from ..utils.binaries import BinaryResolver
from .task_queue import TaskQueue


def create_download_queue(context: PipelineContext, max_concurrency: int = DOWNLOAD_CONCURRENCY) -> TaskQueue:
    return TaskQueue(JobKind.DOWNLOAD, DownloadPipeline, context, max_concurrency)


def create_compress_queue(context: PipelineContext, max_concurrency: int = COMPRESS_CONCURRENCY) -> TaskQueue:
    return TaskQueue(JobKind.COMPRESS, CompressPipeline, context, max_concurrency)


def create_convert_queue(context: PipelineContext, max_concurrency: int = CONVERT_CONCURRENCY) -> TaskQueue:
    return TaskQueue(JobKind.CONVERT, ConvertPipeline, context, max_concurrency)


QUEUE_FACTORIES = {
    JobKind.DOWNLOAD: (create_download_queue, DOWNLOAD_CONCURRENCY),
    JobKind.COMPRESS: (create_compress_queue, COMPRESS_CONCURRENCY),
    JobKind.CONVERT: (create_convert_queue, CONVERT_CONCURRENCY),
}


class MediaQueues:
    """
    The outbound API: submit, cancel and remove jobs of any kind.

    Args:
        binaries: Tool resolver shared by all pipelines. Defaults to the configured one.
        bus: Progress bus all events are published on. A new one is created if omitted.
        output_policy: Optional replacement for the built-in output naming.
        download_dir: Default directory for downloads.
        concurrency: Per-kind overrides of the configured concurrency ceilings.
    """

    def __init__(
        self,
        binaries: Optional[BinaryResolver] = None,
        bus: Optional[ProgressBus] = None,
        output_policy: Optional[OutputPathPolicy] = None,
        download_dir: Optional[Path] = None,
        concurrency: Optional[Dict[JobKind, int]] = None,
    ):
        self.bus = bus or ProgressBus()
        self.binaries = binaries or BinaryResolver()
        self.context = PipelineContext(
            binaries=self.binaries,
            publish=self.bus.publish,
            output_policy=output_policy,
            download_dir=download_dir or DOWNLOAD_DIR,
        )
        concurrency = concurrency or {}
        self.queues: Dict[JobKind, TaskQueue] = {}
        for kind, (factory, default_ceiling) in QUEUE_FACTORIES.items():
            self.queues[kind] = factory(self.context, concurrency.get(kind, default_ceiling))
        self._owners: Dict[str, JobKind] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        return self.bus.subscribe(callback)

    def submit(self, kind: Union[JobKind, str], payload: Union[Payload, Dict[str, Any]]) -> str:
        """
        Submits a job to the queue of `kind`.

        Returns:
            The new job's id.

        Raises:
            ValueError: If `kind` is not a known job kind.
            InvalidPayloadException: If the payload does not have the right shape.
        """
        kind = JobKind(kind)
        job_id = self.queues[kind].submit(payload)
        with self._lock:
            self._owners[job_id] = kind
        return job_id

    def owner(self, job_id: str) -> Optional[TaskQueue]:
        """
        The queue that owns `job_id`, or None for an unknown id.

        A job can emit events before `submit` has returned and recorded its owner,
        so unrecorded ids are looked up in the queues' own job tables.
        """
        with self._lock:
            kind = self._owners.get(job_id)
        if kind is not None:
            return self.queues[kind]
        for kind, queue in self.queues.items():
            if queue.job(job_id) is not None:
                with self._lock:
                    self._owners[job_id] = kind
                return queue
        return None

    def cancel(self, job_id: str) -> bool:
        queue = self.owner(job_id)
        if queue is None:
            logger.debug(f"Cancel for unknown job {job_id}")
            return False
        return queue.cancel(job_id)

    def remove(self, job_id: str) -> bool:
        queue = self.owner(job_id)
        return queue.remove(job_id) if queue else False

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until every queue is idle. Returns False if `timeout` expired first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for queue in self.queues.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not queue.wait_idle(remaining):
                return False
        return True

    def shutdown(self, cancel_running: bool = True, wait: bool = True):
        for queue in self.queues.values():
            queue.shutdown(cancel_running=cancel_running, wait=wait)
