import concurrent.futures
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Union

from loguru import logger

from ..domain.models import Job, JobKind, JobState, Payload, Stage, coerce_payload
from ..services.pipeline_base import JobPipeline, PipelineContext, publish_event

PipelineFactory = Callable[[Job, PipelineContext], JobPipeline]


class TaskQueue:
    """
    Admission control and lifecycle bookkeeping for one job kind.

    Jobs wait in a FIFO pending list and are admitted whenever a job is submitted
    or a running job ends, as long as fewer than `max_concurrency` are running.
    Admitted pipelines run on the queue's own thread pool.

    Lock order: the queue lock is never held while a job lock is taken, so an
    event subscriber may call back into the queue from inside an emit.

    Args:
        kind: The job kind this queue runs.
        pipeline_factory: Builds the pipeline for an admitted job.
        context: Collaborators handed to every pipeline.
        max_concurrency: Most jobs running at the same time.
    """

    def __init__(
        self,
        kind: JobKind,
        pipeline_factory: PipelineFactory,
        context: PipelineContext,
        max_concurrency: int,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.kind = kind
        self.pipeline_factory = pipeline_factory
        self.context = context
        self.max_concurrency = max_concurrency

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._jobs: Dict[str, Job] = {}
        self._pending: Deque[Job] = deque()
        self._running = 0
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix=f"{kind.value}-worker",
        )

    def __repr__(self) -> str:
        return f"TaskQueue({self.kind.value}, running={self._running}, pending={len(self._pending)})"

    @property
    def running_count(self) -> int:
        with self._lock:
            return self._running

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def job_state(self, job_id: str) -> Optional[JobState]:
        job = self.job(job_id)
        return job.state if job else None

    # --- Public API ---

    def submit(self, payload: Union[Payload, Dict[str, Any]]) -> str:
        """
        Enqueues a job and returns its id without waiting for it to run.

        Only the payload's structure is checked here; everything else is found
        out by the pipeline and reported as an `error` event.

        Raises:
            InvalidPayloadException: If the payload does not have the right shape.
            RuntimeError: If the queue has been shut down.
        """
        job = Job(self.kind, coerce_payload(self.kind, payload))
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.kind.value} queue is shut down")
            self._jobs[job.id] = job
            self._pending.append(job)
        logger.debug(f"Queued {self.kind.value} job {job.id}")
        self._admit()
        return job.id

    def cancel(self, job_id: str) -> bool:
        """
        Cancels a job and reports `canceled` for it right away.

        A queued job is simply never admitted. A running job has every process
        it spawned killed together with the processes those started.

        Returns:
            True if live processes were found and killed; False for queued,
            finished or unknown jobs.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job in self._pending:
                self._pending.remove(job)
                self._idle.notify_all()

        with job.lock:
            if job.is_terminal:
                return False
            processes = job.request_cancel()
            publish_event(job, self.context.publish, Stage.CANCELED)

        for process in processes:
            logger.debug(f"Killing {process!r} of canceled job {job_id}")
            process.kill_tree()
        logger.info(f"Canceled {self.kind.value} job {job_id} ({len(processes)} process(es) killed)")
        return bool(processes)

    def remove(self, job_id: str) -> bool:
        """Hook for callers that prune their own records of a job. Queue state is unchanged."""
        logger.debug(f"Remove requested for {self.kind.value} job {job_id}")
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until no job is running or pending.

        Returns:
            False if `timeout` expired first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._running == 0 and not self._pending, timeout)

    def shutdown(self, cancel_running: bool = True, wait: bool = True):
        """
        Stops admitting jobs. Pending jobs are canceled, running ones too when
        `cancel_running` is set, then the worker pool is shut down.
        """
        with self._lock:
            self._closed = True
            pending = [job.id for job in self._pending]
            running = [job.id for job in self._jobs.values() if job.state == JobState.RUNNING]
        for job_id in pending:
            self.cancel(job_id)
        if cancel_running:
            for job_id in running:
                self.cancel(job_id)
        self._executor.shutdown(wait=wait)

    # --- Admission ---

    def _admit(self):
        while True:
            with self._lock:
                if self._closed or self._running >= self.max_concurrency or not self._pending:
                    return
                job = self._pending.popleft()
                self._running += 1

            if not job.mark_running():
                # Canceled between leaving the pending list and getting here.
                self._release(job)
                continue
            logger.debug(f"Admitted {self.kind.value} job {job.id}")
            try:
                self._executor.submit(self._run_job, job)
            except RuntimeError as e:
                publish_event(job, self.context.publish, Stage.ERROR, message=f"Queue is shutting down: {e}")
                self._release(job)

    def _release(self, job: Job):
        logger.trace(f"Releasing slot of {self.kind.value} job {job.id}")
        with self._lock:
            self._running -= 1
            self._idle.notify_all()

    def _run_job(self, job: Job):
        try:
            try:
                pipeline = self.pipeline_factory(job, self.context)
            except Exception as e:
                logger.exception(f"Could not build the {self.kind.value} pipeline for job {job.id}: {e}")
                publish_event(job, self.context.publish, Stage.ERROR, message=f"Could not start job: {e}")
                return
            try:
                pipeline.execute()
            except Exception as e:
                logger.exception(f"{pipeline!r} escaped its error boundary: {e}")
                publish_event(job, self.context.publish, Stage.ERROR, message=str(e))
            if not job.is_terminal:
                publish_event(job, self.context.publish, Stage.ERROR, message="Pipeline ended without a result")
        finally:
            self._release(job)
            self._admit()
