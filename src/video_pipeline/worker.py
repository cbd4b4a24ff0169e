"""Worker loop and multi-process worker pool.

This module provides:
- WorkerLoop: dequeue -> claim -> dispatch -> record, one message per iteration
- Cooperative shutdown through a stop event checked between iterations
- WorkerPool: N independent worker processes sharing one stop event

Delivery is at-most-once: a message is gone once dequeued. A worker that
dies mid-task leaves its job in ``processing``; nothing reclaims it.
"""

import logging
import multiprocessing
import os
import signal
import socket
import threading
import time
from enum import Enum
from typing import Dict, List, Optional, Union

import psutil

from .aggregator import CompletionAggregator
from .config import PipelineConfig, configure_logging
from .errors import (
    MessageDecodeError,
    NotFoundError,
    PipelineError,
    QueueUnavailable,
    UnknownJobType,
)
from .executors import TaskExecutor
from .models import Job, JobMessage, JobType, parse_task
from .queue.backends import JobStore, VideoStore, WorkQueue
from .queue.publisher import DEFAULT_QUEUE_NAME

logger = logging.getLogger(__name__)

# How long a terminated worker gets before SIGKILL
TERMINATE_TIMEOUT_S = 1.0


class IterationOutcome(str, Enum):
    """What one run_once() call did."""

    IDLE = "idle"              # dequeue timed out
    DROPPED = "dropped"        # undecodable, unknown job id, or already terminal
    COMPLETED = "completed"
    FAILED = "failed"
    BACKOFF = "backoff"        # queue unavailable, waited before returning


def default_worker_id(configured: Optional[str] = None) -> str:
    """Configured id, else $WORKER_ID, else ``worker-<hostname>-<pid>``."""
    if configured:
        return configured
    env_id = os.environ.get("WORKER_ID")
    if env_id:
        return env_id
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class WorkerLoop:
    """Single-threaded consumer of the shared work queue."""

    def __init__(
        self,
        worker_id: str,
        queue: WorkQueue,
        job_store: JobStore,
        video_store: VideoStore,
        executors: Dict[JobType, TaskExecutor],
        aggregator: CompletionAggregator,
        queue_name: str = DEFAULT_QUEUE_NAME,
        dequeue_timeout_s: float = 5.0,
        backoff_s: float = 5.0,
        dead_letter_queue: Optional[str] = None,
        stop_event=None,
    ):
        """
        Args:
            worker_id: Identity recorded on claimed jobs
            queue_name: Queue to consume
            dequeue_timeout_s: How long one dequeue blocks
            backoff_s: Pause after a queue error (interrupted by stop_event)
            dead_letter_queue: Queue receiving undecodable messages, or None to drop them
            stop_event: threading.Event or multiprocessing.Event
        """
        self.worker_id = worker_id
        self.queue = queue
        self.job_store = job_store
        self.video_store = video_store
        self.executors = executors
        self.aggregator = aggregator
        self.queue_name = queue_name
        self.dequeue_timeout_s = dequeue_timeout_s
        self.backoff_s = backoff_s
        self.dead_letter_queue = dead_letter_queue
        self.stop_event = stop_event if stop_event is not None else threading.Event()

    def run(self) -> None:
        """Process messages until the stop event is set."""
        logger.info("Worker %s started, consuming %s", self.worker_id, self.queue_name)
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Worker %s: unexpected error, retrying in %.1fs",
                                 self.worker_id, self.backoff_s)
                self.stop_event.wait(self.backoff_s)
        logger.info("Worker %s stopped", self.worker_id)

    def stop(self) -> None:
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        """Map SIGINT/SIGTERM to the stop event (main thread only)."""
        def _handle(signum, frame):
            logger.info("Worker %s received signal %d, finishing current iteration",
                        self.worker_id, signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def run_once(self) -> IterationOutcome:
        """Handle at most one message."""
        try:
            raw = self.queue.dequeue(self.queue_name, self.dequeue_timeout_s)
        except QueueUnavailable as e:
            logger.error("Worker %s: %s; retrying in %.1fs", self.worker_id, e, self.backoff_s)
            self.stop_event.wait(self.backoff_s)
            return IterationOutcome.BACKOFF

        if raw is None:
            return IterationOutcome.IDLE

        try:
            message = JobMessage.from_wire(raw)
        except MessageDecodeError as e:
            logger.warning("Worker %s dropped message: %s", self.worker_id, e)
            self._dead_letter(raw)
            return IterationOutcome.DROPPED

        job = self._claim(message)
        if job is None:
            return IterationOutcome.DROPPED

        logger.info("Processing job: job_id=%s video_id=%s type=%s worker_id=%s",
                    job.id, job.video_id, message.type, self.worker_id)

        error = self._execute(job, message)
        if error is None:
            job.complete()
            self._record(job, lambda: self.aggregator.job_completed(job.video_id))
            logger.info("Job completed successfully: job_id=%s video_id=%s", job.id, job.video_id)
            return IterationOutcome.COMPLETED

        job.fail(error)
        self._record(job, lambda: self.aggregator.job_failed(job.video_id, error))
        logger.error("Job failed: job_id=%s video_id=%s error=%s", job.id, job.video_id, error)
        return IterationOutcome.FAILED

    def _claim(self, message: JobMessage) -> Optional[Job]:
        """Load the job and mark it processing; None means drop the message."""
        try:
            job = self.job_store.get_by_id(message.id)
        except NotFoundError:
            logger.warning("Worker %s dropped message for unknown job %s", self.worker_id, message.id)
            return None
        except PipelineError as e:
            logger.error("Worker %s could not load job %s: %s", self.worker_id, message.id, e)
            return None

        if job.is_terminal():
            logger.warning("Worker %s dropped message for %s job %s",
                           self.worker_id, job.status.value, job.id)
            return None

        job.start(self.worker_id)
        try:
            self.job_store.update(job)
        except PipelineError as e:
            logger.error("Worker %s could not claim job %s: %s", self.worker_id, job.id, e)
            return None
        return job

    def _execute(self, job: Job, message: JobMessage) -> Optional[str]:
        """Run the task; returns the error text, or None on success."""
        try:
            task = parse_task(message.type, message.payload)
            executor = self.executors.get(JobType(message.type))
            if executor is None:
                raise UnknownJobType(message.type)
            executor.execute(job, task, lambda progress: self._report_progress(job, progress))
        except PipelineError as e:
            return str(e)
        except Exception as e:
            logger.exception("Unexpected error in job %s", job.id)
            return f"{type(e).__name__}: {e}"
        return None

    def _report_progress(self, job: Job, progress: int) -> None:
        job.update_progress(progress)
        try:
            self.job_store.update(job)
        except PipelineError as e:
            logger.warning("Failed to update progress for job %s: %s", job.id, e)

    def _record(self, job: Job, aggregate) -> None:
        """Persist a terminal job, then re-evaluate its video. Not retried."""
        try:
            self.job_store.update(job)
            aggregate()
        except PipelineError as e:
            logger.error("Failed to record outcome of job %s (video %s): %s",
                         job.id, job.video_id, e)

    def _dead_letter(self, raw: Union[str, bytes]) -> None:
        if not self.dead_letter_queue:
            return
        try:
            self.queue.enqueue(self.dead_letter_queue, raw)
        except QueueUnavailable as e:
            logger.error("Failed to dead-letter message: %s", e)


def build_worker_loop(services, worker_id: str, stop_event=None) -> WorkerLoop:
    """WorkerLoop over the backends in a runtime.Services bundle."""
    config = services.config
    return WorkerLoop(
        worker_id=worker_id,
        queue=services.queue,
        job_store=services.job_store,
        video_store=services.video_store,
        executors=services.executors,
        aggregator=services.aggregator,
        queue_name=config.queue.name,
        dequeue_timeout_s=config.queue.dequeue_timeout_s,
        backoff_s=config.queue.backoff_s,
        dead_letter_queue=config.queue.dead_letter_queue,
        stop_event=stop_event,
    )


def _worker_main(config_data: dict, worker_id: str, stop_event) -> None:
    """Entry point of one pool process; builds its own backends."""
    from .runtime import build_services

    # Ctrl-C goes to the whole process group; the parent owns shutdown.
    # SIGTERM from the parent means "stop now", not "finish the task".
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)

    config = PipelineConfig.from_dict(config_data)
    configure_logging(config.logging.level, config.logging.format)

    services = build_services(config)
    try:
        build_worker_loop(services, worker_id, stop_event).run()
    finally:
        services.close()


def _terminate_tree(proc: multiprocessing.Process) -> None:
    """SIGTERM a worker process and any ffmpeg it spawned."""
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    proc.terminate()
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            pass


class WorkerPool:
    """N independent worker processes sharing one stop event.

    Example:
        >>> pool = WorkerPool(config, processes=4)
        >>> pool.run()   # blocks until SIGINT/SIGTERM, then shuts down
    """

    def __init__(self, config: PipelineConfig, processes: Optional[int] = None):
        self.config = config
        self.processes = processes or config.worker.processes
        self.shutdown_grace_s = config.worker.shutdown_grace_s
        self.stop_event = multiprocessing.Event()
        self._procs: List[multiprocessing.Process] = []

    def worker_ids(self) -> List[str]:
        base = default_worker_id(self.config.worker.worker_id)
        if self.processes == 1:
            return [base]
        return [f"{base}-{i}" for i in range(self.processes)]

    def start(self) -> None:
        config_data = self.config.model_dump()
        for worker_id in self.worker_ids():
            proc = multiprocessing.Process(
                target=_worker_main,
                args=(config_data, worker_id, self.stop_event),
                name=worker_id,
            )
            proc.start()
            self._procs.append(proc)
        logger.info("Started %d worker processes", len(self._procs))

    def alive(self) -> int:
        return sum(1 for p in self._procs if p.is_alive())

    def shutdown(self) -> None:
        """Signal stop, wait up to the grace period, then terminate stragglers."""
        self.stop_event.set()
        deadline = time.monotonic() + self.shutdown_grace_s

        for proc in self._procs:
            proc.join(timeout=max(0.0, deadline - time.monotonic()))

        for proc in self._procs:
            if proc.is_alive():
                logger.warning("Terminating worker %s after %.1fs grace period",
                               proc.name, self.shutdown_grace_s)
                _terminate_tree(proc)
                proc.join(timeout=TERMINATE_TIMEOUT_S)
                if proc.is_alive():
                    logger.warning("Killing worker %s", proc.name)
                    proc.kill()
                    proc.join()

        logger.info("Worker pool shut down")
        self._procs = []

    def run(self) -> None:
        """Start workers and block until a signal or every worker exits."""
        def _handle(signum, frame):
            logger.info("Received signal %d, shutting down workers", signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

        self.start()
        try:
            while not self.stop_event.is_set() and self.alive():
                self.stop_event.wait(1.0)
        finally:
            self.shutdown()
