"""
Queue workers and the per-job retry state machine.

A worker owns one receive loop on one thread. Deliveries are turned into
attempts, transforms run on a thread pool, and the loop settles finished
attempts, fires due retry timers and pulls new deliveries as capacity frees up.
Nothing in the loop sleeps on behalf of a single job: the retry backoff is a
due-time checked on every pass.

Every outcome is reported on the fanout topic before the delivery is
acknowledged, and any follow-up message (retry or dead) is durably submitted
before the acknowledgement too. A crash at any point therefore leaves the
delivery unacknowledged and the broker redelivers it; the price is that an
attempt may occasionally run twice.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from omegaconf import DictConfig
from pydantic import ValidationError

from .broker import BrokerConnection, Delivery, Receiver
from .configuration import storage_path
from .errors import InjectedFault, PermanentTransformError, QueueConnectivityError, TransientTransformError
from .ledger import PROCESSED, OutputLedger
from .models import JobDescriptor, JobKind, JobStatus, StatusEvent
from .state_machine import require_transition
from .transforms import Transform, resize_image
from .utils import build_output_name, ensure_directory, utc_now

logger = logging.getLogger(__name__)

FaultInjector = Callable[[JobDescriptor], bool]

# Upper bound for one loop pass while attempts are in flight
_SETTLE_INTERVAL = 0.1


def no_faults(descriptor: JobDescriptor) -> bool:
    return False


def marker_fault(marker: str) -> FaultInjector:
    """Fail jobs whose original name contains ``marker`` (case-insensitive)."""
    needle = marker.strip().lower()

    def _matches(descriptor: JobDescriptor) -> bool:
        return bool(needle) and needle in descriptor.original_name.lower()

    return _matches


def fault_injector_from_settings(settings: DictConfig) -> FaultInjector:
    marker = settings.worker.fault_marker
    return marker_fault(marker) if marker else no_faults


def default_worker_id(prefix: str) -> str:
    return f"{prefix}-{socket.gethostname()}-{threading.get_native_id()}"


@dataclass
class Attempt:
    """One delivery being worked on, from receipt to acknowledgement."""

    delivery: Delivery
    descriptor: JobDescriptor
    output_name: str
    status: JobStatus = JobStatus.QUEUED
    started_at: float = 0.0
    future: Optional[Future] = None
    error: Optional[str] = None
    retry_due: Optional[float] = None

    def advance(self, status: JobStatus) -> None:
        self.status = require_transition(self.status, status)


class PipelineWorker:
    """
    Competing consumer for one stage of the pipeline.

    Subclasses decide how outputs are named, produced and recorded; the retry
    state machine, event publishing and acknowledgement order live here.

    Args:
        settings: Pipeline settings
        broker: Connection used for receiving, submitting and broadcasting
        transform: Callable producing the output file
        queue: Queue to consume
        retry_queue: Queue receiving retryable failures
        output_dir: Directory outputs are written to
        fault_injector: Predicate forcing a failure on a job's first attempt
        executor: Runs transforms (defaults to a thread pool sized by ``worker.concurrency``)
        clock: Monotonic time source for durations and backoff timers
        worker_id: Identifier reported in status events
    """

    kind = JobKind.IMAGE
    success_status = JobStatus.SUCCESS
    id_prefix = "worker"

    def __init__(
        self,
        settings: DictConfig,
        broker: BrokerConnection,
        transform: Transform,
        *,
        queue: str,
        retry_queue: str,
        output_dir: Path,
        fault_injector: FaultInjector = no_faults,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        worker_id: Optional[str] = None,
    ) -> None:
        self.queue = queue
        self.retry_queue = retry_queue
        self.dead_queue = settings.queues.dead
        self.output_dir = ensure_directory(output_dir)
        self.worker_id = worker_id or settings.worker.worker_id or default_worker_id(self.id_prefix)
        self.max_retries = settings.retry.max_retries
        self.backoff_seconds = settings.retry.backoff_seconds
        self.concurrency = settings.worker.concurrency
        self.poll_interval = settings.broker.poll_interval

        self._broker = broker
        self._transform = transform
        self._fault_injector = fault_injector
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=self.worker_id
        )
        self._clock = clock
        self._attempts: List[Attempt] = []
        self._idle = threading.Event()

    # ------------------------------------------------------------------
    # Stage hooks
    # ------------------------------------------------------------------

    def output_name(self, descriptor: JobDescriptor) -> str:
        return build_output_name(descriptor.original_name, descriptor.job_id)

    def record_output(self, descriptor: JobDescriptor, output_name: str) -> None:
        """Persist the reference to a produced output."""

    def discard_input(self, descriptor: JobDescriptor) -> None:
        """Remove the input artifact once it is no longer needed."""

    def on_dead(self, descriptor: JobDescriptor) -> None:
        """Called after a job has been dead-lettered."""

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._attempts)

    def run(self, stop_event: threading.Event) -> None:
        """Consume until ``stop_event`` is set, reconnecting whenever the broker drops."""
        logger.info("Worker %s listening on %s", self.worker_id, self.queue)
        try:
            while not stop_event.is_set():
                try:
                    self._broker.connect(stop_event)
                    with self._broker.receiver(self.queue, prefetch=self.concurrency) as receiver:
                        while not stop_event.is_set():
                            self.poll_once(receiver, timeout=self.poll_interval)
                except QueueConnectivityError as exc:
                    if not stop_event.is_set():
                        logger.warning("Worker %s lost the broker: %s", self.worker_id, exc)
                    self._abandon_attempts()
        finally:
            self._abandon_attempts()
            self._executor.shutdown(wait=True)
            logger.info("Worker %s stopped", self.worker_id)

    def poll_once(self, receiver: Receiver, timeout: float = 0.0) -> None:
        """One pass of the loop: receive, settle finished attempts, fire due retries."""
        if len(self._attempts) < self.concurrency:
            wait_for = min(timeout, _SETTLE_INTERVAL) if self._attempts else timeout
            delivery = receiver.get(timeout=wait_for)
            if delivery is not None:
                self._begin(delivery)
        else:
            self._wait_for_progress(timeout)
        self._settle_finished()
        self._fire_due_retries()

    def _wait_for_progress(self, timeout: float) -> None:
        deadline = timeout
        due = [a.retry_due for a in self._attempts if a.retry_due is not None]
        if due:
            deadline = max(0.0, min(deadline, min(due) - self._clock()))
        running = [a.future for a in self._attempts if a.future is not None and not a.future.done()]
        if running:
            wait(running, timeout=deadline, return_when=FIRST_COMPLETED)
        elif deadline > 0:
            self._idle.wait(deadline)

    def _abandon_attempts(self) -> None:
        if self._attempts:
            logger.warning(
                "Worker %s abandoning %d unacknowledged job(s); the broker will redeliver them",
                self.worker_id,
                len(self._attempts),
            )
        self._attempts.clear()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _begin(self, delivery: Delivery) -> None:
        try:
            descriptor = JobDescriptor.model_validate(delivery.payload)
        except ValidationError as exc:
            self._dead_letter_malformed(delivery, exc)
            return

        attempt = Attempt(delivery=delivery, descriptor=descriptor, output_name=self.output_name(descriptor))
        attempt.advance(JobStatus.PROCESSING)
        self._publish(attempt, JobStatus.PROCESSING)
        attempt.started_at = self._clock()
        attempt.future = self._executor.submit(self._execute, descriptor, attempt.output_name)
        self._attempts.append(attempt)
        logger.info(
            "Worker %s processing %s (job %s, retries=%d)",
            self.worker_id,
            descriptor.original_name,
            descriptor.job_id,
            descriptor.retries,
        )

    def _execute(self, descriptor: JobDescriptor, output_name: str) -> None:
        if descriptor.retries == 0 and self._fault_injector(descriptor):
            raise InjectedFault(f"Injected failure for {descriptor.original_name}")
        self._transform(Path(descriptor.content_reference), self.output_dir / output_name)

    def _settle_finished(self) -> None:
        for attempt in list(self._attempts):
            if attempt.future is None or not attempt.future.done():
                continue
            future, attempt.future = attempt.future, None
            exc = future.exception()
            if exc is None:
                self._succeed(attempt)
            else:
                self._fail(attempt, exc)

    def _succeed(self, attempt: Attempt) -> None:
        descriptor = attempt.descriptor
        duration = round(self._clock() - attempt.started_at, 3)
        try:
            self.record_output(descriptor, attempt.output_name)
        except OSError as exc:
            self._fail(attempt, TransientTransformError(f"Could not record output {attempt.output_name}: {exc}"))
            return
        attempt.advance(self.success_status)
        self._publish(attempt, self.success_status, filename=attempt.output_name, duration=duration)
        self.discard_input(descriptor)
        attempt.delivery.ack()
        self._attempts.remove(attempt)
        logger.info(
            "Worker %s finished %s -> %s in %.3fs",
            self.worker_id,
            descriptor.original_name,
            attempt.output_name,
            duration,
        )

    def _fail(self, attempt: Attempt, exc: BaseException) -> None:
        descriptor = attempt.descriptor
        attempt.error = str(exc) or exc.__class__.__name__
        duration = round(self._clock() - attempt.started_at, 3)
        attempt.advance(JobStatus.FAILED)
        self._publish(attempt, JobStatus.FAILED, duration=duration, error=attempt.error)

        next_retries = descriptor.retries + 1
        if isinstance(exc, PermanentTransformError):
            logger.error("Job %s failed permanently: %s", descriptor.job_id, attempt.error)
            self._dead_letter(attempt, retries=descriptor.retries)
        elif next_retries < self.max_retries:
            attempt.retry_due = self._clock() + self.backoff_seconds
            logger.warning(
                "Job %s failed (attempt %d/%d), retrying in %ss: %s",
                descriptor.job_id,
                next_retries,
                self.max_retries,
                self.backoff_seconds,
                attempt.error,
            )
        else:
            logger.error(
                "Job %s failed %d time(s), moving to %s: %s",
                descriptor.job_id,
                next_retries,
                self.dead_queue,
                attempt.error,
            )
            self._dead_letter(attempt, retries=next_retries)

    def _fire_due_retries(self) -> None:
        now = self._clock()
        for attempt in list(self._attempts):
            if attempt.retry_due is None or attempt.retry_due > now:
                continue
            follow_up = attempt.descriptor.model_copy(update={"retries": attempt.descriptor.retries + 1})
            self._broker.submit(self.retry_queue, follow_up.to_payload())
            attempt.advance(JobStatus.RETRIED)
            self._publish(attempt, JobStatus.RETRIED, retries=follow_up.retries, error=attempt.error)
            attempt.delivery.ack()
            self._attempts.remove(attempt)

    def _dead_letter(self, attempt: Attempt, retries: int) -> None:
        dead = attempt.descriptor.model_copy(
            update={
                "retries": retries,
                "error": attempt.error,
                "failed_at": utc_now(),
                "worker_id": self.worker_id,
            }
        )
        self._broker.submit(self.dead_queue, dead.to_payload())
        attempt.advance(JobStatus.DEAD)
        self._publish(attempt, JobStatus.DEAD, retries=retries, error=attempt.error)
        self.on_dead(attempt.descriptor)
        attempt.delivery.ack()
        self._attempts.remove(attempt)

    def _dead_letter_malformed(self, delivery: Delivery, exc: ValidationError) -> None:
        logger.error("Dead-lettering malformed job message on %s: %s", self.queue, exc)
        self._broker.submit(
            self.dead_queue,
            {"payload": delivery.payload, "error": f"Malformed job message: {exc.error_count()} error(s)"},
        )
        delivery.ack()

    def _publish(self, attempt: Attempt, status: JobStatus, **fields: Any) -> None:
        descriptor = attempt.descriptor
        values: Dict[str, Any] = {
            "job_id": descriptor.job_id,
            "filename": descriptor.filename,
            "original_name": descriptor.original_name,
            "status": status,
            "retries": descriptor.retries,
            "worker_id": self.worker_id,
            "timestamp": utc_now(),
        }
        values.update(fields)
        self._broker.broadcast(StatusEvent(**values).to_payload())


class ImageWorker(PipelineWorker):
    """Resize stage: consumes fresh and retried uploads from the main queue."""

    def __init__(self, settings: DictConfig, broker: BrokerConnection, ledger: OutputLedger, **kwargs: Any) -> None:
        kwargs.setdefault("transform", resize_image(settings.worker.resize_width))
        kwargs.setdefault("queue", settings.queues.main)
        kwargs.setdefault("retry_queue", settings.queues.retry)
        kwargs.setdefault("output_dir", storage_path(settings, "processed_dir"))
        kwargs.setdefault("fault_injector", fault_injector_from_settings(settings))
        super().__init__(settings, broker, **kwargs)
        self._ledger = ledger

    def record_output(self, descriptor: JobDescriptor, output_name: str) -> None:
        self._ledger.record(PROCESSED, descriptor.original_name, output_name)

    def discard_input(self, descriptor: JobDescriptor) -> None:
        try:
            Path(descriptor.content_reference).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not delete input %s: %s", descriptor.content_reference, exc)
