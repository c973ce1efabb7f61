"""
Job submission.

The dispatcher turns validated inputs into jobs: one durable queue message, one
initial job record and one ``queued`` status event each. The message is
submitted first, so a job is never recorded or announced as queued unless the
broker confirmed it. Broker failures surface immediately to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence
from uuid import uuid4

from omegaconf import DictConfig

from .broker import BrokerConnection
from .configuration import storage_path
from .errors import BatchValidationError, QueueConnectivityError
from .ledger import PROCESSED, WATERMARK_CLAIMS, WATERMARKED, OutputLedger
from .models import DispatchResult, JobDescriptor, JobKind, JobRecord, JobStatus, StatusEvent
from .utils import utc_now

logger = logging.getLogger(__name__)


class JobRecorder(Protocol):
    def record_initial(self, record: JobRecord, event: Optional[StatusEvent] = None) -> None: ...


@dataclass
class InputArtifact:
    """An input already stored by the upload layer."""

    content_reference: str
    filename: str
    original_name: str


class Dispatcher:
    """
    Creates jobs and hands them to the queue fabric.

    Args:
        settings: Pipeline settings
        broker: Publishing connection (must be READY to submit)
        ledger: Output ledger used for duplicate suppression
        recorder: Single writer of the job store (the log broadcaster)
        id_factory: Source of job ids
    """

    def __init__(
        self,
        settings: DictConfig,
        broker: BrokerConnection,
        ledger: OutputLedger,
        recorder: JobRecorder,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self.max_batch_size = settings.max_batch_size
        self.queues = settings.queues
        self.processed_dir = storage_path(settings, "processed_dir")
        self._broker = broker
        self._ledger = ledger
        self._recorder = recorder
        self._id_factory = id_factory

    def validate_batch(self, inputs: Sequence[object]) -> None:
        if not inputs:
            raise BatchValidationError("No files uploaded.")
        if len(inputs) > self.max_batch_size:
            raise BatchValidationError(f"Maximum {self.max_batch_size} files allowed.")

    def submit_batch(self, inputs: Sequence[InputArtifact]) -> DispatchResult:
        """
        Queue one resize job per input.

        Inputs whose original name already has a processed output are skipped.
        Once the broker refuses a message no further submits are attempted; that
        input and the rest of the batch are reported in ``failed`` while the
        jobs queued before it stay queued.

        Raises:
            BatchValidationError: If the batch is empty or too large
            QueueConnectivityError: If the broker is unavailable before anything is queued
        """
        self.validate_batch(inputs)
        self._broker.ensure_ready()

        queued: List[JobRecord] = []
        skipped: List[str] = []
        failed: List[str] = []
        for item in inputs:
            if failed:
                failed.append(item.original_name)
                continue
            if self._ledger.contains(PROCESSED, item.original_name):
                logger.info("Skipping %s: already processed", item.original_name)
                skipped.append(item.original_name)
                continue
            descriptor = JobDescriptor(
                job_id=self._id_factory(),
                content_reference=item.content_reference,
                filename=item.filename,
                original_name=item.original_name,
                retries=0,
                created_at=utc_now(),
            )
            try:
                queued.append(self._enqueue(self.queues.main, descriptor))
            except QueueConnectivityError as exc:
                logger.error("Could not queue %s, stopping the batch: %s", item.original_name, exc)
                failed.append(item.original_name)

        message = f"{len(queued)} file(s) queued."
        if skipped:
            message += f" {len(skipped)} duplicate(s) skipped."
        if failed:
            message += f" {len(failed)} file(s) not queued, job queue unavailable."
        return DispatchResult(message=message, queued=queued, skipped=skipped, failed=failed)

    def request_watermarks(self) -> DispatchResult:
        """
        Queue a watermark job for every processed output that has none yet.

        Each candidate is claimed in the ledger before it is enqueued, so
        repeated or concurrent requests never queue the same output twice.
        """
        self._broker.ensure_ready()

        queued: List[JobRecord] = []
        for entry in self._ledger.entries(PROCESSED):
            original_name = entry["originalName"]
            source = self.processed_dir / entry["filename"]
            if not source.exists():
                logger.warning("Ledger entry for %s has no output file, skipping", original_name)
                continue
            if self._ledger.contains(WATERMARKED, original_name):
                continue
            if not self._ledger.claim(WATERMARK_CLAIMS, original_name, entry["filename"]):
                continue

            descriptor = JobDescriptor(
                job_id=self._id_factory(),
                content_reference=str(source),
                filename=entry["filename"],
                original_name=original_name,
                retries=0,
                created_at=utc_now(),
                kind=JobKind.WATERMARK,
                source_filename=entry["filename"],
            )
            try:
                queued.append(self._enqueue(self.queues.watermark, descriptor))
            except QueueConnectivityError:
                self._ledger.release(WATERMARK_CLAIMS, original_name)
                raise

        return DispatchResult(message=f"{len(queued)} watermark job(s) queued.", queued=queued)

    def _enqueue(self, queue_name: str, descriptor: JobDescriptor) -> JobRecord:
        self._broker.submit(queue_name, descriptor.to_payload())

        record = JobRecord(
            id=descriptor.job_id,
            filename=descriptor.filename,
            original_name=descriptor.original_name,
            status=JobStatus.QUEUED,
            retries=0,
            kind=descriptor.kind,
            created_at=descriptor.created_at,
            last_updated=descriptor.created_at,
        )
        event = StatusEvent(
            job_id=descriptor.job_id,
            filename=descriptor.filename,
            original_name=descriptor.original_name,
            status=JobStatus.QUEUED,
            retries=0,
            timestamp=descriptor.created_at,
        )
        self._recorder.record_initial(record, event)
        try:
            self._broker.broadcast(event.to_payload())
        except QueueConnectivityError as exc:
            # The job is queued and recorded; only other listeners miss this event
            logger.warning("Queued job %s but could not announce it: %s", descriptor.job_id, exc)
        logger.info("Queued %s as job %s on %s", descriptor.original_name, descriptor.job_id, queue_name)
        return record
