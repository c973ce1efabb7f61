"""
Query surface and wiring for the image pipeline API.

This module ties together the pieces the HTTP layer needs:
- Job submission (uploads and watermark requests) through the dispatcher
- Job history queries backed by the job store
- Listing produced outputs with their original names
- Resetting job history or produced outputs
- Starting and stopping the broker connections and the log broadcaster

The JobManager class is the single object the API depends on, which keeps the
routes thin and lets tests substitute a manager built on an in-memory broker.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from omegaconf import DictConfig
from pydantic import ValidationError

from .broadcaster import LogBroadcaster, Subscriber
from .broker import BrokerConnection
from .configuration import storage_path
from .dispatcher import Dispatcher, InputArtifact
from .errors import QueueConnectivityError
from .job_store import JobStore
from .ledger import PROCESSED, WATERMARK_CLAIMS, WATERMARKED, OutputLedger
from .models import DispatchResult, JobRecord, JobStatus, OutputItem, ResetResult
from .utils import allowed_image_extensions, ensure_directory

logger = logging.getLogger(__name__)

KEEP_FILES = {".gitkeep"}


def _sort_key(record: Dict[str, Any]) -> str:
    return str(record.get("lastUpdated") or record.get("createdAt") or "")


class JobManager:
    """
    Central coordinator for the API process.

    Attributes:
        upload_root: Directory holding stored inputs until a worker consumes them
        processed_root: Directory of resize outputs
        watermarked_root: Directory of watermark outputs

    Thread Safety:
        Store writes go through the log broadcaster's lock; reads load the
        store file and need no locking.
    """

    def __init__(
        self,
        settings: DictConfig,
        store: JobStore,
        ledger: OutputLedger,
        broadcaster: LogBroadcaster,
        dispatcher: Dispatcher,
        publisher: Optional[BrokerConnection] = None,
        listener: Optional[BrokerConnection] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.upload_root = ensure_directory(storage_path(settings, "upload_dir"))
        self.processed_root = ensure_directory(storage_path(settings, "processed_dir"))
        self.watermarked_root = ensure_directory(storage_path(settings, "watermarked_dir"))
        self._publisher = publisher
        self._listener = listener
        self._stop = threading.Event()
        self._connector: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "JobManager":
        store = JobStore(storage_path(settings, "job_store"))
        ledger = OutputLedger(storage_path(settings, "ledger_dir"))
        broadcaster = LogBroadcaster(store, settings)
        publisher = BrokerConnection(settings, name="dispatcher")
        listener = BrokerConnection(settings, name="broadcaster")
        dispatcher = Dispatcher(settings, publisher, ledger, broadcaster)
        return cls(settings, store, ledger, broadcaster, dispatcher, publisher=publisher, listener=listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Connect in the background so the API can serve queries while the broker is down."""
        self._stop.clear()
        if self._listener is not None:
            self.broadcaster.start(self._listener)
        if self._publisher is not None:
            self._connector = threading.Thread(
                target=self._keep_publisher_connected, name="dispatcher-connector", daemon=True
            )
            self._connector.start()

    def _keep_publisher_connected(self) -> None:
        if self._publisher is None:
            return
        while not self._stop.is_set():
            try:
                self._publisher.connect(self._stop)
            except Exception as exc:  # noqa: BLE001
                if not self._stop.is_set():
                    logger.warning("Dispatcher connection attempt failed: %s", exc)
            self._stop.wait(self.settings.broker.reconnect_delay)

    def stop(self) -> None:
        self._stop.set()
        self.broadcaster.stop()
        if self._connector is not None:
            self._connector.join(timeout=5)
            self._connector = None
        for connection in (self._publisher, self._listener):
            if connection is not None:
                connection.close()

    def broker_state(self) -> str:
        return self._publisher.state.value if self._publisher is not None else "unknown"

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_uploads(self, inputs: Sequence[InputArtifact]) -> DispatchResult:
        """Dispatch stored uploads; every stored input that did not become a job is deleted."""
        try:
            result = self.dispatcher.submit_batch(inputs)
        except QueueConnectivityError:
            self._discard_uploads(inputs)
            raise
        queued = {record.filename for record in result.queued}
        self._discard_uploads([item for item in inputs if item.filename not in queued])
        return result

    def _discard_uploads(self, inputs: Sequence[InputArtifact]) -> None:
        for item in inputs:
            Path(item.content_reference).unlink(missing_ok=True)

    def request_watermarks(self) -> DispatchResult:
        return self.dispatcher.request_watermarks()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        return self.broadcaster.subscribe(subscriber)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _records(self, raw: Optional[List[Dict[str, Any]]] = None) -> List[JobRecord]:
        """Validated records, newest first."""
        if raw is None:
            raw = sorted(self.store.load_all().values(), key=_sort_key, reverse=True)
        records = []
        for item in raw:
            try:
                records.append(JobRecord.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping unreadable record %s: %s", item.get("id"), exc)
        return records

    def list_jobs(self, limit: Optional[int] = None) -> List[JobRecord]:
        """Jobs ordered by last update, newest first, capped at ``job_list_limit``."""
        cap = self.settings.job_list_limit if limit is None else min(limit, self.settings.job_list_limit)
        raw = sorted(self.store.load_all().values(), key=_sort_key, reverse=True)
        return self._records(raw[:cap])

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        raw = self.store.get(job_id)
        return JobRecord.model_validate(raw) if raw else None

    def list_dead(self) -> List[JobRecord]:
        return [record for record in self._records() if record.status == JobStatus.DEAD]

    def list_outputs(self) -> List[OutputItem]:
        """Processed files with the original name they were produced from."""
        by_filename = {entry["filename"]: entry["originalName"] for entry in self.ledger.entries(PROCESSED)}
        records = self._records()
        extensions = tuple(allowed_image_extensions())

        items = []
        for path in sorted(self.processed_root.iterdir()):
            if not path.is_file() or path.suffix.lower() not in extensions:
                continue
            match = next(
                (r for r in records if path.name in (r.processed_filename, r.filename, r.original_name)),
                None,
            )
            original_name = by_filename.get(path.name) or (match.original_name if match else None) or path.name
            items.append(
                OutputItem(
                    url=f"/outputs/processed/{path.name}",
                    filename=path.name,
                    original_name=original_name,
                    status=match.status if match else None,
                    retries=match.retries if match else 0,
                )
            )
        return items

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    def reset_jobs(self) -> ResetResult:
        """Forget job history; produced files stay where they are."""
        self.broadcaster.reset()
        logger.info("Job history cleared")
        return ResetResult(message="Jobs cleared")

    def reset_outputs(self) -> ResetResult:
        removed = 0
        for path in self.processed_root.iterdir():
            if path.name in KEEP_FILES or not path.is_file():
                continue
            path.unlink(missing_ok=True)
            removed += 1
        # Watermark entries refer to the processed names just removed
        for namespace in (PROCESSED, WATERMARKED, WATERMARK_CLAIMS):
            self.ledger.reset(namespace)
        logger.info("Removed %d processed output(s)", removed)
        return ResetResult(message="Gallery cleared (except .gitkeep)", removed=removed)
