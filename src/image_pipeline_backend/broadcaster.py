"""
Log broadcaster: the single writer of the job store.

Status events arrive at least once and in no guaranteed order. Each event is
checked against the stored status before it is merged: anything that is not
strictly further along the job's lifecycle (a duplicate, or a stale
``processing`` after ``success``) is dropped. Accepted events are merged field
by field and re-emitted to live subscribers such as dashboard websockets.

The dispatcher's initial records and history resets go through the same lock,
so all writes of one process are serialised.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from omegaconf import DictConfig
from pydantic import ValidationError

from .broker import BrokerConnection, Receiver
from .errors import QueueConnectivityError
from .job_store import JobMapping, JobStore
from .models import JobRecord, JobStatus, StatusEvent
from .state_machine import supersedes

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]

# Events whose ``filename`` names the produced output, and where to record it
OUTPUT_FIELDS = {
    JobStatus.SUCCESS: "processedFilename",
    JobStatus.WATERMARKED: "watermarkedFilename",
}


class SubscriberHub:
    """Fan events out to in-process subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            self.unsubscribe(subscriber)

        return _unsubscribe

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def emit(self, event: Dict[str, Any]) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber(event)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Dropping subscriber after delivery failure: %s", exc)
                self.unsubscribe(subscriber)
        return delivered

    def __len__(self) -> int:
        return len(self._subscribers)


def event_to_partial(event: StatusEvent) -> Dict[str, Any]:
    payload = event.to_payload()
    partial: Dict[str, Any] = {
        "originalName": payload.get("originalName"),
        "status": payload["status"],
        "retries": payload["retries"],
        "lastUpdated": payload["timestamp"],
        "workerId": payload.get("workerId"),
        "duration": payload.get("duration"),
        "error": payload.get("error"),
    }
    output_field = OUTPUT_FIELDS.get(event.status)
    if output_field:
        partial[output_field] = event.filename
    else:
        partial["filename"] = event.filename
    return partial


class LogBroadcaster:
    """
    Merge status events into the job store and relay them to subscribers.

    Args:
        store: The job store this broadcaster owns
        settings: Pipeline settings (``retry.max_retries`` bounds accepted events)
        hub: Live subscriber registry
    """

    def __init__(self, store: JobStore, settings: DictConfig, hub: Optional[SubscriberHub] = None) -> None:
        self.store = store
        self.hub = hub or SubscriberHub()
        self.max_retries = settings.retry.max_retries
        self.poll_interval = settings.broker.poll_interval
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def handle_event(self, payload: Any) -> bool:
        """
        Apply one status event.

        Returns:
            True if the event was merged and re-emitted, False if it was dropped
        """
        try:
            event = StatusEvent.model_validate(payload)
        except ValidationError as exc:
            logger.error("Ignoring malformed status event: %s", exc)
            return False

        if event.retries > self.max_retries:
            logger.warning(
                "Ignoring event for job %s with retries=%d above the limit of %d",
                event.job_id,
                event.retries,
                self.max_retries,
            )
            return False

        with self._lock:
            current = self.store.get(event.job_id) or {}
            stored_status = JobStatus(current["status"]) if current.get("status") else None
            if not supersedes(stored_status, int(current.get("retries", 0)), event.status, event.retries):
                logger.debug(
                    "Dropping stale event for job %s: %s(%d) does not follow %s(%s)",
                    event.job_id,
                    event.status.value,
                    event.retries,
                    current.get("status"),
                    current.get("retries"),
                )
                return False
            self.store.merge(event.job_id, event_to_partial(event))

        self.hub.emit(event.to_payload())
        return True

    def record_initial(self, record: JobRecord, event: Optional[StatusEvent] = None) -> None:
        """
        Write a job's first record on behalf of the dispatcher.

        The matching ``queued`` event will later arrive from the fanout topic as
        a duplicate and be dropped, so it is emitted to subscribers here.

        The message is already on the queue at this point, so a worker's events
        may have been merged first. The record then only fills in fields the
        store does not know yet and its status is not applied.
        """
        payload = record.to_payload()
        with self._lock:
            current = self.store.get(record.id) or {}
            stored_status = JobStatus(current["status"]) if current.get("status") else None
            accepted = supersedes(stored_status, int(current.get("retries", 0)), record.status, record.retries)
            if not accepted:
                logger.debug("Job %s already %s, keeping it over the initial record", record.id, stored_status)
                payload = {key: value for key, value in payload.items() if key not in current}
            self.store.merge(record.id, payload)
        if accepted and event is not None:
            self.hub.emit(event.to_payload())

    def reset(self) -> JobMapping:
        with self._lock:
            return self.store.reset_all()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        return self.hub.subscribe(subscriber)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def poll_once(self, receiver: Receiver, timeout: float = 0.0) -> bool:
        delivery = receiver.get(timeout=timeout)
        if delivery is None:
            return False
        try:
            self.handle_event(delivery.payload)
        finally:
            # A poison event must not be redelivered forever
            delivery.ack()
        return True

    def run(self, broker: BrokerConnection, stop_event: threading.Event) -> None:
        logger.info("Log broadcaster listening for status events")
        while not stop_event.is_set():
            try:
                broker.connect(stop_event)
                with broker.event_receiver() as receiver:
                    while not stop_event.is_set():
                        self.poll_once(receiver, timeout=self.poll_interval)
            except QueueConnectivityError as exc:
                if not stop_event.is_set():
                    logger.warning("Log broadcaster lost the broker: %s", exc)

    def start(self, broker: BrokerConnection) -> None:
        """Run the consume loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run, args=(broker, self._stop), name="log-broadcaster", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
