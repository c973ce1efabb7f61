"""
Retry relay.

Moves messages from a stage's retry queue back onto its main queue, untouched.
Keeping retries on their own queue separates them from fresh uploads and makes
the retry volume visible on the broker. The relay takes no decisions: the
worker already applied the backoff and incremented the retry counter.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from pydantic import ValidationError

from .broker import BrokerConnection, Delivery, Receiver
from .errors import QueueConnectivityError
from .models import JobDescriptor, JobStatus, StatusEvent
from .utils import utc_now

logger = logging.getLogger(__name__)


class RetryRelay:
    def __init__(
        self,
        broker: BrokerConnection,
        source_queue: str,
        target_queue: str,
        poll_interval: float = 1.0,
        relay_id: Optional[str] = None,
    ) -> None:
        self.source_queue = source_queue
        self.target_queue = target_queue
        self.poll_interval = poll_interval
        self.relay_id = relay_id or f"relay-{source_queue}"
        self._broker = broker

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Relay %s forwarding %s -> %s", self.relay_id, self.source_queue, self.target_queue)
        while not stop_event.is_set():
            try:
                self._broker.connect(stop_event)
                with self._broker.receiver(self.source_queue) as receiver:
                    while not stop_event.is_set():
                        self.poll_once(receiver, timeout=self.poll_interval)
            except QueueConnectivityError as exc:
                if not stop_event.is_set():
                    logger.warning("Relay %s lost the broker: %s", self.relay_id, exc)

    def poll_once(self, receiver: Receiver, timeout: float = 0.0) -> bool:
        delivery = receiver.get(timeout=timeout)
        if delivery is None:
            return False
        self.forward(delivery)
        return True

    def forward(self, delivery: Delivery) -> None:
        payload = delivery.payload
        self._broker.submit(self.target_queue, payload)
        try:
            descriptor = JobDescriptor.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Forwarded an unreadable retry message without a status event: %s", exc)
        else:
            event = StatusEvent(
                job_id=descriptor.job_id,
                filename=descriptor.filename,
                original_name=descriptor.original_name,
                status=JobStatus.QUEUED,
                retries=descriptor.retries,
                worker_id=self.relay_id,
                timestamp=utc_now(),
            )
            self._broker.broadcast(event.to_payload())
            logger.info("Requeued job %s (retries=%d)", descriptor.job_id, descriptor.retries)
        delivery.ack()
