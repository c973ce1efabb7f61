"""
Broker access for every pipeline role.

``BrokerConnection`` is an explicit connection manager (DISCONNECTED ->
CONNECTING -> READY) handed to the dispatcher, workers, relays and the log
broadcaster; there is no module-level connection. It declares the topology the
pipeline relies on:

- durable direct queues for fresh, retried, dead and watermark jobs
- a durable fanout exchange carrying status events

Job descriptors are published persistently and, with ``broker.confirm_publish``,
``submit`` only returns once the broker confirmed the message. Every operation
fails fast with ``QueueConnectivityError`` while the connection is not READY;
``connect`` is the only place that waits, retrying forever with a fixed delay
until it succeeds or its stop signal is set.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from kombu import Connection, Exchange, Producer, Queue
from kombu.entity import PERSISTENT_DELIVERY_MODE
from kombu.exceptions import OperationalError
from omegaconf import DictConfig

from .errors import QueueConnectivityError

logger = logging.getLogger(__name__)

# kombu's SimpleQueue never drains the socket when given a zero timeout
_MIN_RECEIVE_TIMEOUT = 0.05


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


def build_job_queue(name: str) -> Queue:
    return Queue(name, Exchange(name, type="direct", durable=True), routing_key=name, durable=True)


class Delivery:
    """One received message; must be acknowledged exactly once."""

    def __init__(self, message: Any, owner: "BrokerConnection") -> None:
        self._message = message
        self._owner = owner

    @property
    def payload(self) -> Any:
        return self._message.payload

    def ack(self) -> None:
        with self._owner.guard("ack"):
            self._message.ack()

    def reject(self, requeue: bool = False) -> None:
        with self._owner.guard("reject"):
            self._message.reject(requeue=requeue)


class Receiver:
    """Pull-based consumer bound to a single queue."""

    def __init__(self, simple_queue: Any, owner: "BrokerConnection") -> None:
        self._queue = simple_queue
        self._owner = owner

    def get(self, timeout: float = 0.0) -> Optional[Delivery]:
        """Return the next delivery, or None if nothing arrived within ``timeout`` seconds."""
        self._owner.heartbeat()
        with self._owner.guard("receive"):
            try:
                message = self._queue.get(block=True, timeout=max(timeout, _MIN_RECEIVE_TIMEOUT))
            except self._queue.Empty:
                return None
        return Delivery(message, self._owner)

    def close(self) -> None:
        try:
            self._queue.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring error while closing receiver: %s", exc)

    def __enter__(self) -> "Receiver":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class _Guard:
    def __init__(self, owner: "BrokerConnection", operation: str) -> None:
        self._owner = owner
        self._operation = operation

    def __enter__(self) -> None:
        self._owner.ensure_ready()

    def __exit__(self, exc_type: Any, exc: Optional[BaseException], tb: Any) -> bool:
        if exc is not None and isinstance(exc, self._owner.broker_errors):
            self._owner.mark_lost(exc)
            raise QueueConnectivityError(f"Broker {self._operation} failed: {exc}") from exc
        return False


class BrokerConnection:
    """
    Connection manager for one pipeline role.

    Args:
        settings: Pipeline settings (``broker`` and ``queues`` sections)
        name: Role name used in log messages

    Thread Safety:
        Publishing is serialised by an internal lock. Receivers and deliveries
        must stay on the thread that created them.
    """

    def __init__(self, settings: DictConfig, name: str = "pipeline") -> None:
        self.name = name
        self._url = settings.broker.url
        self._heartbeat = settings.broker.heartbeat
        self._reconnect_delay = settings.broker.reconnect_delay
        self._confirm_publish = settings.broker.confirm_publish
        self._queue_names = settings.queues
        self._connection: Optional[Connection] = None
        self._producer: Optional[Producer] = None
        self._lock = threading.RLock()
        self.state = ConnectionState.DISCONNECTED

        self.log_exchange = Exchange(settings.queues.log_exchange, type="fanout", durable=True)
        self.queues: Dict[str, Queue] = {
            name: build_job_queue(name)
            for name in (
                settings.queues.main,
                settings.queues.retry,
                settings.queues.dead,
                settings.queues.watermark,
                settings.queues.watermark_retry,
            )
        }

    @property
    def broker_errors(self) -> Tuple[type, ...]:
        errors: Tuple[type, ...] = (OperationalError, OSError)
        if self._connection is not None:
            errors += tuple(self._connection.connection_errors) + tuple(self._connection.channel_errors)
        return errors

    def guard(self, operation: str) -> _Guard:
        return _Guard(self, operation)

    def ensure_ready(self) -> None:
        if self.state is not ConnectionState.READY or self._connection is None:
            raise QueueConnectivityError(f"Broker connection '{self.name}' is {self.state.value}")

    def connect(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Connect and declare the topology, retrying until it works.

        Raises:
            QueueConnectivityError: If ``stop_event`` is set before a connection is made
        """
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            if self.state is ConnectionState.READY:
                return
            try:
                self._open()
                logger.info("Connected to broker (%s)", self.name)
                return
            except (OperationalError, OSError) as exc:
                self._reset("disconnected")
                logger.error(
                    "Failed to connect to broker (%s): %s. Retrying in %ss",
                    self.name,
                    exc,
                    self._reconnect_delay,
                )
                stop_event.wait(self._reconnect_delay)
        raise QueueConnectivityError(f"Stopped before broker connection '{self.name}' was ready")

    def _open(self) -> None:
        with self._lock:
            self.state = ConnectionState.CONNECTING
            transport_options = {"confirm_publish": True} if self._confirm_publish else {}
            connection = Connection(self._url, heartbeat=self._heartbeat, transport_options=transport_options)
            self._connection = connection
            connection.ensure_connection(max_retries=1)
            channel = connection.default_channel
            for queue in self.queues.values():
                queue(channel).declare()
            self.log_exchange(channel).declare()
            self._producer = Producer(channel)
            self.state = ConnectionState.READY

    def _reset(self, reason: str) -> None:
        with self._lock:
            connection, self._connection, self._producer = self._connection, None, None
            self.state = ConnectionState.DISCONNECTED
        if connection is not None:
            try:
                connection.release()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring error while releasing %s connection: %s", reason, exc)

    def mark_lost(self, exc: BaseException) -> None:
        logger.warning("Broker connection (%s) lost: %s", self.name, exc)
        self._reset("lost")

    def heartbeat(self) -> None:
        with self.guard("heartbeat"):
            self._connection.heartbeat_check()  # type: ignore[union-attr]

    def submit(self, queue_name: str, payload: Dict[str, Any]) -> None:
        """Durably enqueue a job descriptor on ``queue_name``."""
        queue = self.queues[queue_name]
        with self._lock, self.guard(f"submit to {queue_name}"):
            self._producer.publish(  # type: ignore[union-attr]
                payload,
                exchange=queue.exchange,
                routing_key=queue.routing_key,
                serializer="json",
                delivery_mode=PERSISTENT_DELIVERY_MODE,
                declare=[queue],
                retry=False,
            )

    def broadcast(self, event: Dict[str, Any]) -> None:
        """Publish a status event on the fanout exchange."""
        with self._lock, self.guard("broadcast"):
            self._producer.publish(  # type: ignore[union-attr]
                event,
                exchange=self.log_exchange,
                routing_key="",
                serializer="json",
                retry=False,
            )

    def receiver(self, queue_name: str, prefetch: int = 1) -> Receiver:
        with self.guard(f"consume {queue_name}"):
            simple = self._connection.SimpleQueue(self.queues[queue_name], no_ack=False)  # type: ignore[union-attr]
            simple.consumer.qos(prefetch_count=prefetch)
        return Receiver(simple, self)

    def event_receiver(self) -> Receiver:
        """Private auto-deleted queue bound to the fanout exchange."""
        queue = Queue(
            f"{self.log_exchange.name}.{self.name}.{uuid4().hex[:8]}",
            exchange=self.log_exchange,
            routing_key="",
            exclusive=True,
            auto_delete=True,
            durable=False,
        )
        with self.guard("consume events"):
            simple = self._connection.SimpleQueue(queue, no_ack=False)  # type: ignore[union-attr]
        return Receiver(simple, self)

    def close(self) -> None:
        self._reset("closed")
