"""
Pytest configuration and fixtures for Image Pipeline Backend tests.
"""

import os
import shutil
import tempfile
from collections import defaultdict, deque
from concurrent.futures import Future
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="pipeline_test_data_")
os.environ.pop("PIPELINE_CONFIG", None)

from image_pipeline_backend.broadcaster import LogBroadcaster
from image_pipeline_backend.broker import ConnectionState
from image_pipeline_backend.configuration import load_settings
from image_pipeline_backend.dispatcher import Dispatcher, InputArtifact
from image_pipeline_backend.errors import QueueConnectivityError
from image_pipeline_backend.job_manager import JobManager
from image_pipeline_backend.job_store import JobStore
from image_pipeline_backend.ledger import OutputLedger
from image_pipeline_backend.main import app, get_job_manager


class FakeDelivery:
    def __init__(self, broker, queue_name, payload):
        self.broker = broker
        self.queue_name = queue_name
        self.payload = payload
        self.acked = False

    def ack(self):
        assert not self.acked, "delivery acknowledged twice"
        self.acked = True
        self.broker.ops.append(("ack", self.queue_name, self.payload))

    def reject(self, requeue=False):
        self.acked = True


class FakeReceiver:
    def __init__(self, broker, queue_name):
        self.broker = broker
        self.queue_name = queue_name
        self.deliveries = []

    def get(self, timeout=0.0):
        pending = self.broker.queues[self.queue_name]
        if not pending:
            return None
        delivery = FakeDelivery(self.broker, self.queue_name, pending.popleft())
        self.deliveries.append(delivery)
        return delivery

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FakeBroker:
    """In-memory stand-in for BrokerConnection that records every operation in order."""

    def __init__(self):
        self.state = ConnectionState.READY
        self.queues = defaultdict(deque)
        self.events = []
        self.ops = []
        self.fail_queues = set()

    def connect(self, stop_event=None):
        self.state = ConnectionState.READY

    def ensure_ready(self):
        if self.state is not ConnectionState.READY:
            raise QueueConnectivityError(f"Broker connection 'fake' is {self.state.value}")

    def heartbeat(self):
        pass

    def submit(self, queue_name, payload):
        self.ensure_ready()
        if queue_name in self.fail_queues:
            raise QueueConnectivityError(f"Broker submit to {queue_name} failed")
        self.queues[queue_name].append(payload)
        self.ops.append(("submit", queue_name, payload))

    def broadcast(self, event):
        self.ensure_ready()
        self.events.append(event)
        self.ops.append(("event", event["status"], event))

    def receiver(self, queue_name, prefetch=1):
        return FakeReceiver(self, queue_name)

    def event_receiver(self):
        return FakeReceiver(self, "__events__")

    def close(self):
        self.state = ConnectionState.DISCONNECTED

    def statuses(self, job_id=None):
        return [(e["status"], e["retries"]) for e in self.events if job_id is None or e["jobId"] == job_id]


class ImmediateExecutor:
    """Runs submitted callables inline and hands back completed futures."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait=True):
        pass


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_png(size=(40, 20), color=(200, 30, 30)):
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(scope="session", autouse=True)
def app_data_dir():
    """Remove the application data directory after the session."""
    data_dir = os.environ["DATA_DIR"]
    yield data_dir
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a per-test data directory, ignoring the process environment."""
    return load_settings(
        {
            "storage": {"data_dir": str(tmp_path)},
            "retry": {"max_retries": 3, "backoff_seconds": 3.0},
            "worker": {"concurrency": 2, "worker_id": "worker-test", "resize_width": 20},
            "max_batch_size": 5,
        },
        environ={},
    )


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor():
    return ImmediateExecutor()


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "jobs.json")


@pytest.fixture
def ledger(tmp_path):
    return OutputLedger(tmp_path / "ledger")


@pytest.fixture
def broadcaster(store, settings):
    return LogBroadcaster(store, settings)


@pytest.fixture
def dispatcher(settings, broker, ledger, broadcaster):
    return Dispatcher(settings, broker, ledger, broadcaster)


@pytest.fixture
def manager(settings, store, ledger, broadcaster, dispatcher):
    return JobManager(settings, store, ledger, broadcaster, dispatcher)


@pytest.fixture
def sample_png():
    """Bytes of a small valid PNG image."""
    return make_png()


@pytest.fixture
def stage_input(manager, sample_png):
    """Store an upload on disk and return it as an input artifact."""

    def _stage(original_name, content=None):
        path = manager.upload_root / f"stored-{original_name}"
        path.write_bytes(content if content is not None else sample_png)
        return InputArtifact(content_reference=str(path), filename=path.name, original_name=original_name)

    return _stage


@pytest.fixture
def replay_events(broker, broadcaster):
    """Feed every event published so far through the log broadcaster."""

    def _replay():
        for event in broker.events:
            broadcaster.handle_event(event)

    return _replay


@pytest.fixture
def client(manager):
    """Create a test client for the FastAPI app backed by the in-memory broker."""
    app.dependency_overrides[get_job_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


def copy_transform(source: Path, destination: Path) -> None:
    shutil.copyfile(source, destination)
