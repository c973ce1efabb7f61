"""
Tests for the queue worker and its retry state machine.

Tests cover:
- Happy path (one attempt, processed output, input removed)
- Injected first-attempt failure followed by a successful retry
- Dead-lettering after the retry budget is spent
- Permanent failures skipping the retry queue
- Follow-up messages submitted before the acknowledgement
- Broker failures leaving the delivery unacknowledged
"""

from pathlib import Path

import pytest

from conftest import copy_transform
from image_pipeline_backend.errors import PermanentTransformError, QueueConnectivityError, TransientTransformError
from image_pipeline_backend.ledger import PROCESSED
from image_pipeline_backend.models import JobStatus
from image_pipeline_backend.retry_relay import RetryRelay
from image_pipeline_backend.worker import ImageWorker, marker_fault, no_faults


def always_failing(error):
    def _transform(source, destination):
        raise error

    return _transform


@pytest.fixture
def make_worker(settings, broker, ledger, executor, clock):
    def _make(**kwargs):
        kwargs.setdefault("executor", executor)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("worker_id", "w1")
        return ImageWorker(settings, broker, ledger, **kwargs)

    return _make


@pytest.fixture
def main_receiver(broker, settings):
    return broker.receiver(settings.queues.main)


class TestHappyPath:
    """A single upload processed on its first attempt."""

    def test_job_succeeds_on_first_attempt(
        self, dispatcher, make_worker, main_receiver, broker, ledger, stage_input, replay_events, store
    ):
        """The record ends in success with zero retries and a processed output."""
        item = stage_input("cat.png")
        result = dispatcher.submit_batch([item])
        job_id = result.queued[0].id

        worker = make_worker()
        worker.poll_once(main_receiver)

        assert broker.statuses(job_id) == [("queued", 0), ("processing", 0), ("success", 0)]
        success = broker.events[-1]
        assert success["workerId"] == "w1"
        assert success["duration"] >= 0
        assert (worker.output_dir / success["filename"]).exists()
        assert ledger.lookup(PROCESSED, "cat.png")["filename"] == success["filename"]
        assert main_receiver.deliveries[0].acked
        assert worker.in_flight == 0

        replay_events()
        record = store.get(job_id)
        assert record["status"] == "success"
        assert record["retries"] == 0
        assert record["originalName"] == "cat.png"
        assert record["processedFilename"] == success["filename"]

    def test_input_is_deleted_after_success(self, dispatcher, make_worker, main_receiver, stage_input):
        """The stored upload is removed once the output exists."""
        item = stage_input("dog.png")
        dispatcher.submit_batch([item])

        make_worker().poll_once(main_receiver)

        assert not Path(item.content_reference).exists()

    def test_resized_output_keeps_aspect_ratio(self, dispatcher, make_worker, main_receiver, broker, stage_input):
        """The default transform scales to the configured width."""
        from PIL import Image

        dispatcher.submit_batch([stage_input("wide.png")])
        worker = make_worker()
        worker.poll_once(main_receiver)

        with Image.open(worker.output_dir / broker.events[-1]["filename"]) as image:
            assert image.size == (20, 10)

    def test_input_deletion_failure_does_not_fail_job(self, dispatcher, make_worker, main_receiver, broker, tmp_path):
        """A leftover input is logged, the job still succeeds."""
        from image_pipeline_backend.dispatcher import InputArtifact

        source = tmp_path / "source.png"
        source.write_bytes(b"data")
        directory = tmp_path / "not-a-file"
        directory.mkdir()
        dispatcher.submit_batch(
            [InputArtifact(content_reference=str(directory), filename="not-a-file", original_name="odd.png")]
        )

        worker = make_worker(transform=lambda src, dst: copy_transform(source, dst))
        worker.poll_once(main_receiver)

        assert broker.events[-1]["status"] == "success"
        assert directory.exists()
        assert main_receiver.deliveries[0].acked


class TestRetries:
    """Failures, backoff timers and the retry queue."""

    def test_injected_failure_then_success(
        self, settings, dispatcher, make_worker, main_receiver, broker, clock, stage_input, replay_events, store
    ):
        """A first-attempt fault is retried once and then succeeds."""
        result = dispatcher.submit_batch([stage_input("fail-cat.png")])
        job_id = result.queued[0].id
        worker = make_worker(fault_injector=marker_fault("fail-"))
        relay = RetryRelay(broker, settings.queues.retry, settings.queues.main)
        retry_receiver = broker.receiver(settings.queues.retry)

        worker.poll_once(main_receiver)
        assert broker.statuses(job_id)[-1] == ("failed", 0)
        assert not main_receiver.deliveries[0].acked
        assert not broker.queues[settings.queues.retry]

        clock.advance(settings.retry.backoff_seconds)
        worker.poll_once(main_receiver)
        assert main_receiver.deliveries[0].acked
        assert broker.queues[settings.queues.retry][0]["retries"] == 1

        assert relay.poll_once(retry_receiver)
        worker.poll_once(main_receiver)

        assert broker.statuses(job_id) == [
            ("queued", 0),
            ("processing", 0),
            ("failed", 0),
            ("retried", 1),
            ("queued", 1),
            ("processing", 1),
            ("success", 1),
        ]
        failed = next(e for e in broker.events if e["status"] == "failed")
        assert "Injected failure" in failed["error"]

        replay_events()
        record = store.get(job_id)
        assert record["status"] == "success"
        assert record["retries"] == 1

    def test_retry_waits_for_backoff(self, dispatcher, make_worker, main_receiver, broker, clock, stage_input, settings):
        """Nothing reaches the retry queue before the backoff has elapsed."""
        dispatcher.submit_batch([stage_input("slow.png")])
        worker = make_worker(transform=always_failing(TransientTransformError("disk busy")))

        worker.poll_once(main_receiver)
        clock.advance(settings.retry.backoff_seconds - 0.5)
        worker.poll_once(main_receiver)

        assert not broker.queues[settings.queues.retry]
        assert worker.in_flight == 1

    def test_dead_after_retry_budget(
        self, settings, dispatcher, make_worker, main_receiver, broker, clock, stage_input, replay_events, store
    ):
        """Three failed attempts move the job to the dead queue with retries=3."""
        result = dispatcher.submit_batch([stage_input("broken.png")])
        job_id = result.queued[0].id
        worker = make_worker(transform=always_failing(TransientTransformError("encoder crashed")))
        relay = RetryRelay(broker, settings.queues.retry, settings.queues.main)
        retry_receiver = broker.receiver(settings.queues.retry)

        for _ in range(2):
            worker.poll_once(main_receiver)
            clock.advance(settings.retry.backoff_seconds)
            worker.poll_once(main_receiver)
            relay.poll_once(retry_receiver)
        worker.poll_once(main_receiver)

        dead_queue = broker.queues[settings.queues.dead]
        assert len(dead_queue) == 1
        dead = dead_queue[0]
        assert dead["jobId"] == job_id
        assert dead["retries"] == 3
        assert dead["error"] == "encoder crashed"
        assert dead["workerId"] == "w1"
        assert "failedAt" in dead
        assert broker.statuses(job_id)[-2:] == [("failed", 2), ("dead", 3)]
        assert all(d.acked for d in main_receiver.deliveries)

        replay_events()
        record = store.get(job_id)
        assert record["status"] == "dead"
        assert record["retries"] == 3
        assert record["error"] == "encoder crashed"

    def test_permanent_failure_skips_retries(self, settings, dispatcher, make_worker, main_receiver, broker, stage_input):
        """A permanent error goes straight to the dead queue at the current retry count."""
        result = dispatcher.submit_batch([stage_input("corrupt.png")])
        job_id = result.queued[0].id
        worker = make_worker(transform=always_failing(PermanentTransformError("not an image")))

        worker.poll_once(main_receiver)

        assert broker.statuses(job_id)[-2:] == [("failed", 0), ("dead", 0)]
        assert not broker.queues[settings.queues.retry]
        assert broker.queues[settings.queues.dead][0]["retries"] == 0
        assert main_receiver.deliveries[0].acked

    def test_corrupt_input_is_permanent(self, settings, dispatcher, make_worker, main_receiver, broker, stage_input):
        """Content Pillow cannot identify is never retried."""
        dispatcher.submit_batch([stage_input("garbage.png", content=b"not really a png")])

        make_worker().poll_once(main_receiver)

        assert broker.events[-1]["status"] == "dead"
        assert not broker.queues[settings.queues.retry]

    def test_fault_injection_only_on_first_attempt(self, dispatcher, make_worker, main_receiver, broker, stage_input):
        """A job that already carries retries is not faulted again."""
        item = stage_input("fail-again.png")
        dispatcher.submit_batch([item])
        payload = broker.queues["image_jobs"].popleft()
        broker.queues["image_jobs"].append({**payload, "retries": 1})

        make_worker(fault_injector=marker_fault("fail-")).poll_once(main_receiver)

        assert broker.events[-1]["status"] == "success"

    def test_no_faults_predicate(self):
        """The default predicate never fails anything."""
        assert no_faults(None) is False


class TestOutputRecording:
    """Faults while recording a produced output."""

    def test_ledger_write_failure_is_retried(
        self, settings, dispatcher, make_worker, main_receiver, broker, ledger, clock, stage_input, monkeypatch
    ):
        """A disk fault in the ledger fails the attempt instead of stopping the worker."""
        result = dispatcher.submit_batch([stage_input("cat.png")])
        job_id = result.queued[0].id

        def disk_full(namespace, original_name, filename):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(ledger, "record", disk_full)
        worker = make_worker()
        worker.poll_once(main_receiver)

        failed = broker.events[-1]
        assert (failed["status"], failed["retries"]) == ("failed", 0)
        assert "Could not record output" in failed["error"]
        assert worker.in_flight == 1
        assert not main_receiver.deliveries[0].acked

        monkeypatch.undo()
        clock.advance(settings.retry.backoff_seconds)
        worker.poll_once(main_receiver)
        assert broker.queues[settings.queues.retry][0]["retries"] == 1
        assert broker.statuses(job_id)[-1] == ("retried", 1)


class TestAcknowledgementOrder:
    """Follow-up messages are durable before the original is acknowledged."""

    def test_retry_submitted_before_ack(self, settings, dispatcher, make_worker, main_receiver, broker, clock, stage_input):
        """The retry message and the retried event precede the ack."""
        dispatcher.submit_batch([stage_input("flaky.png")])
        worker = make_worker(transform=always_failing(TransientTransformError("timeout")))

        worker.poll_once(main_receiver)
        clock.advance(settings.retry.backoff_seconds)
        worker.poll_once(main_receiver)

        kinds = [(op[0], op[1]) for op in broker.ops]
        retry_index = kinds.index(("submit", settings.queues.retry))
        retried_index = kinds.index(("event", "retried"))
        ack_index = kinds.index(("ack", settings.queues.main))
        assert retry_index < retried_index < ack_index

    def test_dead_letter_submitted_before_ack(self, settings, dispatcher, make_worker, main_receiver, broker, stage_input):
        """The dead message precedes the ack."""
        dispatcher.submit_batch([stage_input("bad.png")])
        make_worker(transform=always_failing(PermanentTransformError("bad"))).poll_once(main_receiver)

        kinds = [(op[0], op[1]) for op in broker.ops]
        assert kinds.index(("submit", settings.queues.dead)) < kinds.index(("ack", settings.queues.main))

    def test_success_event_precedes_ack(self, settings, dispatcher, make_worker, main_receiver, broker, stage_input):
        """The success event is published before the delivery is acknowledged."""
        dispatcher.submit_batch([stage_input("ok.png")])
        make_worker().poll_once(main_receiver)

        kinds = [(op[0], op[1]) for op in broker.ops]
        assert kinds.index(("event", "success")) < kinds.index(("ack", settings.queues.main))

    def test_broker_failure_leaves_delivery_unacked(
        self, settings, dispatcher, make_worker, main_receiver, broker, clock, stage_input
    ):
        """If the retry queue refuses the message, the original stays unacknowledged."""
        dispatcher.submit_batch([stage_input("stuck.png")])
        worker = make_worker(transform=always_failing(TransientTransformError("timeout")))
        worker.poll_once(main_receiver)

        broker.fail_queues.add(settings.queues.retry)
        clock.advance(settings.retry.backoff_seconds)
        with pytest.raises(QueueConnectivityError):
            worker.poll_once(main_receiver)

        assert not main_receiver.deliveries[0].acked
        assert "retried" not in [status for status, _ in broker.statuses()]


class TestMalformedMessages:
    """Messages that are not job descriptors."""

    def test_malformed_message_is_dead_lettered(self, settings, make_worker, main_receiver, broker):
        """A payload missing required fields ends on the dead queue and is acknowledged."""
        broker.queues[settings.queues.main].append({"unexpected": True})

        make_worker().poll_once(main_receiver)

        dead = broker.queues[settings.queues.dead][0]
        assert dead["payload"] == {"unexpected": True}
        assert "Malformed job message" in dead["error"]
        assert main_receiver.deliveries[0].acked
        assert broker.events == []


class TestConcurrency:
    """Capacity accounting in the receive loop."""

    def test_does_not_receive_beyond_concurrency(self, settings, dispatcher, make_worker, main_receiver, broker, stage_input):
        """With every slot waiting on a backoff, new deliveries stay queued."""
        dispatcher.submit_batch([stage_input(f"fail-{n}.png") for n in range(3)])
        worker = make_worker(transform=always_failing(TransientTransformError("timeout")))

        for _ in range(3):
            worker.poll_once(main_receiver)

        assert worker.in_flight == settings.worker.concurrency
        assert len(broker.queues[settings.queues.main]) == 1
