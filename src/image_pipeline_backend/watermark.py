"""
Watermark stage.

Runs the same state machine as the resize stage against already produced
outputs. A watermark job's ``filename`` is the processed output it refers to
and the watermarked copy keeps that name in its own directory, so the codec
(and therefore the encoder settings) carry over. The job ends in
``watermarked`` rather than ``success``.
"""

from __future__ import annotations

import logging
from typing import Any

from omegaconf import DictConfig

from .broker import BrokerConnection
from .configuration import storage_path
from .ledger import WATERMARK_CLAIMS, WATERMARKED, OutputLedger
from .models import JobDescriptor, JobKind, JobStatus
from .transforms import watermark_image
from .worker import PipelineWorker, fault_injector_from_settings

logger = logging.getLogger(__name__)


class WatermarkWorker(PipelineWorker):
    kind = JobKind.WATERMARK
    success_status = JobStatus.WATERMARKED
    id_prefix = "wm"

    def __init__(self, settings: DictConfig, broker: BrokerConnection, ledger: OutputLedger, **kwargs: Any) -> None:
        kwargs.setdefault("transform", watermark_image(settings.watermark))
        kwargs.setdefault("queue", settings.queues.watermark)
        kwargs.setdefault("retry_queue", settings.queues.watermark_retry)
        kwargs.setdefault("output_dir", storage_path(settings, "watermarked_dir"))
        kwargs.setdefault("fault_injector", fault_injector_from_settings(settings))
        super().__init__(settings, broker, **kwargs)
        self._ledger = ledger

    def output_name(self, descriptor: JobDescriptor) -> str:
        return descriptor.filename

    def record_output(self, descriptor: JobDescriptor, output_name: str) -> None:
        self._ledger.record(WATERMARKED, descriptor.original_name, output_name)

    def on_dead(self, descriptor: JobDescriptor) -> None:
        # Let a later request try this output again
        self._ledger.release(WATERMARK_CLAIMS, descriptor.original_name)
        logger.info("Released watermark claim for %s", descriptor.original_name)
