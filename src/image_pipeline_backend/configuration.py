from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/pipeline.yaml" for parent in _HERE.parents[:5]]

# Environment variables recognised on top of the YAML file
ENV_OVERRIDES: Dict[str, str] = {
    "RABBIT_URL": "broker.url",
    "RABBIT_HEARTBEAT": "broker.heartbeat",
    "MAX_UPLOAD_COUNT": "max_batch_size",
    "MAX_RETRIES": "retry.max_retries",
    "RETRY_DELAY_SECONDS": "retry.backoff_seconds",
    "WORKER_ID": "worker.worker_id",
    "WORKER_CONCURRENCY": "worker.concurrency",
    "FAULT_MARKER": "worker.fault_marker",
    "DATA_DIR": "storage.data_dir",
    "WATERMARK_QUEUE": "queues.watermark",
}

NOTES = {
    "retry.max_retries": "Total attempts per job, the first one included.",
    "retry.backoff_seconds": "Fixed delay before a failed job is handed to the retry queue.",
    "worker.fault_marker": "Fails the first attempt of jobs whose original name contains this text; empty disables it.",
    "max_batch_size": "Maximum number of images accepted by a single upload.",
}


@dataclass
class BrokerConfig:
    url: str = "amqp://localhost"
    heartbeat: int = 30
    reconnect_delay: float = 2.0
    poll_interval: float = 1.0
    confirm_publish: bool = True


@dataclass
class QueueNames:
    main: str = "image_jobs"
    retry: str = "image_retry_jobs"
    dead: str = "dead_jobs"
    watermark: str = "watermark_jobs"
    watermark_retry: str = "watermark_retry_jobs"
    log_exchange: str = "logs"


@dataclass
class RetryPolicy:
    max_retries: int = 3
    backoff_seconds: float = 3.0


@dataclass
class StorageConfig:
    data_dir: str = "."
    job_store: str = "jobs.json"
    upload_dir: str = "uploads"
    processed_dir: str = "processed"
    watermarked_dir: str = "watermarked"
    ledger_dir: str = "ledger"


@dataclass
class WorkerConfig:
    concurrency: int = 2
    worker_id: Optional[str] = None
    fault_marker: str = ""
    resize_width: int = 800


@dataclass
class WatermarkConfig:
    text: str = "@watermark"
    step_x: int = 200
    step_y: int = 120
    offset_y: int = 40
    font_size: int = 36
    opacity: float = 0.3
    jpeg_quality: int = 90
    webp_quality: int = 90
    png_compress_level: int = 9


@dataclass
class PipelineSettings:
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    queues: QueueNames = field(default_factory=QueueNames)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    storage: StorageConfig = field(default_factory=StorageConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    watermark: WatermarkConfig = field(default_factory=WatermarkConfig)
    max_batch_size: int = 20
    job_list_limit: int = 200


def find_config_file() -> Optional[Path]:
    explicit = os.environ.get("PIPELINE_CONFIG")
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"PIPELINE_CONFIG points to a missing file: {path}")
        return path
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


def _env_overrides(environ: Mapping[str, str]) -> DictConfig:
    overrides = OmegaConf.create()
    for variable, key in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value not in (None, ""):
            OmegaConf.update(overrides, key, value, force_add=True)
    return overrides


def validate_settings(settings: DictConfig) -> None:
    if settings.retry.max_retries < 1:
        raise ValueError("retry.max_retries must be at least 1")
    if settings.retry.backoff_seconds < 0:
        raise ValueError("retry.backoff_seconds cannot be negative")
    if settings.max_batch_size < 1:
        raise ValueError("max_batch_size must be at least 1")
    if settings.worker.concurrency < 1:
        raise ValueError("worker.concurrency must be at least 1")


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """
    Build the runtime settings.

    Layers, lowest precedence first: structured defaults, the YAML config file,
    environment variables (a ``.env`` file is honoured) and explicit overrides.
    The result keeps the structured schema, so type errors surface here.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    base = OmegaConf.structured(PipelineSettings)
    layers = []
    path = config_path or find_config_file()
    if path is not None:
        layers.append(OmegaConf.load(path))
    layers.append(_env_overrides(environ))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    settings = OmegaConf.merge(base, *layers)
    validate_settings(settings)  # type: ignore[arg-type]
    return settings  # type: ignore[return-value]


def storage_path(settings: DictConfig, name: str) -> Path:
    """Resolve one of the ``storage`` entries against ``storage.data_dir``."""
    return (Path(settings.storage.data_dir) / settings.storage[name]).resolve()


def settings_container(settings: DictConfig) -> Dict[str, Any]:
    return OmegaConf.to_container(settings, resolve=True, enum_to_str=True)  # type: ignore[return-value]
