"""Command line entry points for the pipeline's process roles.

Each role runs in its own process: ``worker`` and ``watermark-worker`` consume
jobs, ``retry-relay`` moves retries back to a main queue, and ``serve`` runs
the API together with the log broadcaster.
"""

from __future__ import annotations

import json
import signal
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from omegaconf import DictConfig

from .broker import BrokerConnection
from .configuration import load_settings, storage_path
from .job_store import JobStore
from .ledger import OutputLedger
from .retry_relay import RetryRelay
from .utils import configure_logging
from .watermark import WatermarkWorker
from .worker import ImageWorker

app = typer.Typer(
    name="image-pipeline",
    help="Image pipeline worker roles and job queries.",
    no_args_is_help=True,
)


class Stage(str, Enum):
    image = "image"
    watermark = "watermark"


_state: Dict[str, Any] = {}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML settings file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Image pipeline command line."""
    configure_logging("DEBUG" if verbose else "INFO")
    _state["config"] = config


def _settings(**overrides: Any) -> DictConfig:
    cleaned = {key: value for key, value in overrides.items() if value is not None}
    nested: Dict[str, Any] = {}
    for dotted, value in cleaned.items():
        section, _, key = dotted.partition(".")
        nested.setdefault(section, {})[key] = value
    try:
        return load_settings(nested or None, config_path=_state.get("config"))
    except ValueError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(1) from None


def _stop_on_signals() -> threading.Event:
    stop_event = threading.Event()

    def _handler(signum: int, frame: Any) -> None:
        typer.echo(f"Received signal {signum}, shutting down...", err=True)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    return stop_event


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(None, help="Transforms running at once."),
    worker_id: Optional[str] = typer.Option(None, help="Identifier reported in status events."),
) -> None:
    """Consume resize jobs from the main queue."""
    settings = _settings(**{"worker.concurrency": concurrency, "worker.worker_id": worker_id})
    ledger = OutputLedger(storage_path(settings, "ledger_dir"))
    ImageWorker(settings, BrokerConnection(settings, name="worker"), ledger).run(_stop_on_signals())


@app.command("watermark-worker")
def watermark_worker(
    concurrency: Optional[int] = typer.Option(None, help="Transforms running at once."),
    worker_id: Optional[str] = typer.Option(None, help="Identifier reported in status events."),
) -> None:
    """Consume watermark jobs."""
    settings = _settings(**{"worker.concurrency": concurrency, "worker.worker_id": worker_id})
    ledger = OutputLedger(storage_path(settings, "ledger_dir"))
    WatermarkWorker(settings, BrokerConnection(settings, name="watermark-worker"), ledger).run(_stop_on_signals())


@app.command("retry-relay")
def retry_relay(
    stage: Stage = typer.Option(Stage.image, help="Which stage's retry queue to relay."),
) -> None:
    """Forward retried jobs from a retry queue back to its main queue."""
    settings = _settings()
    if stage is Stage.image:
        source, target = settings.queues.retry, settings.queues.main
    else:
        source, target = settings.queues.watermark_retry, settings.queues.watermark
    relay = RetryRelay(
        BrokerConnection(settings, name=f"{stage.value}-relay"),
        source,
        target,
        poll_interval=settings.broker.poll_interval,
    )
    relay.run(_stop_on_signals())


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address."),
    port: int = typer.Option(3000, help="Bind port."),
) -> None:
    """Run the HTTP API and the log broadcaster."""
    import uvicorn

    uvicorn.run("image_pipeline_backend.main:app", host=host, port=port)


@app.command()
def jobs(limit: int = typer.Option(15, help="Number of jobs to show.")) -> None:
    """Print the most recently updated jobs as JSON."""
    settings = _settings()
    records = JobStore(storage_path(settings, "job_store")).load_all().values()
    ordered = sorted(records, key=lambda r: str(r.get("lastUpdated") or ""), reverse=True)
    typer.echo(json.dumps(ordered[: min(limit, settings.job_list_limit)], indent=2))


@app.command()
def dead() -> None:
    """Print jobs that exhausted their retries as JSON."""
    settings = _settings()
    records = JobStore(storage_path(settings, "job_store")).load_all().values()
    typer.echo(json.dumps([r for r in records if r.get("status") == "dead"], indent=2))


if __name__ == "__main__":
    app()
