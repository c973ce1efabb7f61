from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List
from uuid import uuid4

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .configuration import load_settings, settings_container
from .dispatcher import InputArtifact
from .errors import BatchValidationError, QueueConnectivityError
from .job_manager import JobManager
from .models import DispatchResult, JobRecord, OutputItem, ResetResult
from .utils import allowed_image_extensions, configure_logging, sanitize_label, split_extension

logger = logging.getLogger(__name__)

settings = load_settings()
job_manager = JobManager.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    job_manager.start()
    try:
        yield
    finally:
        job_manager.stop()


app = FastAPI(title="Image Pipeline API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/outputs/processed", StaticFiles(directory=job_manager.processed_root), name="processed")
app.mount("/outputs/watermarked", StaticFiles(directory=job_manager.watermarked_root), name="watermarked")


def get_job_manager() -> JobManager:
    return job_manager


@app.get("/healthz")
def healthcheck(manager: JobManager = Depends(get_job_manager)) -> Dict[str, str]:
    return {"status": "ok", "broker": manager.broker_state()}


@app.get("/config/defaults")
def get_config_defaults(manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    return settings_container(manager.settings)


def _stored_name(filename: str) -> str:
    stem, suffix = split_extension(filename)
    if suffix not in allowed_image_extensions():
        suffix = ".jpg"
    return f"{uuid4().hex}-{sanitize_label(stem, fallback='image')}{suffix}"


async def _store_upload(file: UploadFile, upload_root: Path) -> Path:
    destination = upload_root / _stored_name(file.filename or "image.jpg")
    with destination.open("wb") as buffer:
        while chunk := await file.read(8 * 1024 * 1024):
            buffer.write(chunk)
    await file.close()
    return destination


@app.post("/upload", response_model=DispatchResult)
async def upload_images(
    images: List[UploadFile] = File(...),
    manager: JobManager = Depends(get_job_manager),
) -> DispatchResult:
    try:
        manager.dispatcher.validate_batch(images)
    except BatchValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    inputs = []
    for image in images:
        if not image.filename:
            raise HTTPException(status_code=400, detail="Every image must have a filename")
        stored = await _store_upload(image, manager.upload_root)
        inputs.append(InputArtifact(content_reference=str(stored), filename=stored.name, original_name=image.filename))

    try:
        result = manager.submit_uploads(inputs)
    except BatchValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except QueueConnectivityError as exc:
        logger.error("Upload rejected, broker unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Job queue unavailable, try again later") from exc

    if result.failed and not result.queued:
        raise HTTPException(status_code=503, detail="Job queue unavailable, try again later")
    return result


@app.post("/watermark", response_model=DispatchResult)
def request_watermarks(manager: JobManager = Depends(get_job_manager)) -> DispatchResult:
    try:
        return manager.request_watermarks()
    except QueueConnectivityError as exc:
        raise HTTPException(status_code=503, detail="Job queue unavailable, try again later") from exc


@app.get("/jobs", response_model=list[JobRecord], response_model_exclude_none=True)
def list_jobs(limit: int | None = None, manager: JobManager = Depends(get_job_manager)) -> list[JobRecord]:
    return manager.list_jobs(limit)


@app.get("/jobs/{job_id}", response_model=JobRecord, response_model_exclude_none=True)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobRecord:
    job = manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/dead", response_model=list[JobRecord], response_model_exclude_none=True)
def list_dead(manager: JobManager = Depends(get_job_manager)) -> list[JobRecord]:
    return manager.list_dead()


@app.get("/processed", response_model=list[OutputItem])
def list_processed(manager: JobManager = Depends(get_job_manager)) -> list[OutputItem]:
    return manager.list_outputs()


@app.post("/clear-jobs", response_model=ResetResult)
def clear_jobs(manager: JobManager = Depends(get_job_manager)) -> ResetResult:
    return manager.reset_jobs()


@app.post("/clear-processed", response_model=ResetResult)
def clear_processed(manager: JobManager = Depends(get_job_manager)) -> ResetResult:
    try:
        return manager.reset_outputs()
    except OSError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.websocket("/ws/logs")
async def job_log_stream(websocket: WebSocket, manager: JobManager = Depends(get_job_manager)) -> None:
    await websocket.accept()
    loop = asyncio.get_running_loop()
    events: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
    # The broadcaster emits from its own thread
    unsubscribe = manager.subscribe(lambda event: loop.call_soon_threadsafe(events.put_nowait, event))
    logger.info("Client connected to job log stream")

    async def forward_events() -> None:
        while True:
            event = await events.get()
            await websocket.send_json({"type": "job_log", "data": event})

    sender = asyncio.create_task(forward_events())
    try:
        # Client messages are ignored; receiving is how a disconnect is noticed
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Client disconnected from job log stream")
    finally:
        sender.cancel()
        unsubscribe()
