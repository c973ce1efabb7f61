"""
Image Pipeline Backend - asynchronous image processing over a message broker

This package runs an at-least-once job pipeline for uploaded images:

- Batched uploads are turned into durable queue messages, one job per image
- Competing workers resize images with bounded retries and a dead-letter queue
- A retry relay returns failed jobs to the main queue after the worker's backoff
- Every status change is broadcast on a fanout topic
- A log broadcaster folds those events into a JSON job store and pushes them
  to live dashboard subscribers
- A second stage watermarks already processed outputs on request

Key Components:
    - main: FastAPI application (uploads, job queries, resets, websocket log stream)
    - cli: typer entry points for the worker, watermark worker and retry relay roles
    - dispatcher: Job submission and duplicate suppression
    - worker / watermark: Queue consumers and the per-job retry state machine
    - retry_relay: Retry queue to main queue forwarding
    - broadcaster: Status event merging and live fan-out
    - job_store / ledger: Durable job records and the index of produced outputs
    - broker: kombu connection manager for queues and the fanout exchange
    - configuration: OmegaConf settings loading and merging logic

Usage:
    Run the API server with:
        uvicorn image_pipeline_backend.main:app --host 0.0.0.0 --port 3000

    Run the other roles in their own processes:
        image-pipeline worker
        image-pipeline retry-relay --stage image
        image-pipeline watermark-worker
        image-pipeline retry-relay --stage watermark
"""
