"""
Durable side-table of job records.

The store mirrors job state for the query surface; the event stream stays the
source of truth. It therefore favours availability: a missing or corrupt file
reads as an empty mapping and a failed write is logged, never raised.

Every write rewrites the whole JSON file atomically (temporary file, fsync,
``os.replace``), so a crash mid-write leaves the previous content intact.

The store does no locking of its own. Exactly one component writes it (the log
broadcaster); readers may load it at any time.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import StoreIOError
from .utils import atomic_write_json

logger = logging.getLogger(__name__)

JobMapping = Dict[str, Dict[str, Any]]

# Fields whose first known value is kept for the lifetime of the record
STICKY_FIELDS = ("id", "originalName", "createdAt", "kind")


def merge_record(current: Dict[str, Any], partial: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge ``partial`` into ``current`` without destroying known values.

    ``None`` and empty strings never overwrite anything, and sticky fields keep
    the first non-empty value they were given.
    """
    merged = dict(current)
    for key, value in partial.items():
        if value is None or value == "":
            continue
        if key in STICKY_FIELDS and merged.get(key) not in (None, ""):
            continue
        merged[key] = value
    return merged


class JobStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> JobMapping:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StoreIOError(f"Cannot read job store {self.path}: {exc}") from exc

        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreIOError(f"Job store {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreIOError(f"Job store {self.path} does not hold a mapping")
        return data

    def _write(self, jobs: JobMapping) -> None:
        try:
            atomic_write_json(self.path, jobs)
        except (OSError, TypeError, ValueError) as exc:
            raise StoreIOError(f"Cannot write job store {self.path}: {exc}") from exc

    def load_all(self) -> JobMapping:
        """Return every record keyed by job id, or ``{}`` if the file is unusable."""
        try:
            return self._read()
        except StoreIOError as exc:
            logger.error("Failed to read job store, returning empty: %s", exc)
            return {}

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.load_all().get(job_id)

    def merge(self, job_id: str, partial: Dict[str, Any]) -> JobMapping:
        """
        Read-modify-write one record.

        Args:
            job_id: Record key; also stored as the record's ``id``
            partial: Fields to merge (see ``merge_record``)

        Returns:
            The full mapping after the merge, whether or not it reached disk
        """
        jobs = self.load_all()
        jobs[job_id] = merge_record(jobs.get(job_id, {}), {"id": job_id, **partial})
        try:
            self._write(jobs)
        except StoreIOError as exc:
            logger.error("Failed to persist job %s, keeping in-memory copy: %s", job_id, exc)
        return jobs

    def reset_all(self) -> JobMapping:
        """Replace the store with an empty mapping. Output files are untouched."""
        try:
            self._write({})
        except StoreIOError as exc:
            logger.error("Failed to reset job store: %s", exc)
        return {}
