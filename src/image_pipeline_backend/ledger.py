"""
Index of produced outputs keyed by normalised original name.

Each entry is a small JSON file of its own, so concurrent writers in different
processes never overwrite each other's entries, and ``claim`` uses exclusive
file creation to let exactly one caller reserve a name.

Namespaces:
    processed         outputs of the resize stage
    watermarked       outputs of the watermark stage
    watermark-claims  watermark jobs requested but not yet finished
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils import atomic_write_json, ensure_directory, utc_now_iso

logger = logging.getLogger(__name__)

PROCESSED = "processed"
WATERMARKED = "watermarked"
WATERMARK_CLAIMS = "watermark-claims"


def normalize_name(name: str) -> str:
    return name.strip().lower()


class OutputLedger:
    def __init__(self, root: Path) -> None:
        self.root = root

    def _namespace_dir(self, namespace: str) -> Path:
        return self.root / namespace

    def _entry_path(self, namespace: str, original_name: str) -> Path:
        digest = hashlib.sha1(normalize_name(original_name).encode("utf-8")).hexdigest()
        return self._namespace_dir(namespace) / f"{digest}.json"

    @staticmethod
    def _entry(original_name: str, filename: str) -> Dict[str, Any]:
        return {
            "originalName": original_name,
            "key": normalize_name(original_name),
            "filename": filename,
            "recordedAt": utc_now_iso(),
        }

    def record(self, namespace: str, original_name: str, filename: str) -> None:
        """Create or replace the entry for ``original_name``."""
        atomic_write_json(self._entry_path(namespace, original_name), self._entry(original_name, filename))

    def claim(self, namespace: str, original_name: str, filename: str) -> bool:
        """Reserve ``original_name``; returns False if someone already holds it."""
        path = self._entry_path(namespace, original_name)
        ensure_directory(path.parent)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(self._entry(original_name, filename), handle)
        return True

    def release(self, namespace: str, original_name: str) -> None:
        self._entry_path(namespace, original_name).unlink(missing_ok=True)

    def contains(self, namespace: str, original_name: str) -> bool:
        return self._entry_path(namespace, original_name).exists()

    def lookup(self, namespace: str, original_name: str) -> Optional[Dict[str, Any]]:
        return self._load(self._entry_path(namespace, original_name))

    def entries(self, namespace: str) -> List[Dict[str, Any]]:
        directory = self._namespace_dir(namespace)
        if not directory.exists():
            return []
        found = []
        for path in sorted(directory.glob("*.json")):
            entry = self._load(path)
            if entry is not None:
                found.append(entry)
        return found

    def reset(self, namespace: str) -> int:
        directory = self._namespace_dir(namespace)
        if not directory.exists():
            return 0
        removed = 0
        for path in directory.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    @staticmethod
    def _load(path: Path) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            # A claim being written concurrently can be briefly empty
            logger.debug("Skipping unreadable ledger entry %s: %s", path, exc)
            return None
