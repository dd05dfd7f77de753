"""Temporary per-API deployment manifests.

Each deployment merges the shared API template with that API's parameters
into a manifest file on disk. The deployment is submitted from the manifest
and the file is removed on every exit path. The registry also tracks live
manifests so an interrupted run can sweep whatever is still in flight.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MANIFEST_PREFIX = ".apim-manifest"


class ArtifactRegistry:
    """Creates and tracks temporary manifest files in one work directory."""

    def __init__(self, work_dir: Path) -> None:
        self._work_dir = work_dir
        self._active: set[Path] = set()
        self._lock = threading.Lock()

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    @property
    def active(self) -> list[Path]:
        """Manifests written but not yet removed."""
        with self._lock:
            return sorted(self._active)

    def manifest_path(self, api_id: str) -> Path:
        # pid + random token keep concurrent runs and tasks apart
        token = secrets.token_hex(4)
        return self._work_dir / f"{MANIFEST_PREFIX}-{api_id}-{os.getpid()}-{token}.json"

    @contextmanager
    def manifest(self, api_id: str, content: dict[str, Any]) -> Iterator[Path]:
        """Write a manifest for the duration of the block.

        Raises:
            OSError: If the manifest cannot be written.
        """
        path = self.manifest_path(api_id)
        self._work_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._active.add(path)
        try:
            path.write_text(json.dumps(content, indent=2), encoding="utf-8")
            logger.debug("Wrote deployment manifest", extra={"api_id": api_id, "path": str(path)})
            yield path
        finally:
            self._discard(path)

    def _discard(self, path: Path) -> None:
        with self._lock:
            self._active.discard(path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(
                "Failed to remove deployment manifest",
                extra={"path": str(path), "error": str(e)},
            )

    def cleanup(self) -> int:
        """Remove every manifest still registered.

        Returns:
            Number of manifests removed.
        """
        with self._lock:
            leftover = list(self._active)
        for path in leftover:
            self._discard(path)
        if leftover:
            logger.info("Removed leftover deployment manifests", extra={"count": len(leftover)})
        return len(leftover)
