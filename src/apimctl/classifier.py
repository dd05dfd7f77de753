"""Change classification for the sync pipeline.

Decides per API whether the remote copy is absent, stale or equivalent.
Checks run in a fixed order and stop at the first hit:

1. forced run
2. remote API missing
3. display name differs
4. path differs
5. backend service URL differs
6. local spec modified within the freshness window
7. otherwise unchanged

Step 6 is a recency heuristic: no content hash is persisted across runs,
so a spec touched within the window is redeployed, and a change older
than the window is only picked up by a forced run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .config import DEFAULT_SPEC_FRESHNESS_HOURS
from .models import ApiDefinition, SyncDecision
from .remote_state import ApiManagementReader, RemoteBaseline, RemoteError

logger = logging.getLogger(__name__)

REASON_FORCED = "forced"
REASON_DISPLAY_NAME = "display name changed"
REASON_PATH = "path changed"
REASON_SERVICE_URL = "service url changed"
REASON_SPEC_MODIFIED = "spec recently modified"
REASON_SPEC_UNREADABLE = "spec not readable"
REASON_LOOKUP_FAILED = "remote lookup failed"
REASON_BASELINE_UNAVAILABLE = "remote baseline unavailable"


class ChangeClassifier:
    """Classify API definitions against the remote service."""

    def __init__(
        self,
        reader: ApiManagementReader,
        *,
        freshness_window: timedelta = timedelta(hours=DEFAULT_SPEC_FRESHNESS_HOURS),
        baseline: RemoteBaseline | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the classifier.

        Args:
            reader: Remote state reader for per-API lookups.
            freshness_window: Spec files modified more recently than this
                are treated as changed.
            baseline: Start-of-run listing. When given and available, APIs
                absent from it are classified without a per-API lookup.
            clock: Source of "now", for tests.
        """
        self._reader = reader
        self._freshness_window = freshness_window
        self._baseline = baseline
        self._clock = clock or (lambda: datetime.now(UTC))

    async def classify(self, definition: ApiDefinition, force: bool = False) -> SyncDecision:
        """Classify one definition. Never raises for remote failures."""
        api_id = definition.api_id

        if force:
            return SyncDecision.update(api_id, REASON_FORCED)

        if self._baseline is not None:
            if not self._baseline.available:
                return SyncDecision.create(api_id, REASON_BASELINE_UNAVAILABLE)
            if api_id not in self._baseline:
                return SyncDecision.create(api_id)

        try:
            remote = await self._reader.get_one(api_id)
        except RemoteError as e:
            logger.warning(
                "Remote lookup failed, scheduling deployment",
                extra={"api_id": api_id, "error": str(e), "kind": e.kind.value},
            )
            return SyncDecision.create(api_id, REASON_LOOKUP_FAILED)

        if remote is None:
            return SyncDecision.create(api_id)

        if definition.display_name != remote.display_name:
            logger.debug(
                "Display name differs",
                extra={
                    "api_id": api_id,
                    "desired": definition.display_name,
                    "actual": remote.display_name,
                },
            )
            return SyncDecision.update(api_id, REASON_DISPLAY_NAME)

        if definition.path != remote.path:
            logger.debug(
                "Path differs",
                extra={"api_id": api_id, "desired": definition.path, "actual": remote.path},
            )
            return SyncDecision.update(api_id, REASON_PATH)

        if (definition.service_url or "") != (remote.service_url or ""):
            logger.debug(
                "Service URL differs",
                extra={
                    "api_id": api_id,
                    "desired": definition.service_url,
                    "actual": remote.service_url,
                },
            )
            return SyncDecision.update(api_id, REASON_SERVICE_URL)

        spec_file = definition.spec_file
        if spec_file is not None:
            try:
                modified = datetime.fromtimestamp(spec_file.stat().st_mtime, tz=UTC)
            except OSError:
                # Let the executor report the missing spec as a failure
                return SyncDecision.update(api_id, REASON_SPEC_UNREADABLE)
            if self._clock() - modified < self._freshness_window:
                return SyncDecision.update(api_id, REASON_SPEC_MODIFIED)

        return SyncDecision.unchanged(api_id)
