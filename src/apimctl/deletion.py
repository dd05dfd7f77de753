"""Deletion of declared APIs from the remote service.

Deletion is idempotent: an API that is already gone is Skipped, never
Failed. Destructive runs pass a single confirmation gate before the first
delete; ``force`` and dry runs bypass it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .models import ApiDefinition, DeploymentOutcome, OutcomeStatus
from .remote_state import ApiManagementReader, RemoteError, RemoteErrorKind

logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised when the operator declines a destructive action."""

    pass


@dataclass(frozen=True)
class ApiPreview:
    """Existence of one declared API before deletion.

    ``exists`` is None when the lookup itself failed.
    """

    api_id: str
    display_name: str
    exists: bool | None
    error: str | None = None

    @property
    def label(self) -> str:
        if self.exists is None:
            return f"UNKNOWN ({self.error})"
        return "exists" if self.exists else "NOT FOUND"


# Receives the preview, returns True to proceed
ConfirmCallback = Callable[[Sequence[ApiPreview]], bool]


class DeletionEngine:
    """Removes declared APIs with existence pre-checks."""

    def __init__(self, reader: ApiManagementReader) -> None:
        self._reader = reader

    async def preview(self, definitions: Sequence[ApiDefinition]) -> list[ApiPreview]:
        """Look up every declared API without changing anything."""
        previews = []
        for definition in definitions:
            try:
                remote = await self._reader.get_one(definition.api_id)
            except RemoteError as e:
                previews.append(
                    ApiPreview(definition.api_id, definition.display_name, None, str(e))
                )
                continue
            previews.append(
                ApiPreview(definition.api_id, definition.display_name, remote is not None)
            )
        return previews

    async def delete(
        self, definition: ApiDefinition, *, dry_run: bool = False
    ) -> DeploymentOutcome:
        """Delete one API. Never raises for remote failures."""
        api_id = definition.api_id

        try:
            remote = await self._reader.get_one(api_id)
        except RemoteError as e:
            logger.error("Existence check failed", extra={"api_id": api_id, "error": str(e)})
            return DeploymentOutcome.failed(api_id, str(e))

        if remote is None:
            logger.info("API not found, skipping", extra={"api_id": api_id})
            return DeploymentOutcome(api_id, OutcomeStatus.SKIPPED, "not found")

        if dry_run:
            logger.info("[DRY RUN] Would delete API", extra={"api_id": api_id})
            return DeploymentOutcome.planned(api_id, remote.display_name)

        try:
            await self._reader.delete_api(api_id)
        except RemoteError as e:
            if e.kind == RemoteErrorKind.NOT_FOUND:
                # Removed between the check and the delete
                return DeploymentOutcome(api_id, OutcomeStatus.SKIPPED, "not found")
            logger.error("API deletion failed", extra={"api_id": api_id, "error": str(e)})
            return DeploymentOutcome.failed(api_id, str(e))

        logger.info("API deleted", extra={"api_id": api_id})
        return DeploymentOutcome(api_id, OutcomeStatus.DELETED)

    async def delete_many(
        self,
        definitions: Sequence[ApiDefinition],
        *,
        dry_run: bool = False,
        force: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> list[DeploymentOutcome]:
        """Delete a batch sequentially, after one confirmation for the run.

        Raises:
            OperationCancelled: If confirmation is required and not given.
        """
        if definitions and not (dry_run or force):
            previews = await self.preview(definitions)
            if any(p.exists is not False for p in previews):
                if confirm is None or not confirm(previews):
                    raise OperationCancelled("Deletion cancelled by operator")
            else:
                logger.info("None of the declared APIs exist, no confirmation needed")

        return [await self.delete(d, dry_run=dry_run) for d in definitions]
