"""Sync, deploy and destroy pipelines for one environment.

Each pipeline loads the API document first and fails before any remote
call if it is invalid. Per-API failures never stop a run; they are
collected into the returned RunSummary.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

from azure.core.credentials import TokenCredential

from .classifier import ChangeClassifier
from .config import Config
from .config_loader import ApiConfigDocument, load_api_config
from .credentials import get_credential
from .deletion import ConfirmCallback, DeletionEngine
from .executor import DeploymentExecutor, ExecutionMode
from .manifest import ArtifactRegistry
from .models import (
    ApiDefinition,
    DeploymentOutcome,
    Operation,
    RunSummary,
    ServiceRef,
    SyncDecision,
)
from .remote_state import (
    ApiManagementReader,
    RemoteBaseline,
    RemoteError,
    RemoteErrorKind,
    load_baseline,
)
from .reporter import summarize
from .validation import CheckStatus, preflight

logger = logging.getLogger(__name__)


class ApiPipeline:
    """Runs the API pipelines against one environment's APIM service."""

    def __init__(
        self,
        config: Config,
        *,
        api_config: Path | None = None,
        credential: TokenCredential | None = None,
        artifacts: ArtifactRegistry | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Validated environment configuration.
            api_config: API document path; auto-discovered in the
                environment directory when omitted.
            credential: Azure credential; resolved lazily when omitted.
            artifacts: Registry for temporary manifests.
        """
        self._config = config
        self._api_config = api_config
        self._credential = credential
        self._artifacts = artifacts or ArtifactRegistry(config.work_dir)

    @property
    def artifacts(self) -> ArtifactRegistry:
        return self._artifacts

    @property
    def service(self) -> ServiceRef:
        return ServiceRef(
            subscription_id=self._config.subscription_id,
            resource_group=self._config.resource_group,
            service_name=self._config.apim_name,
        )

    def load_document(self) -> ApiConfigDocument:
        """Load the API document for this environment.

        Raises:
            ConfigError: If the document is missing or invalid.
        """
        source = self._api_config or self._config.environment_dir or Path.cwd()
        return load_api_config(source, self._config.variables)

    def _get_credential(self) -> TokenCredential:
        if self._credential is None:
            self._credential = get_credential(self._config.variables)
        return self._credential

    def _reader(self) -> ApiManagementReader:
        return ApiManagementReader(
            self._get_credential(),
            self.service,
            timeout_seconds=self._config.remote_timeout_seconds,
        )

    def _executor(self, reader: ApiManagementReader) -> DeploymentExecutor:
        return DeploymentExecutor(self._config, self._get_credential(), reader, self._artifacts)

    async def _verify_service(self, reader: ApiManagementReader) -> None:
        """Fail the run when the target service is absent.

        Raises:
            RemoteError: If the service does not exist or access is denied.
        """
        if not await reader.service_exists():
            raise RemoteError(
                RemoteErrorKind.NOT_FOUND,
                f"APIM service '{self._config.apim_name}' not found in resource group "
                f"'{self._config.resource_group}'",
                operation="Verify APIM service",
                status_code=404,
            )
        logger.info(
            "Target APIM service verified",
            extra={"service": self._config.apim_name, "resource_group": self._config.resource_group},
        )

    def _summarize(
        self,
        operation: Operation,
        start_time: datetime,
        outcomes: list[DeploymentOutcome],
        decisions: list[SyncDecision] | None = None,
        dry_run: bool = False,
    ) -> RunSummary:
        return summarize(
            decisions or [],
            outcomes,
            operation=operation,
            environment=self._config.environment,
            start_time=start_time,
            dry_run=dry_run,
        )

    @staticmethod
    def _log_unmanaged(baseline: RemoteBaseline, definitions: list[ApiDefinition]) -> None:
        unmanaged = baseline.unmanaged({d.api_id for d in definitions})
        if unmanaged:
            logger.info(
                f"{len(unmanaged)} deployed API(s) not declared in config, leaving untouched",
                extra={"api_ids": unmanaged},
            )

    async def sync(
        self, *, force: bool = False, dry_run: bool = False, parallel: bool = False
    ) -> RunSummary:
        """Deploy only the APIs whose remote copy is absent or stale.

        Raises:
            ConfigError: If the API document is invalid.
            RemoteError: If the target service is missing or access is denied.
        """
        start_time = datetime.now(UTC)
        definitions = list(self.load_document().definitions)
        if parallel:
            logger.warning("--parallel is ignored by sync, APIs are processed sequentially")
        if not definitions:
            return self._summarize(Operation.SYNC, start_time, [], dry_run=dry_run)

        reader = self._reader()
        await self._verify_service(reader)
        baseline = await load_baseline(reader)
        self._log_unmanaged(baseline, definitions)

        classifier = ChangeClassifier(
            reader,
            freshness_window=timedelta(hours=self._config.spec_freshness_hours),
            baseline=baseline,
        )
        executor = None if dry_run else self._executor(reader)

        decisions: list[SyncDecision] = []
        outcomes: list[DeploymentOutcome] = []
        for definition in definitions:
            try:
                decision = await classifier.classify(definition, force=force)
            except Exception as e:
                logger.exception(
                    "Unexpected classification error", extra={"api_id": definition.api_id}
                )
                outcomes.append(DeploymentOutcome.failed(definition.api_id, repr(e)))
                continue
            decisions.append(decision)
            logger.info(
                f"{definition.api_id}: {decision.describe()}",
                extra={"api_id": definition.api_id, "action": decision.action.value},
            )
            if not decision.needs_deploy:
                continue
            if executor is None:
                outcomes.append(DeploymentOutcome.planned(definition.api_id, decision.describe()))
            else:
                outcomes.append(await executor.deploy_guarded(definition))

        return self._summarize(Operation.SYNC, start_time, outcomes, decisions, dry_run)

    async def deploy(
        self, *, force: bool = False, parallel: bool = False, dry_run: bool = False
    ) -> RunSummary:
        """Deploy every declared API, or validate them locally on dry run.

        Raises:
            ConfigError: If the API document is invalid.
            RemoteError: If the target service is missing or access is denied.
        """
        start_time = datetime.now(UTC)
        definitions = list(self.load_document().definitions)
        if force:
            logger.warning("--force is ignored by deploy, every API is always deployed")

        if dry_run:
            outcomes = [self._validate_only(d) for d in definitions]
            return self._summarize(Operation.DEPLOY, start_time, outcomes, dry_run=True)

        if not definitions:
            return self._summarize(Operation.DEPLOY, start_time, [])

        reader = self._reader()
        await self._verify_service(reader)
        executor = self._executor(reader)
        mode = ExecutionMode.PARALLEL if parallel else ExecutionMode.SEQUENTIAL
        outcomes = await executor.deploy_many(definitions, mode)
        return self._summarize(Operation.DEPLOY, start_time, outcomes)

    @staticmethod
    def _validate_only(definition: ApiDefinition) -> DeploymentOutcome:
        checks = preflight(definition)
        for check in checks:
            if check.status == CheckStatus.WARN:
                logger.warning(check.message, extra={"api_id": definition.api_id})
        failures = [c.message for c in checks if c.status == CheckStatus.FAIL]
        if failures:
            return DeploymentOutcome.failed(definition.api_id, "; ".join(failures))
        return DeploymentOutcome.planned(definition.api_id, "validation passed")

    async def destroy(
        self,
        *,
        force: bool = False,
        dry_run: bool = False,
        parallel: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> RunSummary:
        """Delete every declared API from the service.

        Raises:
            ConfigError: If the API document is invalid.
            RemoteError: If the target service is missing or access is denied.
            OperationCancelled: If the operator declines the confirmation.
        """
        start_time = datetime.now(UTC)
        definitions = list(self.load_document().definitions)
        if parallel:
            logger.warning("--parallel is ignored by destroy, APIs are deleted sequentially")
        if not definitions:
            return self._summarize(Operation.DESTROY, start_time, [], dry_run=dry_run)

        reader = self._reader()
        await self._verify_service(reader)
        engine = DeletionEngine(reader)
        outcomes = await engine.delete_many(
            definitions, dry_run=dry_run, force=force, confirm=confirm
        )
        return self._summarize(Operation.DESTROY, start_time, outcomes, dry_run=dry_run)
