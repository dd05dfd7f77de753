"""Per-API deployment through ARM.

Each API is deployed as an incremental resource-group deployment of the
shared API template. The call is idempotent: the same definition always
converges on the same remote state, so transient failures are retried.

The executor never raises past ``deploy``. Every failure, from a missing
spec to a deployment timeout, becomes a Failed outcome for that API only.

SECURITY: Timeouts are enforced on all Azure API calls to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from enum import Enum
from pathlib import Path
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
)

from .config import (
    MAX_DEPLOYMENT_NAME_LENGTH,
    MAX_DEPLOYMENT_RETRIES,
    MAX_TEMPLATE_FILE_SIZE_BYTES,
    RETRY_BACKOFF_BASE_SECONDS,
    Config,
    ConfigurationError,
    is_v2_sku,
)
from .manifest import ArtifactRegistry
from .models import ApiDefinition, DeploymentOutcome
from .remote_state import ApiManagementReader, RemoteError, classify_azure_error
from .validation import SpecNotFoundError, read_spec_value

logger = logging.getLogger(__name__)

# Deployment name prefix for tracking
DEPLOYMENT_NAME_PREFIX = "apim-api"

# Sentinel for the platform-managed gateway; never linked explicitly
MANAGED_GATEWAY = "managed"


class ExecutionMode(str, Enum):
    """How a batch of deployments is scheduled."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


def load_api_template(template_path: Path) -> dict[str, Any]:
    """Load the per-API ARM template.

    Raises:
        ConfigurationError: If the template cannot be loaded.
    """
    if not template_path.is_file():
        raise ConfigurationError(f"API template not found: {template_path}")

    # SECURITY: Check file size before reading to prevent DoS
    if template_path.stat().st_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Template file exceeds maximum size of "
            f"{MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: {template_path}"
        )

    try:
        template = json.loads(template_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load API template {template_path}: {e}") from e

    if not isinstance(template, dict):
        raise ConfigurationError(f"Template must be a JSON object: {template_path}")
    return template


def build_parameters(
    definition: ApiDefinition,
    spec_value: str,
    *,
    apim_name: str,
    sku_name: str | None,
) -> dict[str, dict[str, Any]]:
    """Build the ARM parameter set for one API.

    ``serviceUrl`` is left out entirely when empty. On V2 SKUs the gateway
    list is always emptied, whatever the definition asks for.
    """
    values: dict[str, Any] = {
        "apimName": apim_name,
        "apiId": definition.api_id,
        "displayName": definition.display_name,
        "path": definition.path,
        "format": definition.arm_format,
        "specValue": spec_value,
        "protocols": [p.value for p in definition.protocols],
        "subscriptionRequired": definition.subscription_required,
        "productIds": list(definition.product_ids),
        "gatewayNames": list(definition.gateway_names),
        "tags": list(definition.tags),
        "apiType": definition.api_type.value,
    }

    if definition.service_url:
        values["serviceUrl"] = definition.service_url

    if definition.policies is not None and not definition.policies.is_empty:
        values["policyXml"] = definition.policies.to_xml()

    if is_v2_sku(sku_name):
        if definition.gateway_names:
            logger.warning(
                "V2 SKU does not support gateway association, overriding gatewayNames to []",
                extra={
                    "api_id": definition.api_id,
                    "sku": sku_name,
                    "requested_gateways": list(definition.gateway_names),
                },
            )
        values["gatewayNames"] = []

    return {key: {"value": value} for key, value in values.items()}


def deployment_name_for(api_id: str) -> str:
    """Unique ARM deployment name for one API."""
    # SECURITY: Use timestamp + random suffix to prevent deployment name collisions
    timestamp = int(time.time())
    random_suffix = random.randint(1000, 9999)
    # Format: {prefix}-{apiId}-{timestamp}-{suffix}
    # Lengths: prefix + 1 + apiId + 1 + 10 + 1 + 4 = prefix + apiId + 17
    reserved_len = len(DEPLOYMENT_NAME_PREFIX) + 17
    truncated_id = api_id[: MAX_DEPLOYMENT_NAME_LENGTH - reserved_len]
    return f"{DEPLOYMENT_NAME_PREFIX}-{truncated_id}-{timestamp}-{random_suffix}"


class DeploymentExecutor:
    """Deploys API definitions to the target APIM service."""

    def __init__(
        self,
        config: Config,
        credential: TokenCredential,
        reader: ApiManagementReader,
        artifacts: ArtifactRegistry,
        *,
        template: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            config: Validated environment configuration.
            credential: Azure credential for ARM calls.
            reader: Remote reader used for SKU and reference checks.
            artifacts: Registry owning temporary manifests.
            template: Preloaded API template; read from config when omitted.

        Raises:
            ConfigurationError: If the API template cannot be loaded.
        """
        self._config = config
        self._reader = reader
        self._artifacts = artifacts
        self._template = template or load_api_template(config.api_template_path)
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )
        self._sku_name = config.sku_name
        self._sku_resolved = config.sku_name is not None
        self._sku_lock = asyncio.Lock()

    async def resolve_sku(self) -> str | None:
        """SKU of the target service: configured value, else looked up once."""
        async with self._sku_lock:
            if not self._sku_resolved:
                try:
                    self._sku_name = await self._reader.get_service_sku()
                except RemoteError as e:
                    logger.warning(
                        "Could not determine APIM SKU, assuming classic tier",
                        extra={"error": str(e)},
                    )
                self._sku_resolved = True
                logger.info("Resolved APIM SKU", extra={"sku": self._sku_name})
        return self._sku_name

    async def _check_references(self, definition: ApiDefinition, sku_name: str | None) -> None:
        """Best-effort existence checks; missing references only warn."""
        api_id = definition.api_id

        gateways = [] if is_v2_sku(sku_name) else definition.gateway_names
        for gateway in gateways:
            if gateway.lower() == MANAGED_GATEWAY:
                continue
            try:
                if not await self._reader.gateway_exists(gateway):
                    logger.warning(
                        "Gateway not found, association will fail",
                        extra={"api_id": api_id, "gateway": gateway},
                    )
            except RemoteError as e:
                logger.debug(
                    "Gateway check skipped",
                    extra={"api_id": api_id, "gateway": gateway, "error": str(e)},
                )

        for product_id in definition.product_ids:
            try:
                if not await self._reader.product_exists(product_id):
                    logger.warning(
                        "Product not found, association will fail",
                        extra={"api_id": api_id, "product": product_id},
                    )
            except RemoteError as e:
                logger.debug(
                    "Product check skipped",
                    extra={"api_id": api_id, "product": product_id, "error": str(e)},
                )

    async def deploy(self, definition: ApiDefinition) -> DeploymentOutcome:
        """Create or update one API. Never raises.

        Returns:
            Deployed, or Failed with the error detail.
        """
        api_id = definition.api_id
        started = time.monotonic()

        try:
            spec_value = read_spec_value(definition)
        except SpecNotFoundError as e:
            logger.error(
                "Spec not found, skipping deployment",
                extra={"api_id": api_id, "spec_path": definition.spec_path, "error": str(e)},
            )
            return DeploymentOutcome.failed(api_id, "spec not found")

        logger.info("Deploying API", extra={"api_id": api_id, "path": definition.path})

        try:
            sku_name = await self.resolve_sku()
            await self._check_references(definition, sku_name)
            parameters = build_parameters(
                definition,
                spec_value,
                apim_name=self._config.apim_name,
                sku_name=sku_name,
            )
            manifest = {"template": self._template, "parameters": parameters}
            with self._artifacts.manifest(api_id, manifest) as manifest_path:
                await self._apply_with_retry(api_id, manifest_path)
        except TimeoutError:
            detail = f"deployment timed out after {self._config.deployment_timeout_seconds}s"
            return DeploymentOutcome.failed(api_id, detail, time.monotonic() - started)
        except AzureError as e:
            error = classify_azure_error(e, "deployment")
            logger.error(
                "API deployment failed",
                extra={"api_id": api_id, "error": str(error), "kind": error.kind.value},
            )
            return DeploymentOutcome.failed(api_id, str(error), time.monotonic() - started)
        except OSError as e:
            logger.error("Could not write deployment manifest", extra={"api_id": api_id})
            return DeploymentOutcome.failed(
                api_id, f"manifest error: {e}", time.monotonic() - started
            )

        duration = time.monotonic() - started
        logger.info(
            "API deployed",
            extra={"api_id": api_id, "duration_seconds": round(duration, 2)},
        )
        return DeploymentOutcome.deployed(api_id, duration=duration)

    async def deploy_many(
        self,
        definitions: list[ApiDefinition],
        mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
    ) -> list[DeploymentOutcome]:
        """Deploy a batch; every definition yields exactly one outcome.

        Sequential mode preserves input order. Parallel mode runs all
        deployments as independent tasks (bounded by the configured limit)
        and joins on all of them; one failure never cancels another.
        """
        if mode == ExecutionMode.SEQUENTIAL:
            outcomes = []
            for definition in definitions:
                outcomes.append(await self.deploy_guarded(definition))
            return outcomes

        semaphore = asyncio.Semaphore(self._config.max_parallel_deployments)

        async def bounded(definition: ApiDefinition) -> DeploymentOutcome:
            async with semaphore:
                return await self.deploy(definition)

        logger.info(
            "Deploying APIs in parallel",
            extra={"count": len(definitions), "limit": self._config.max_parallel_deployments},
        )
        results = await asyncio.gather(
            *(bounded(d) for d in definitions),
            return_exceptions=True,
        )

        outcomes = []
        for definition, result in zip(definitions, results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError | KeyboardInterrupt):
                    raise result
                logger.error(
                    "Unexpected deployment error",
                    extra={"api_id": definition.api_id, "error": repr(result)},
                )
                outcomes.append(DeploymentOutcome.failed(definition.api_id, repr(result)))
            else:
                outcomes.append(result)
        return outcomes

    async def deploy_guarded(self, definition: ApiDefinition) -> DeploymentOutcome:
        """Deploy one API, turning any unexpected error into a Failed outcome."""
        try:
            return await self.deploy(definition)
        except Exception as e:
            logger.exception("Unexpected deployment error", extra={"api_id": definition.api_id})
            return DeploymentOutcome.failed(definition.api_id, repr(e))

    async def _execute_with_timeout(
        self,
        begin_operation: Any,
        timeout_seconds: int,
        operation_name: str,
        api_id: str,
    ) -> Any:
        """Execute an Azure SDK poller operation with timeout.

        Raises:
            TimeoutError: If operation exceeds timeout.
            HttpResponseError: If Azure API returns an error.
        """
        loop = asyncio.get_running_loop()

        # Start the long-running operation
        poller = await loop.run_in_executor(None, begin_operation)

        # Wait for result with timeout
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, poller.result),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                f"{operation_name} timed out",
                extra={"api_id": api_id, "timeout_seconds": timeout_seconds},
            )
            raise

    async def _apply_with_retry(self, api_id: str, manifest_path: Path) -> None:
        """Submit the deployment, retrying transient failures with backoff.

        Raises:
            HttpResponseError: If a permanent error occurs or all retries fail.
        """
        last_error: HttpResponseError | None = None

        for attempt in range(1, MAX_DEPLOYMENT_RETRIES + 1):
            try:
                await self._apply(api_id, manifest_path)
                return
            except HttpResponseError as e:
                last_error = e
                if not classify_azure_error(e, "deployment").is_transient:
                    raise

                if attempt < MAX_DEPLOYMENT_RETRIES:
                    # Exponential backoff with jitter
                    backoff = RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Deployment failed, retrying",
                        extra={
                            "api_id": api_id,
                            "attempt": attempt,
                            "max_attempts": MAX_DEPLOYMENT_RETRIES,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    async def _apply(self, api_id: str, manifest_path: Path) -> None:
        """Submit the deployment described by a manifest."""
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        deployment_name = deployment_name_for(api_id)

        deployment = Deployment(
            properties=DeploymentProperties(
                template=manifest["template"],
                parameters=manifest["parameters"],
                mode=DeploymentMode.INCREMENTAL,
            ),
        )

        await self._execute_with_timeout(
            lambda: self._client.deployments.begin_create_or_update(
                self._config.resource_group,
                deployment_name,
                deployment,
            ),
            timeout_seconds=self._config.deployment_timeout_seconds,
            operation_name="API deployment",
            api_id=api_id,
        )
