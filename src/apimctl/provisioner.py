"""Environment infrastructure: network, NSG and the APIM service itself.

The API pipelines only need this module's contract: a flat parameter
object, an existence check, and whole-environment apply/destroy. The
resources themselves are described by an ARM template.

SECURITY: Timeouts are enforced on all Azure API calls to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    ResourceGroup,
)

from .config import (
    MAX_TEMPLATE_FILE_SIZE_BYTES,
    SUPPORTED_SKUS,
    Config,
    ConfigurationError,
    is_v2_sku,
)
from .executor import deployment_name_for
from .remote_state import ApiManagementReader, RemoteError, classify_azure_error

logger = logging.getLogger(__name__)

DEFAULT_VNET_CIDR = "10.0.0.0/16"
DEFAULT_SUBNET_NAME = "default"
DEFAULT_SUBNET_CIDR = "10.0.0.0/24"
DEFAULT_GATEWAY_NAME = "default"
DEFAULT_SKU_CAPACITY = 1

# APIM provisioning routinely takes 30-45 minutes
INFRA_DEPLOYMENT_TIMEOUT_SECONDS = 3600

APIM_API_VERSION = "2022-08-01"
NETWORK_API_VERSION = "2023-04-01"

EMAIL_PATTERN = r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$"


class InfrastructureError(Exception):
    """Raised when provisioning or teardown fails."""

    pass


@dataclass(frozen=True)
class InfrastructureParameters:
    """Flat parameter contract of the infrastructure template."""

    apim_name: str
    location: str
    sku_name: str
    sku_capacity: int
    publisher_email: str
    publisher_name: str
    nsg_name: str
    vnet_name: str
    vnet_cidr: str = DEFAULT_VNET_CIDR
    subnet_name: str = DEFAULT_SUBNET_NAME
    subnet_cidr: str = DEFAULT_SUBNET_CIDR
    self_hosted_gateway_enabled: bool = False
    self_hosted_gateway_name: str = DEFAULT_GATEWAY_NAME

    def __post_init__(self) -> None:
        errors: list[str] = []

        for label, value in (
            ("APIM_NAME", self.apim_name),
            ("LOCATION", self.location),
            ("PUBLISHER_NAME", self.publisher_name),
        ):
            if not value:
                errors.append(f"{label} is required")

        if self.sku_name not in SUPPORTED_SKUS:
            errors.append(f"SKU_NAME must be one of {list(SUPPORTED_SKUS)}: {self.sku_name}")

        if self.sku_capacity < 0:
            errors.append("SKU_CAPACITY must not be negative")

        if not re.match(EMAIL_PATTERN, self.publisher_email or ""):
            errors.append(f"PUBLISHER_EMAIL is not a valid address: {self.publisher_email}")

        networks = {}
        for label, value in (("VNET_CIDR", self.vnet_cidr), ("SUBNET_CIDR", self.subnet_cidr)):
            try:
                networks[label] = ipaddress.IPv4Network(value, strict=False)
            except ValueError:
                errors.append(f"{label} is not a valid CIDR block: {value}")

        if len(networks) == 2 and not networks["SUBNET_CIDR"].subnet_of(networks["VNET_CIDR"]):
            errors.append(f"SUBNET_CIDR {self.subnet_cidr} is not inside VNET_CIDR {self.vnet_cidr}")

        if errors:
            raise ConfigurationError(
                "Infrastructure parameters invalid:\n  - " + "\n  - ".join(errors)
            )

    @property
    def is_v2(self) -> bool:
        return is_v2_sku(self.sku_name)

    @classmethod
    def from_values(cls, values: Mapping[str, str]) -> InfrastructureParameters:
        """Build parameters from environment variables, applying defaults."""
        apim_name = values.get("APIM_NAME", "")

        capacity = values.get("SKU_CAPACITY") or str(DEFAULT_SKU_CAPACITY)
        try:
            sku_capacity = int(capacity)
        except ValueError as e:
            raise ConfigurationError(f"SKU_CAPACITY must be an integer: {capacity}") from e

        return cls(
            apim_name=apim_name,
            location=values.get("LOCATION", ""),
            sku_name=values.get("SKU_NAME", "Developer"),
            sku_capacity=sku_capacity,
            publisher_email=values.get("PUBLISHER_EMAIL", ""),
            publisher_name=values.get("PUBLISHER_NAME", ""),
            nsg_name=values.get("NSG_NAME") or f"{apim_name}-nsg",
            vnet_name=values.get("VNET_NAME") or f"{apim_name}-vnet",
            vnet_cidr=values.get("VNET_CIDR") or DEFAULT_VNET_CIDR,
            subnet_name=values.get("SUBNET_NAME") or DEFAULT_SUBNET_NAME,
            subnet_cidr=values.get("SUBNET_CIDR") or DEFAULT_SUBNET_CIDR,
            self_hosted_gateway_enabled=(
                values.get("SELF_HOSTED_GATEWAY_ENABLED", "").lower() in ("true", "1", "yes")
            ),
            self_hosted_gateway_name=(
                values.get("SELF_HOSTED_GATEWAY_NAME") or DEFAULT_GATEWAY_NAME
            ),
        )

    def to_arm_parameters(self) -> dict[str, dict[str, Any]]:
        values: dict[str, Any] = {
            "apimName": self.apim_name,
            "location": self.location,
            "skuName": self.sku_name,
            "skuCapacity": self.sku_capacity,
            "publisherEmail": self.publisher_email,
            "publisherName": self.publisher_name,
            "nsgName": self.nsg_name,
            "vnetName": self.vnet_name,
            "vnetCidr": self.vnet_cidr,
            "subnetName": self.subnet_name,
            "subnetCidr": self.subnet_cidr,
            # V2 tiers have no self-hosted gateway support
            "selfHostedGatewayEnabled": self.self_hosted_gateway_enabled and not self.is_v2,
            "selfHostedGatewayName": self.self_hosted_gateway_name,
        }
        return {key: {"value": value} for key, value in values.items()}


@dataclass(frozen=True)
class InfrastructureOutputs:
    """Identifiers consumed by later stages."""

    service_resource_id: str
    network_resource_id: str


def load_infrastructure_template(template_path: Path) -> dict[str, Any]:
    """Load the infrastructure ARM template.

    Raises:
        ConfigurationError: If the template cannot be loaded.
    """
    if not template_path.is_file():
        raise ConfigurationError(f"Infrastructure template not found: {template_path}")
    if template_path.stat().st_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise ConfigurationError(f"Template file too large: {template_path}")
    try:
        template = json.loads(template_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load template {template_path}: {e}") from e
    if not isinstance(template, dict):
        raise ConfigurationError(f"Template must be a JSON object: {template_path}")
    return template


class InfrastructureProvisioner:
    """Applies and tears down one environment's infrastructure."""

    def __init__(
        self,
        config: Config,
        credential: TokenCredential,
        parameters: InfrastructureParameters,
        reader: ApiManagementReader,
    ) -> None:
        self._config = config
        self._parameters = parameters
        self._reader = reader
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )

    @property
    def parameters(self) -> InfrastructureParameters:
        return self._parameters

    def expected_outputs(self) -> InfrastructureOutputs:
        base = f"/subscriptions/{self._config.subscription_id}/resourceGroups/{self._config.resource_group}"
        return InfrastructureOutputs(
            service_resource_id=(
                f"{base}/providers/Microsoft.ApiManagement/service/{self._parameters.apim_name}"
            ),
            network_resource_id=(
                f"{base}/providers/Microsoft.Network/virtualNetworks/{self._parameters.vnet_name}"
            ),
        )

    async def _run(self, operation: str, func: Any, timeout_seconds: int | None = None) -> Any:
        """Run a blocking SDK call (resolving pollers) with a timeout."""
        loop = asyncio.get_running_loop()
        timeout = timeout_seconds or self._config.remote_timeout_seconds

        def call() -> Any:
            result = func()
            return result.result() if hasattr(result, "result") else result

        try:
            return await asyncio.wait_for(loop.run_in_executor(None, call), timeout=timeout)
        except TimeoutError as e:
            logger.error(f"{operation} timed out", extra={"timeout_seconds": timeout})
            raise InfrastructureError(f"{operation} timed out after {timeout}s") from e
        except AzureError as e:
            raise InfrastructureError(str(classify_azure_error(e, operation))) from e

    async def resource_group_exists(self) -> bool:
        return bool(
            await self._run(
                "Check resource group",
                lambda: self._client.resource_groups.check_existence(self._config.resource_group),
            )
        )

    async def exists(self) -> bool:
        """True when the resource group and APIM service both exist."""
        if not await self.resource_group_exists():
            return False
        try:
            return await self._reader.service_exists()
        except RemoteError as e:
            raise InfrastructureError(str(e)) from e

    async def soft_deleted_service_exists(self) -> bool:
        """True when a soft-deleted APIM instance holds the service name."""
        try:
            return await self._reader.deleted_service_exists(self._parameters.location)
        except RemoteError as e:
            raise InfrastructureError(str(e)) from e

    async def purge_soft_deleted_service(self) -> None:
        """Purge the soft-deleted APIM instance. This cannot be undone.

        Raises:
            InfrastructureError: If the purge fails.
        """
        logger.warning(
            "Purging soft-deleted APIM service",
            extra={"apim_name": self._parameters.apim_name, "location": self._parameters.location},
        )
        try:
            await self._reader.purge_deleted_service(
                self._parameters.location, timeout_seconds=INFRA_DEPLOYMENT_TIMEOUT_SECONDS
            )
        except RemoteError as e:
            raise InfrastructureError(str(e)) from e

    async def apply(
        self, template: dict[str, Any], *, dry_run: bool = False
    ) -> InfrastructureOutputs:
        """Create or update the environment; validate only on dry run.

        Raises:
            InfrastructureError: If validation or deployment fails.
        """
        rg = self._config.resource_group
        deployment = Deployment(
            properties=DeploymentProperties(
                template=template,
                parameters=self._parameters.to_arm_parameters(),
                mode=DeploymentMode.INCREMENTAL,
            ),
        )
        deployment_name = deployment_name_for(f"infra-{self._config.environment}")

        if not dry_run:
            await self._run(
                "Create resource group",
                lambda: self._client.resource_groups.create_or_update(
                    rg, ResourceGroup(location=self._parameters.location)
                ),
            )

        if dry_run:
            logger.info("Validating infrastructure template", extra={"resource_group": rg})
            await self._run(
                "Validate infrastructure",
                lambda: self._client.deployments.begin_validate(rg, deployment_name, deployment),
            )
            return self.expected_outputs()

        logger.info(
            "Deploying infrastructure",
            extra={
                "resource_group": rg,
                "apim_name": self._parameters.apim_name,
                "sku": self._parameters.sku_name,
            },
        )
        result = await self._run(
            "Infrastructure deployment",
            lambda: self._client.deployments.begin_create_or_update(
                rg, deployment_name, deployment
            ),
            timeout_seconds=INFRA_DEPLOYMENT_TIMEOUT_SECONDS,
        )

        outputs = getattr(getattr(result, "properties", None), "outputs", None) or {}
        expected = self.expected_outputs()
        return InfrastructureOutputs(
            service_resource_id=outputs.get("apimResourceId", {}).get(
                "value", expected.service_resource_id
            ),
            network_resource_id=outputs.get("vnetResourceId", {}).get(
                "value", expected.network_resource_id
            ),
        )

    async def destroy(self, *, delete_resource_group: bool = True) -> None:
        """Tear the environment down.

        With ``delete_resource_group`` the whole group goes; otherwise only
        the APIM service, VNet and NSG are removed.

        Raises:
            InfrastructureError: If a delete fails.
        """
        rg = self._config.resource_group
        if delete_resource_group:
            logger.warning("Deleting resource group", extra={"resource_group": rg})
            await self._run(
                "Delete resource group",
                lambda: self._client.resource_groups.begin_delete(rg),
                timeout_seconds=INFRA_DEPLOYMENT_TIMEOUT_SECONDS,
            )
            return

        outputs = self.expected_outputs()
        base = outputs.network_resource_id.rsplit("/providers/", 1)[0]
        targets = (
            (outputs.service_resource_id, APIM_API_VERSION),
            (outputs.network_resource_id, NETWORK_API_VERSION),
            (
                f"{base}/providers/Microsoft.Network/networkSecurityGroups/"
                f"{self._parameters.nsg_name}",
                NETWORK_API_VERSION,
            ),
        )
        for resource_id, api_version in targets:
            logger.warning("Deleting resource", extra={"resource_id": resource_id})
            await self._run(
                "Delete resource",
                lambda rid=resource_id, ver=api_version: self._client.resources.begin_delete_by_id(
                    rid, ver
                ),
                timeout_seconds=INFRA_DEPLOYMENT_TIMEOUT_SECONDS,
            )
