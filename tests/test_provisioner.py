"""Tests for environment infrastructure provisioning."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from azure_mock import MockAzureContext, MockCredential, http_error

from apimctl.config import DEFAULT_INFRA_TEMPLATE, Config, ConfigurationError
from apimctl.models import ServiceRef
from apimctl.provisioner import (
    DEFAULT_SUBNET_CIDR,
    DEFAULT_VNET_CIDR,
    InfrastructureError,
    InfrastructureParameters,
    InfrastructureProvisioner,
    load_infrastructure_template,
)
from apimctl.remote_state import ApiManagementReader

BASE_VALUES = {
    "APIM_NAME": "apim-test",
    "LOCATION": "westeurope",
    "SKU_NAME": "Developer",
    "SKU_CAPACITY": "1",
    "PUBLISHER_EMAIL": "api-team@example.com",
    "PUBLISHER_NAME": "Example API Team",
}


@pytest.fixture
def config(environments_dir: Path) -> Config:
    return Config.from_environment("dev", environments_dir, environ={})


@pytest.fixture
def template() -> dict[str, Any]:
    return load_infrastructure_template(DEFAULT_INFRA_TEMPLATE)


def make_provisioner(config: Config) -> InfrastructureProvisioner:
    credential = MockCredential()
    reader = ApiManagementReader(
        credential,
        ServiceRef(config.subscription_id, config.resource_group, config.apim_name),
    )
    parameters = InfrastructureParameters.from_values(config.variables)
    return InfrastructureProvisioner(config, credential, parameters, reader)


class TestInfrastructureParameters:
    """Tests for the flat parameter contract."""

    def test_defaults(self) -> None:
        """Test derived names and network defaults."""
        params = InfrastructureParameters.from_values(BASE_VALUES)

        assert params.nsg_name == "apim-test-nsg"
        assert params.vnet_name == "apim-test-vnet"
        assert params.vnet_cidr == DEFAULT_VNET_CIDR
        assert params.subnet_cidr == DEFAULT_SUBNET_CIDR
        assert params.self_hosted_gateway_enabled is False

    def test_overrides(self) -> None:
        params = InfrastructureParameters.from_values(
            dict(
                BASE_VALUES,
                NSG_NAME="custom-nsg",
                VNET_CIDR="172.16.0.0/16",
                SUBNET_CIDR="172.16.1.0/24",
                SELF_HOSTED_GATEWAY_ENABLED="True",
                SELF_HOSTED_GATEWAY_NAME="onprem-gw",
            )
        )

        assert params.nsg_name == "custom-nsg"
        assert params.self_hosted_gateway_enabled is True
        assert params.to_arm_parameters()["selfHostedGatewayName"] == {"value": "onprem-gw"}

    def test_v2_disables_self_hosted_gateway(self) -> None:
        """Test that V2 tiers never get a self-hosted gateway."""
        params = InfrastructureParameters.from_values(
            dict(BASE_VALUES, SKU_NAME="StandardV2", SELF_HOSTED_GATEWAY_ENABLED="true")
        )

        assert params.is_v2
        assert params.to_arm_parameters()["selfHostedGatewayEnabled"] == {"value": False}

    def test_subnet_outside_vnet(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            InfrastructureParameters.from_values(
                dict(BASE_VALUES, VNET_CIDR="10.0.0.0/16", SUBNET_CIDR="10.1.0.0/24")
            )

        assert "not inside" in str(exc_info.value)

    @pytest.mark.parametrize(
        ("key", "value", "fragment"),
        [
            ("SKU_NAME", "Gold", "SKU_NAME"),
            ("PUBLISHER_EMAIL", "nobody", "PUBLISHER_EMAIL"),
            ("LOCATION", "", "LOCATION"),
            ("VNET_CIDR", "not-a-cidr", "VNET_CIDR"),
        ],
    )
    def test_invalid(self, key: str, value: str, fragment: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            InfrastructureParameters.from_values(dict(BASE_VALUES, **{key: value}))

        assert fragment in str(exc_info.value)

    def test_non_integer_capacity(self) -> None:
        with pytest.raises(ConfigurationError):
            InfrastructureParameters.from_values(dict(BASE_VALUES, SKU_CAPACITY="one"))


class TestLoadInfrastructureTemplate:
    """Tests for template loading."""

    def test_bundled_template_matches_parameters(self, template: dict[str, Any]) -> None:
        """Test that every parameter we send is declared by the template."""
        params = InfrastructureParameters.from_values(BASE_VALUES).to_arm_parameters()

        assert set(params) <= set(template["parameters"])

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_infrastructure_template(tmp_path / "missing.json")


class TestInfrastructureProvisioner:
    """Tests for InfrastructureProvisioner against the mock ARM state."""

    @pytest.mark.asyncio
    async def test_apply_creates_environment(
        self, config: Config, template: dict[str, Any]
    ) -> None:
        with MockAzureContext(service_exists=False) as ctx:
            provisioner = make_provisioner(config)
            assert await provisioner.exists() is False

            outputs = await provisioner.apply(template)

            assert "rg-apim-dev" in ctx.state.resource_groups
            assert ctx.apim.service_exists is True
            assert outputs.service_resource_id.endswith(
                "/Microsoft.ApiManagement/service/apim-test"
            )
            assert outputs.network_resource_id.endswith("/virtualNetworks/apim-test-vnet")
            assert await provisioner.exists() is True

    @pytest.mark.asyncio
    async def test_dry_run_validates_only(
        self, config: Config, template: dict[str, Any]
    ) -> None:
        """Test that a dry run neither creates the group nor deploys."""
        with MockAzureContext(service_exists=False) as ctx:
            outputs = await make_provisioner(config).apply(template, dry_run=True)

            assert ctx.get_deployment_count() == 0
            history = ctx.state.get_deployment_history()
            assert len(history) == 1 and history[0].validate_only
            assert ctx.state.resource_groups == set()
            assert ctx.apim.service_exists is False
            assert outputs == make_provisioner(config).expected_outputs()

    @pytest.mark.asyncio
    async def test_destroy_resource_group(self, config: Config) -> None:
        with MockAzureContext(resource_groups={"rg-apim-dev"}) as ctx:
            ctx.apim.put_api("orders", "Orders API", "orders")
            provisioner = make_provisioner(config)

            await provisioner.destroy()

            assert await provisioner.resource_group_exists() is False
            assert ctx.apim.apis == {}

    @pytest.mark.asyncio
    async def test_destroy_keeping_resource_group(self, config: Config) -> None:
        """Test that only the service, network and NSG are removed."""
        with MockAzureContext(resource_groups={"rg-apim-dev"}) as ctx:
            provisioner = make_provisioner(config)

            await provisioner.destroy(delete_resource_group=False)

            assert await provisioner.resource_group_exists() is True
            assert ctx.apim.service_exists is False
            deleted = ctx.state.deleted_resource_ids
            assert len(deleted) == 3
            assert deleted[0].endswith("/Microsoft.ApiManagement/service/apim-test")
            assert deleted[1].endswith("/virtualNetworks/apim-test-vnet")
            assert deleted[2].endswith("/networkSecurityGroups/apim-test-nsg")

    @pytest.mark.asyncio
    async def test_destroy_leaves_soft_deleted_service(self, config: Config) -> None:
        with MockAzureContext(resource_groups={"rg-apim-dev"}):
            provisioner = make_provisioner(config)
            assert await provisioner.soft_deleted_service_exists() is False

            await provisioner.destroy()

            assert await provisioner.soft_deleted_service_exists() is True

    @pytest.mark.asyncio
    async def test_purge_soft_deleted_service(self, config: Config) -> None:
        """Test that a purge frees the service name."""
        with MockAzureContext(service_exists=False) as ctx:
            ctx.apim.deleted_services.add("apim-test")
            provisioner = make_provisioner(config)

            await provisioner.purge_soft_deleted_service()

            assert ctx.apim.purge_calls == ["apim-test"]
            assert await provisioner.soft_deleted_service_exists() is False

    @pytest.mark.asyncio
    async def test_purge_failure(self, config: Config) -> None:
        with MockAzureContext(service_exists=False) as ctx:
            ctx.apim.deleted_services.add("apim-test")
            ctx.apim.purge_error = http_error("Conflict", 409)

            with pytest.raises(InfrastructureError) as exc_info:
                await make_provisioner(config).purge_soft_deleted_service()

            assert "Purge soft-deleted APIM service" in str(exc_info.value)
            assert "apim-test" in ctx.apim.deleted_services
