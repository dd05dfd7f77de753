"""Azure API Mock for Integration Testing.

This module provides mock implementations of the Azure API Management and
Resource Manager APIs that enable integration testing without actual
Azure connectivity.

Key Features:
- In-memory APIM service state (APIs, products, gateways, SKU)
- Resource-group deployments applied to that state
- Error injection for list/get/delete/deploy failures and slow calls
- Credential simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        ctx.apim.put_api("orders", "Orders API", "orders")

        summary = await ApiPipeline(config).sync()

        assert ctx.state.deployed_api_ids() == ["payments"]
"""

from .apim import MockApi, MockApiManagementClient, MockApimState, http_error
from .context import MockAzureContext
from .credential import MockCredential, create_mock_credential
from .resources import MockDeployment, MockResourceClient, MockResourceState

__all__ = [
    "MockApi",
    "MockApiManagementClient",
    "MockApimState",
    "MockAzureContext",
    "MockCredential",
    "MockDeployment",
    "MockResourceClient",
    "MockResourceState",
    "create_mock_credential",
    "http_error",
]
