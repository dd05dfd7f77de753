"""Azure credential selection.

Interactive operators authenticate through the Azure CLI session picked up
by DefaultAzureCredential. Pipelines running on Azure compute set
AZURE_MANAGED_IDENTITY_CLIENT_ID to pin a user-assigned managed identity.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

MANAGED_IDENTITY_ENV_VAR = "AZURE_MANAGED_IDENTITY_CLIENT_ID"


def _mask(client_id: str) -> str:
    return client_id[:8] + "..." if len(client_id) > 8 else client_id


def get_credential(environ: Mapping[str, str] | None = None) -> TokenCredential:
    """Return the credential for this process.

    Args:
        environ: Environment to read; defaults to ``os.environ``.
    """
    env = os.environ if environ is None else environ
    client_id = env.get(MANAGED_IDENTITY_ENV_VAR)

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": _mask(client_id)},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.debug("Using default Azure credential chain")
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)
