"""Pytest configuration and fixtures."""

import json
import logging
import os
import sys
import time
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
RESOURCE_GROUP = "rg-apim-dev"
APIM_NAME = "apim-test"

# Two days back, outside the default freshness window
STALE_SECONDS = 48 * 3600


def make_stale(path: Path) -> None:
    old = time.time() - STALE_SECONDS
    os.utime(path, (old, old))


@pytest.fixture
def environments_dir(tmp_path: Path) -> Path:
    """An environments directory holding a complete ``dev`` environment."""
    env_dir = tmp_path / "environments" / "dev"
    env_dir.mkdir(parents=True)
    (env_dir / "config.env").write_text(
        "\n".join(
            [
                "# dev environment",
                f"SUBSCRIPTION_ID={SUBSCRIPTION_ID}",
                f"RESOURCE_GROUP={RESOURCE_GROUP}",
                f"APIM_NAME={APIM_NAME}",
                "LOCATION=westeurope",
                "SKU_NAME=Developer",
                "SKU_CAPACITY=1",
                "PUBLISHER_EMAIL=api-team@example.com",
                'PUBLISHER_NAME="Example API Team"',
                "BACKEND_HOST=backend.dev.example.com",
                f"WORK_DIR={tmp_path / 'work'}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return tmp_path / "environments"


@pytest.fixture
def env_dir(environments_dir: Path) -> Path:
    return environments_dir / "dev"


@pytest.fixture
def specs_dir(tmp_path: Path) -> Path:
    """Spec documents, all modified well outside the freshness window."""
    specs = tmp_path / "specs"
    specs.mkdir()
    (specs / "orders.yaml").write_text("openapi: 3.0.0\ninfo:\n  title: Orders\n")
    (specs / "payments.json").write_text('{"openapi": "3.0.0", "info": {"title": "Payments"}}')
    (specs / "legacy.wsdl").write_text("<definitions/>")
    for spec in specs.iterdir():
        make_stale(spec)
    return specs


@pytest.fixture
def api_entries(specs_dir: Path) -> list[dict[str, Any]]:
    """Three API definitions in document form."""
    return [
        {
            "apiId": "orders",
            "displayName": "Orders API",
            "path": "orders",
            "specPath": str(specs_dir / "orders.yaml"),
            "serviceUrl": "https://${BACKEND_HOST}/orders",
        },
        {
            "apiId": "payments",
            "displayName": "Payments API",
            "path": "payments",
            "specPath": str(specs_dir / "payments.json"),
            "format": "openapi+json",
            "productIds": ["unlimited", "starter"],
        },
        {
            "apiId": "legacy",
            "displayName": "Legacy SOAP",
            "path": "legacy",
            "specPath": str(specs_dir / "legacy.wsdl"),
            "apiType": "soap",
            "gatewayNames": ["managed", "onprem-gw"],
        },
    ]


@pytest.fixture
def write_api_config(env_dir: Path) -> Callable[..., Path]:
    """Write an API config document into the dev environment."""

    def write(entries: Any, name: str = "api-config.yaml") -> Path:
        path = env_dir / name
        if name.endswith(".json"):
            path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        else:
            path.write_text(yaml.safe_dump(entries, sort_keys=False), encoding="utf-8")
        return path

    return write


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    """Undo root logger changes made by CLI commands."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
