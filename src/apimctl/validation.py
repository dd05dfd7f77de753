"""Structural validation of environments and API definitions.

Used by the ``validate`` command, by dry-run deploys, and by the executor's
spec precondition. Spec documents are only checked for presence and size;
their OpenAPI/WSDL content is not parsed.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .config import MAX_SPEC_FILE_SIZE_BYTES, SUPPORTED_SKUS
from .config_loader import PLACEHOLDER_PATTERN
from .models import ApiDefinition, ValidationWarning

logger = logging.getLogger(__name__)

REQUIRED_ENVIRONMENT_VARIABLES: tuple[str, ...] = (
    "ENVIRONMENT",
    "RESOURCE_GROUP",
    "APIM_NAME",
    "LOCATION",
    "SKU_NAME",
    "SKU_CAPACITY",
    "PUBLISHER_EMAIL",
    "PUBLISHER_NAME",
)

EMAIL_PATTERN = r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$"
LOCATION_PATTERN = r"^[a-z0-9]{4,}$"
API_PATH_PATTERN = r"^[A-Za-z0-9_/-]*$"


class SpecNotFoundError(Exception):
    """Raised when an API's spec document is missing or unreadable."""

    def __init__(self, api_id: str, spec_path: str, reason: str) -> None:
        super().__init__(f"Spec for '{api_id}' not usable ({reason}): {spec_path}")
        self.api_id = api_id
        self.spec_path = spec_path
        self.reason = reason


class CheckStatus(str, Enum):
    """Outcome of one validation check."""

    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass(frozen=True)
class Check:
    """One validation result line."""

    status: CheckStatus
    message: str
    api_id: str | None = None

    @classmethod
    def passed(cls, message: str, api_id: str | None = None) -> Check:
        return cls(CheckStatus.PASS, message, api_id)

    @classmethod
    def warn(cls, message: str, api_id: str | None = None) -> Check:
        return cls(CheckStatus.WARN, message, api_id)

    @classmethod
    def fail(cls, message: str, api_id: str | None = None) -> Check:
        return cls(CheckStatus.FAIL, message, api_id)


@dataclass
class ValidationReport:
    """Collected checks for one validation run."""

    checks: list[Check] = field(default_factory=list)

    def extend(self, checks: Iterable[Check]) -> None:
        self.checks.extend(checks)

    def count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def failures(self) -> list[Check]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    @property
    def ok(self) -> bool:
        return not self.failures


def read_spec_value(definition: ApiDefinition) -> str:
    """Return the value to import for an API's spec.

    Local documents are read as text; links are passed through.

    Raises:
        SpecNotFoundError: If a local document is missing, too large or unreadable.
    """
    spec_file = definition.spec_file
    if spec_file is None:
        return definition.spec_path

    if not spec_file.is_file():
        raise SpecNotFoundError(definition.api_id, definition.spec_path, "not found")

    try:
        size = spec_file.stat().st_size
        if size > MAX_SPEC_FILE_SIZE_BYTES:
            raise SpecNotFoundError(
                definition.api_id,
                definition.spec_path,
                f"exceeds {MAX_SPEC_FILE_SIZE_BYTES} bytes",
            )
        return spec_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecNotFoundError(definition.api_id, definition.spec_path, str(e)) from e


def preflight(definition: ApiDefinition) -> list[Check]:
    """Local checks for one definition; no remote calls."""
    api_id = definition.api_id
    checks: list[Check] = []

    try:
        read_spec_value(definition)
    except SpecNotFoundError as e:
        checks.append(Check.fail(f"spec {e.reason}: {definition.spec_path}", api_id))
    else:
        label = "spec link" if definition.spec_is_link else "spec file exists"
        checks.append(Check.passed(f"{label}: {definition.spec_path}", api_id))

    if definition.format_matches_spec():
        checks.append(Check.passed(f"format '{definition.format.value}' matches spec", api_id))
    else:
        checks.append(
            Check.warn(
                f"format '{definition.format.value}' may not match spec: {definition.spec_path}",
                api_id,
            )
        )

    if not re.match(API_PATH_PATTERN, definition.path):
        checks.append(Check.warn(f"path contains special characters: {definition.path}", api_id))

    if definition.service_url and PLACEHOLDER_PATTERN.search(definition.service_url):
        checks.append(
            Check.warn(f"serviceUrl has unresolved placeholders: {definition.service_url}", api_id)
        )

    return checks


def validate_definitions(
    definitions: Iterable[ApiDefinition],
    warnings: Iterable[ValidationWarning] = (),
) -> list[Check]:
    """Preflight every definition and surface loader warnings."""
    checks: list[Check] = [Check.warn(w.message, w.api_id) for w in warnings]
    for definition in definitions:
        checks.extend(preflight(definition))
    return checks


def _cidr_valid(value: str) -> bool:
    try:
        ipaddress.IPv4Network(value, strict=False)
    except ValueError:
        return False
    return "/" in value


def validate_environment(values: Mapping[str, str]) -> list[Check]:
    """Check the variables an environment needs for a full deployment."""
    checks: list[Check] = []

    for name in REQUIRED_ENVIRONMENT_VARIABLES:
        if values.get(name):
            checks.append(Check.passed(f"required variable set: {name}"))
        else:
            checks.append(Check.fail(f"required variable missing or empty: {name}"))

    email = values.get("PUBLISHER_EMAIL")
    if email:
        if re.match(EMAIL_PATTERN, email):
            checks.append(Check.passed("publisher email format is valid"))
        else:
            checks.append(Check.fail(f"publisher email format is invalid: {email}"))

    sku = values.get("SKU_NAME")
    if sku:
        if sku in SUPPORTED_SKUS:
            checks.append(Check.passed(f"SKU name is valid: {sku}"))
        else:
            checks.append(
                Check.fail(f"invalid SKU name: {sku} (must be one of {', '.join(SUPPORTED_SKUS)})")
            )

    capacity = values.get("SKU_CAPACITY")
    if capacity and not capacity.isdigit():
        checks.append(Check.fail(f"SKU capacity must be a whole number: {capacity}"))

    location = values.get("LOCATION")
    if location:
        if re.match(LOCATION_PATTERN, location):
            checks.append(Check.passed(f"location format appears valid: {location}"))
        else:
            checks.append(Check.warn(f"location format may be invalid: {location}"))

    for name in ("VNET_CIDR", "SUBNET_CIDR"):
        value = values.get(name)
        if not value:
            continue
        if _cidr_valid(value):
            checks.append(Check.passed(f"{name} format is valid: {value}"))
        else:
            checks.append(Check.fail(f"{name} format is invalid: {value}"))

    return checks
