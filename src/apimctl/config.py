"""Environment configuration with validation.

An environment lives in ``environments/<name>/`` and carries a shell-style
``config.env`` file. Values from that file are layered over the process
environment and become the single substitution source handed to the
API config loader.
"""

from __future__ import annotations

import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when environment configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REMOTE_TIMEOUT_SECONDS = 30
MIN_REMOTE_TIMEOUT_SECONDS = 1
MAX_REMOTE_TIMEOUT_SECONDS = 300

DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 600
MIN_DEPLOYMENT_TIMEOUT_SECONDS = 30
MAX_DEPLOYMENT_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_PARALLEL_DEPLOYMENTS = 8
MAX_PARALLEL_DEPLOYMENTS_LIMIT = 32

DEFAULT_SPEC_FRESHNESS_HOURS = 24
MAX_SPEC_FRESHNESS_HOURS = 24 * 30

MAX_DEPLOYMENT_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5

# Size limits for files read from disk
MAX_ENV_FILE_SIZE_BYTES = 64 * 1024
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max API config document
MAX_SPEC_FILE_SIZE_BYTES = 4 * 1024 * 1024  # APIM import limit for inline specs
MAX_TEMPLATE_FILE_SIZE_BYTES = 10 * 1024 * 1024
MAX_DEPLOYMENT_NAME_LENGTH = 64
MAX_LISTED_APIS = 5000

# Input validation patterns
VALID_ENVIRONMENT_PATTERN = r"^[A-Za-z0-9_-]+$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_ENV_KEY_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

ENV_FILE_NAME = "config.env"
DEFAULT_ENVIRONMENTS_DIR = Path("environments")
TEMPLATES_DIR = Path(__file__).parent / "templates"
DEFAULT_API_TEMPLATE = TEMPLATES_DIR / "api-template.json"
DEFAULT_INFRA_TEMPLATE = TEMPLATES_DIR / "infrastructure.json"

SUPPORTED_SKUS: tuple[str, ...] = (
    "Developer",
    "Basic",
    "Standard",
    "Premium",
    "Consumption",
    "BasicV2",
    "StandardV2",
    "PremiumV2",
)

# V2 tiers cannot associate APIs with self-hosted gateways
V2_SKUS = frozenset({"BasicV2", "StandardV2", "PremiumV2"})

_VARIABLE_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def is_v2_sku(sku_name: str | None) -> bool:
    """Check whether a SKU name belongs to the V2 tier family."""
    if not sku_name:
        return False
    return sku_name.strip().lower() in {s.lower() for s in V2_SKUS}


def parse_env_file(path: Path, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Parse a shell-style ``KEY=value`` file.

    Supports ``export`` prefixes, single and double quotes, trailing
    comments and ``$VAR`` / ``${VAR}`` references to keys defined earlier
    in the file or in ``environ``. Single-quoted values are taken literally.
    Unset references expand to an empty string, matching ``source``.

    Raises:
        ConfigurationError: If the file cannot be read or a line is malformed.
    """
    environ = environ if environ is not None else os.environ

    try:
        if path.stat().st_size > MAX_ENV_FILE_SIZE_BYTES:
            raise ConfigurationError(
                f"Environment file exceeds maximum size of {MAX_ENV_FILE_SIZE_BYTES} bytes: {path}"
            )
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read environment file {path}: {e}") from e

    values: dict[str, str] = {}
    for lineno, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()

        key, sep, raw_value = line.partition("=")
        key = key.strip()
        if not sep or not re.match(VALID_ENV_KEY_PATTERN, key):
            raise ConfigurationError(f"{path}:{lineno}: expected KEY=value, got {raw_line!r}")

        raw_value = raw_value.strip()
        try:
            tokens = shlex.split(raw_value, comments=True)
        except ValueError as e:
            raise ConfigurationError(f"{path}:{lineno}: {e}") from e
        value = " ".join(tokens)

        if not raw_value.startswith("'"):

            def expand(match: re.Match[str]) -> str:
                name = match.group(1) or match.group(2)
                return values.get(name, environ.get(name, ""))

            value = _VARIABLE_REFERENCE.sub(expand, value)

        values[key] = value

    return values


@dataclass(frozen=True)
class Config:
    """Configuration of one target environment.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    environment: str
    resource_group: str
    apim_name: str
    subscription_id: str

    location: str = ""
    sku_name: str | None = None

    # Merged process + environment-file values used for ${VAR} substitution
    variables: Mapping[str, str] = field(default_factory=dict, compare=False)

    # Paths
    environment_dir: Path | None = None
    api_template_path: Path = DEFAULT_API_TEMPLATE
    infra_template_path: Path = DEFAULT_INFRA_TEMPLATE
    work_dir: Path = field(default_factory=Path.cwd)

    # Timing
    remote_timeout_seconds: int = DEFAULT_REMOTE_TIMEOUT_SECONDS
    deployment_timeout_seconds: int = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS

    # Behavior
    max_parallel_deployments: int = DEFAULT_MAX_PARALLEL_DEPLOYMENTS
    spec_freshness_hours: int = DEFAULT_SPEC_FRESHNESS_HOURS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.environment:
            errors.append("environment name is required")
        elif not re.match(VALID_ENVIRONMENT_PATTERN, self.environment):
            errors.append(
                f"environment name must match pattern {VALID_ENVIRONMENT_PATTERN}: "
                f"{self.environment}"
            )

        if not self.resource_group:
            errors.append("RESOURCE_GROUP is required")

        if not self.apim_name:
            errors.append("APIM_NAME is required")

        if not self.subscription_id:
            errors.append("SUBSCRIPTION_ID (or AZURE_SUBSCRIPTION_ID) is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.sku_name and self.sku_name not in SUPPORTED_SKUS:
            errors.append(f"SKU_NAME must be one of {list(SUPPORTED_SKUS)}: {self.sku_name}")

        if not (
            MIN_REMOTE_TIMEOUT_SECONDS <= self.remote_timeout_seconds <= MAX_REMOTE_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REMOTE_TIMEOUT must be between {MIN_REMOTE_TIMEOUT_SECONDS} "
                f"and {MAX_REMOTE_TIMEOUT_SECONDS} seconds"
            )

        if not (
            MIN_DEPLOYMENT_TIMEOUT_SECONDS
            <= self.deployment_timeout_seconds
            <= MAX_DEPLOYMENT_TIMEOUT_SECONDS
        ):
            errors.append(
                f"DEPLOYMENT_TIMEOUT must be between {MIN_DEPLOYMENT_TIMEOUT_SECONDS} "
                f"and {MAX_DEPLOYMENT_TIMEOUT_SECONDS} seconds"
            )

        if not 1 <= self.max_parallel_deployments <= MAX_PARALLEL_DEPLOYMENTS_LIMIT:
            errors.append(
                f"MAX_PARALLEL_DEPLOYMENTS must be between 1 and {MAX_PARALLEL_DEPLOYMENTS_LIMIT}"
            )

        if not 0 <= self.spec_freshness_hours <= MAX_SPEC_FRESHNESS_HOURS:
            errors.append(f"SPEC_FRESHNESS_HOURS must be between 0 and {MAX_SPEC_FRESHNESS_HOURS}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def is_v2_sku(self) -> bool:
        """True when the configured SKU is a V2 tier."""
        return is_v2_sku(self.sku_name)

    @classmethod
    def from_environment(
        cls,
        name: str,
        environments_dir: Path = DEFAULT_ENVIRONMENTS_DIR,
        environ: Mapping[str, str] | None = None,
    ) -> Config:
        """Load configuration for a named environment.

        Reads ``<environments_dir>/<name>/config.env`` and layers it over
        ``environ`` (the process environment by default). File values win.

        Environment Variables:
            RESOURCE_GROUP: Resource group holding the APIM service
            APIM_NAME: Name of the APIM service
            SUBSCRIPTION_ID / AZURE_SUBSCRIPTION_ID: Target subscription
            LOCATION: Azure region (infrastructure only)
            SKU_NAME: APIM SKU; looked up remotely when unset
            REMOTE_TIMEOUT: Seconds to wait for a read/delete call (default: 30)
            DEPLOYMENT_TIMEOUT: Seconds to wait for one API deployment (default: 600)
            MAX_PARALLEL_DEPLOYMENTS: Concurrency cap for --parallel (default: 8)
            SPEC_FRESHNESS_HOURS: Recently-modified spec window (default: 24)
            API_TEMPLATE_FILE: Override for the per-API ARM template
            INFRA_TEMPLATE_FILE: Override for the infrastructure ARM template
            WORK_DIR: Directory for temporary deployment manifests (default: cwd)
        """
        if not name or not re.match(VALID_ENVIRONMENT_PATTERN, name):
            raise ConfigurationError(
                f"Invalid environment name {name!r}: must match {VALID_ENVIRONMENT_PATTERN}"
            )

        environ = dict(os.environ if environ is None else environ)
        environment_dir = environments_dir / name
        if not environment_dir.is_dir():
            raise ConfigurationError(f"Environment '{name}' not found: {environment_dir}")

        env_file = environment_dir / ENV_FILE_NAME
        if not env_file.is_file():
            raise ConfigurationError(f"Environment file not found: {env_file}")

        variables = {**environ, **parse_env_file(env_file, environ)}
        variables.setdefault("ENVIRONMENT", name)

        def get_int(key: str, default: int) -> int:
            value = variables.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_path(key: str, default: Path) -> Path:
            value = variables.get(key)
            return Path(value) if value else default

        return cls(
            environment=name,
            resource_group=variables.get("RESOURCE_GROUP", ""),
            apim_name=variables.get("APIM_NAME", ""),
            subscription_id=(
                variables.get("SUBSCRIPTION_ID") or variables.get("AZURE_SUBSCRIPTION_ID", "")
            ),
            location=variables.get("LOCATION", ""),
            sku_name=variables.get("SKU_NAME") or None,
            variables=variables,
            environment_dir=environment_dir,
            api_template_path=get_path("API_TEMPLATE_FILE", DEFAULT_API_TEMPLATE),
            infra_template_path=get_path("INFRA_TEMPLATE_FILE", DEFAULT_INFRA_TEMPLATE),
            work_dir=get_path("WORK_DIR", Path.cwd()),
            remote_timeout_seconds=get_int("REMOTE_TIMEOUT", DEFAULT_REMOTE_TIMEOUT_SECONDS),
            deployment_timeout_seconds=get_int(
                "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
            ),
            max_parallel_deployments=get_int(
                "MAX_PARALLEL_DEPLOYMENTS", DEFAULT_MAX_PARALLEL_DEPLOYMENTS
            ),
            spec_freshness_hours=get_int("SPEC_FRESHNESS_HOURS", DEFAULT_SPEC_FRESHNESS_HOURS),
        )
