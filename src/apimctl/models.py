"""Data model for API synchronization runs.

These models provide:
1. Type-safe parsing of the declarative API config document
2. Validation at the boundary (fail fast, fail loudly)
3. Plain run records (decisions, outcomes, summaries) for the pipelines
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Annotated, Any
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    StrictBool,
    ValidationInfo,
    field_validator,
)

# =============================================================================
# Constants
# =============================================================================

API_ID_PATTERN = r"^[A-Za-z0-9_-]+$"
DEFAULT_PRODUCT_IDS: tuple[str, ...] = ("unlimited",)
DEFAULT_GATEWAY_NAMES: tuple[str, ...] = ("managed",)

# =============================================================================
# Enumerations
# =============================================================================


class ApiFormat(str, Enum):
    """Supported spec document formats."""

    OPENAPI_JSON = "openapi-json"
    OPENAPI_YAML = "openapi-yaml"
    SWAGGER_JSON = "swagger-json"
    SWAGGER_YAML = "swagger-yaml"
    WSDL = "wsdl"
    WSDL_LINK = "wsdl-link"

    @property
    def is_json(self) -> bool:
        return self in (ApiFormat.OPENAPI_JSON, ApiFormat.SWAGGER_JSON)

    @property
    def is_wsdl(self) -> bool:
        return self in (ApiFormat.WSDL, ApiFormat.WSDL_LINK)


# APIM content-format values (inline document, remote link)
_ARM_FORMATS: dict[ApiFormat, tuple[str, str]] = {
    ApiFormat.OPENAPI_JSON: ("openapi+json", "openapi+json-link"),
    ApiFormat.OPENAPI_YAML: ("openapi", "openapi-link"),
    ApiFormat.SWAGGER_JSON: ("swagger-json", "swagger-link-json"),
    ApiFormat.SWAGGER_YAML: ("openapi", "openapi-link"),
    ApiFormat.WSDL: ("wsdl", "wsdl-link"),
    ApiFormat.WSDL_LINK: ("wsdl-link", "wsdl-link"),
}

# Document spellings accepted besides the enum values
FORMAT_ALIASES: dict[str, ApiFormat] = {
    "openapi+json": ApiFormat.OPENAPI_JSON,
    "openapi+json-link": ApiFormat.OPENAPI_JSON,
    "openapi": ApiFormat.OPENAPI_YAML,
    "openapi-link": ApiFormat.OPENAPI_YAML,
    "swagger-link-json": ApiFormat.SWAGGER_JSON,
}

FORMAT_BY_EXTENSION: dict[str, ApiFormat] = {
    ".json": ApiFormat.OPENAPI_JSON,
    ".yaml": ApiFormat.OPENAPI_YAML,
    ".yml": ApiFormat.OPENAPI_YAML,
    ".wsdl": ApiFormat.WSDL,
    ".xml": ApiFormat.WSDL,
}

# Used when neither format nor a known specPath extension is given
DEFAULT_API_FORMAT = ApiFormat.OPENAPI_JSON


class ApiType(str, Enum):
    """APIM API types."""

    HTTP = "http"
    SOAP = "soap"
    WEBSOCKET = "websocket"
    GRAPHQL = "graphql"


class Protocol(str, Enum):
    """Transport protocols an API may be exposed on."""

    HTTP = "http"
    HTTPS = "https"
    WS = "ws"
    WSS = "wss"


def _dedupe(values: Any) -> Any:
    if isinstance(values, list | tuple):
        seen: list[Any] = []
        for value in values:
            if value not in seen:
                seen.append(value)
        return seen
    return values


def is_link(spec_path: str) -> bool:
    """Check whether a spec reference is a remote URI rather than a file."""
    return spec_path.lower().startswith(("http://", "https://"))


def infer_format(spec_path: str) -> ApiFormat | None:
    """Infer a spec format from a file extension or URI."""
    if is_link(spec_path):
        parsed = urlparse(spec_path)
        suffix = PurePosixPath(parsed.path).suffix.lower()
        if "wsdl" in parsed.query.lower() or suffix == ".wsdl":
            return ApiFormat.WSDL_LINK
        return FORMAT_BY_EXTENSION.get(suffix)
    return FORMAT_BY_EXTENSION.get(Path(spec_path).suffix.lower())


# =============================================================================
# Desired State
# =============================================================================


class ApiPolicies(BaseModel):
    """Inline policy fragments for one API.

    Each section holds raw XML policy elements. Rendering always places
    ``<base />`` first so service and product scoped policies still apply.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    inbound: tuple[str, ...] = ()
    backend: tuple[str, ...] = ()
    outbound: tuple[str, ...] = ()
    on_error: tuple[str, ...] = Field(
        (), validation_alias=AliasChoices("on-error", "onError", "on_error")
    )

    @property
    def is_empty(self) -> bool:
        return not (self.inbound or self.backend or self.outbound or self.on_error)

    def to_xml(self) -> str:
        sections = (
            ("inbound", self.inbound),
            ("backend", self.backend),
            ("outbound", self.outbound),
            ("on-error", self.on_error),
        )
        body = "".join(
            f"<{tag}><base />{''.join(rules)}</{tag}>" for tag, rules in sections
        )
        return f"<policies>{body}</policies>"


class ApiDefinition(BaseModel):
    """Desired state of one API published on the APIM service.

    Constructed once per run from the loaded config document and
    immutable afterwards.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    api_id: Annotated[
        str, Field(min_length=1, max_length=80, pattern=API_ID_PATTERN, alias="apiId")
    ]
    display_name: Annotated[str, Field(min_length=1, max_length=300, alias="displayName")]
    path: Annotated[str, Field(max_length=400)]
    spec_path: Annotated[str, Field(min_length=1, alias="specPath")]
    # None is replaced by the inferred format, or DEFAULT_API_FORMAT
    format: ApiFormat = Field(None, validate_default=True)
    service_url: str | None = Field(None, alias="serviceUrl")
    protocols: tuple[Protocol, ...] = (Protocol.HTTPS,)
    subscription_required: StrictBool = Field(False, alias="subscriptionRequired")
    product_ids: tuple[str, ...] = Field(DEFAULT_PRODUCT_IDS, alias="productIds")
    gateway_names: tuple[str, ...] = Field(DEFAULT_GATEWAY_NAMES, alias="gatewayNames")
    tags: tuple[str, ...] = ()
    api_type: ApiType = Field(ApiType.HTTP, alias="apiType")
    policies: ApiPolicies | None = None

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        # APIM stores the URL suffix without surrounding slashes
        return v.strip().strip("/")

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None or v == "":
            spec_path = info.data.get("spec_path")
            inferred = infer_format(spec_path) if spec_path else None
            return inferred or DEFAULT_API_FORMAT
        if isinstance(v, str):
            return FORMAT_ALIASES.get(v.strip().lower(), v.strip().lower())
        return v

    @field_validator("service_url", mode="before")
    @classmethod
    def empty_service_url(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("protocols")
    @classmethod
    def validate_protocols(cls, v: tuple[Protocol, ...]) -> tuple[Protocol, ...]:
        if not v:
            raise ValueError("protocols must not be empty")
        return v

    @field_validator("protocols", "tags", "product_ids", "gateway_names", mode="before")
    @classmethod
    def dedupe_lists(cls, v: Any) -> Any:
        return _dedupe(v)

    @property
    def spec_is_link(self) -> bool:
        return is_link(self.spec_path)

    @property
    def spec_file(self) -> Path | None:
        """Local spec document, or None for remote links."""
        return None if self.spec_is_link else Path(self.spec_path)

    @property
    def arm_format(self) -> str:
        """APIM content-format value for this spec reference."""
        inline, link = _ARM_FORMATS[self.format]
        return link if self.spec_is_link else inline

    def format_matches_spec(self) -> bool:
        """Check ``format`` against the spec reference extension.

        References with an unknown or missing extension cannot be judged
        and count as consistent.
        """
        inferred = infer_format(self.spec_path)
        if inferred is None:
            return True
        if self.format.is_wsdl or inferred.is_wsdl:
            return self.format.is_wsdl and inferred.is_wsdl
        return self.format.is_json == inferred.is_json


@dataclass(frozen=True)
class ValidationWarning:
    """A non-fatal problem found while loading or checking definitions."""

    message: str
    api_id: str | None = None
    field: str | None = None

    def __str__(self) -> str:
        prefix = f"{self.api_id}: " if self.api_id else ""
        return f"{prefix}{self.message}"


# =============================================================================
# Observed State
# =============================================================================


@dataclass(frozen=True)
class ServiceRef:
    """Identity of the target APIM service."""

    subscription_id: str
    resource_group: str
    service_name: str

    @property
    def resource_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.ApiManagement/service/{self.service_name}"
        )


@dataclass(frozen=True)
class RemoteApiSnapshot:
    """Observed state of one deployed API, fetched fresh each run."""

    api_id: str
    display_name: str
    path: str
    service_url: str | None = None
    revision: str | None = None

    @classmethod
    def from_contract(cls, contract: Any) -> RemoteApiSnapshot:
        """Build a snapshot from an SDK ``ApiContract``."""
        return cls(
            api_id=contract.name,
            display_name=contract.display_name or "",
            path=(contract.path or "").strip("/"),
            service_url=contract.service_url or None,
            revision=getattr(contract, "api_revision", None),
        )


# =============================================================================
# Run Records
# =============================================================================


class SyncAction(str, Enum):
    """Classification of one API against remote state."""

    CREATE = "create"
    UPDATE_NEEDED = "update-needed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class SyncDecision:
    """Per-API classification result."""

    api_id: str
    action: SyncAction
    reason: str | None = None

    @classmethod
    def create(cls, api_id: str, reason: str | None = None) -> SyncDecision:
        return cls(api_id, SyncAction.CREATE, reason)

    @classmethod
    def update(cls, api_id: str, reason: str) -> SyncDecision:
        return cls(api_id, SyncAction.UPDATE_NEEDED, reason)

    @classmethod
    def unchanged(cls, api_id: str) -> SyncDecision:
        return cls(api_id, SyncAction.UNCHANGED)

    @property
    def needs_deploy(self) -> bool:
        return self.action != SyncAction.UNCHANGED

    def describe(self) -> str:
        if self.action == SyncAction.CREATE:
            return f"create ({self.reason})" if self.reason else "create"
        if self.action == SyncAction.UPDATE_NEEDED:
            return f"update ({self.reason})"
        return "unchanged"


class OutcomeStatus(str, Enum):
    """Terminal state of one API within a run."""

    DEPLOYED = "deployed"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SKIPPED = "skipped"
    PLANNED = "planned"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentOutcome:
    """Result of one executor or deletion invocation."""

    api_id: str
    status: OutcomeStatus
    detail: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def deployed(
        cls, api_id: str, detail: str | None = None, duration: float = 0.0
    ) -> DeploymentOutcome:
        return cls(api_id, OutcomeStatus.DEPLOYED, detail, duration)

    @classmethod
    def failed(cls, api_id: str, error: str, duration: float = 0.0) -> DeploymentOutcome:
        return cls(api_id, OutcomeStatus.FAILED, error, duration)

    @classmethod
    def unchanged(cls, api_id: str) -> DeploymentOutcome:
        return cls(api_id, OutcomeStatus.UNCHANGED)

    @classmethod
    def planned(cls, api_id: str, detail: str | None = None) -> DeploymentOutcome:
        return cls(api_id, OutcomeStatus.PLANNED, detail)


class Operation(str, Enum):
    """Pipelines that produce a run summary."""

    SYNC = "sync"
    DEPLOY = "deploy"
    DESTROY = "destroy"


@dataclass
class RunSummary:
    """Aggregated result of one run."""

    operation: Operation
    environment: str
    outcomes: list[DeploymentOutcome] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    dry_run: bool = False

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def bucket(self, status: OutcomeStatus) -> list[str]:
        """API ids in one outcome bucket, in run order."""
        return [o.api_id for o in self.outcomes if o.status == status]

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def failed(self) -> list[str]:
        return self.bucket(OutcomeStatus.FAILED)

    @property
    def exit_code(self) -> int:
        """0 unless an attempted operation failed; dry runs attempt nothing."""
        if self.dry_run:
            return 0
        return 1 if self.failed else 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0
