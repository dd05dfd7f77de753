"""Tests for the API data model."""

import pytest
from pydantic import ValidationError

from apimctl.models import (
    DEFAULT_API_FORMAT,
    ApiDefinition,
    ApiFormat,
    ApiPolicies,
    ApiType,
    DeploymentOutcome,
    Operation,
    OutcomeStatus,
    Protocol,
    RemoteApiSnapshot,
    RunSummary,
    ServiceRef,
    SyncAction,
    SyncDecision,
    infer_format,
)


def definition(**overrides: object) -> ApiDefinition:
    data: dict[str, object] = {
        "apiId": "orders",
        "displayName": "Orders API",
        "path": "orders",
        "specPath": "specs/orders.yaml",
    }
    data.update(overrides)
    return ApiDefinition.model_validate(data)


class TestApiDefinition:
    """Tests for ApiDefinition model."""

    def test_defaults(self) -> None:
        """Test defaults for optional fields."""
        api = definition()

        assert api.format == ApiFormat.OPENAPI_YAML
        assert api.service_url is None
        assert api.protocols == (Protocol.HTTPS,)
        assert api.subscription_required is False
        assert api.product_ids == ("unlimited",)
        assert api.gateway_names == ("managed",)
        assert api.api_type == ApiType.HTTP
        assert api.policies is None

    def test_populate_by_field_name(self) -> None:
        """Test that snake_case field names work alongside camelCase aliases."""
        api = ApiDefinition(
            api_id="orders",
            display_name="Orders API",
            path="orders",
            spec_path="orders.json",
        )

        assert api.format == ApiFormat.OPENAPI_JSON

    def test_path_slashes_stripped(self) -> None:
        assert definition(path=" /orders/v1/ ").path == "orders/v1"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("openapi+json", ApiFormat.OPENAPI_JSON),
            ("openapi", ApiFormat.OPENAPI_YAML),
            ("OpenAPI-JSON", ApiFormat.OPENAPI_JSON),
            ("swagger-link-json", ApiFormat.SWAGGER_JSON),
            ("wsdl", ApiFormat.WSDL),
        ],
    )
    def test_format_aliases(self, value: str, expected: ApiFormat) -> None:
        """Test accepted format spellings."""
        assert definition(format=value).format == expected

    def test_unknown_format(self) -> None:
        with pytest.raises(ValidationError):
            definition(format="raml")

    def test_format_defaults_when_not_inferable(self) -> None:
        """Test that a spec without a known extension falls back to OpenAPI JSON."""
        api = definition(specPath="specs/orders.txt")

        assert api.format == DEFAULT_API_FORMAT == ApiFormat.OPENAPI_JSON
        assert api.arm_format == "openapi+json"
        assert api.format_matches_spec()

    def test_blank_service_url_is_none(self) -> None:
        assert definition(serviceUrl="  ").service_url is None

    def test_lists_deduplicated(self) -> None:
        """Test that repeated list entries collapse in order."""
        api = definition(
            productIds=["starter", "unlimited", "starter"],
            protocols=["https", "http", "https"],
        )

        assert api.product_ids == ("starter", "unlimited")
        assert api.protocols == (Protocol.HTTPS, Protocol.HTTP)

    def test_empty_protocols_rejected(self) -> None:
        with pytest.raises(ValidationError):
            definition(protocols=[])

    def test_subscription_required_is_strict(self) -> None:
        """Test that string booleans are not coerced."""
        with pytest.raises(ValidationError):
            definition(subscriptionRequired="yes")

    def test_invalid_api_id(self) -> None:
        with pytest.raises(ValidationError):
            definition(apiId="orders/v1")

    def test_immutable(self) -> None:
        api = definition()

        with pytest.raises(ValidationError):
            api.display_name = "Changed"  # type: ignore[misc]

    def test_unknown_fields_ignored(self) -> None:
        assert definition(owner="team-a").api_id == "orders"


class TestSpecReference:
    """Tests for spec path handling."""

    def test_local_file(self) -> None:
        api = definition()

        assert api.spec_is_link is False
        assert api.spec_file is not None
        assert api.spec_file.name == "orders.yaml"
        assert api.arm_format == "openapi"

    def test_link(self) -> None:
        """Test that a URL spec uses the link content format."""
        api = definition(specPath="https://example.com/openapi.json")

        assert api.spec_is_link is True
        assert api.spec_file is None
        assert api.arm_format == "openapi+json-link"

    def test_wsdl_link_from_query(self) -> None:
        assert infer_format("https://example.com/service.svc?wsdl") == ApiFormat.WSDL_LINK

    @pytest.mark.parametrize(
        ("spec_path", "fmt", "matches"),
        [
            ("orders.yaml", "openapi", True),
            ("orders.yaml", "openapi+json", False),
            ("orders.json", "swagger-json", True),
            ("service.wsdl", "openapi", False),
            ("service.wsdl", "wsdl", True),
            ("https://example.com/spec", "openapi", True),
        ],
    )
    def test_format_matches_spec(self, spec_path: str, fmt: str, matches: bool) -> None:
        assert definition(specPath=spec_path, format=fmt).format_matches_spec() is matches


class TestApiPolicies:
    """Tests for policy rendering."""

    def test_to_xml_keeps_base_first(self) -> None:
        """Test that every section starts with <base />."""
        policies = ApiPolicies.model_validate(
            {
                "inbound": ['<set-header name="X-Env" exists-action="override" />'],
                "on-error": ["<trace />"],
            }
        )

        xml = policies.to_xml()

        assert xml.startswith("<policies><inbound><base /><set-header")
        assert "<backend><base /></backend>" in xml
        assert "<on-error><base /><trace /></on-error>" in xml

    def test_empty(self) -> None:
        assert ApiPolicies().is_empty
        assert not ApiPolicies(outbound=("<trace />",)).is_empty


class TestRemoteState:
    """Tests for observed-state records."""

    def test_service_resource_id(self) -> None:
        service = ServiceRef("sub-id", "rg-apim", "apim-dev")

        assert service.resource_id == (
            "/subscriptions/sub-id/resourceGroups/rg-apim"
            "/providers/Microsoft.ApiManagement/service/apim-dev"
        )

    def test_snapshot_from_contract(self) -> None:
        """Test snapshot normalization of an SDK contract."""

        class Contract:
            name = "orders"
            display_name = "Orders API"
            path = "/orders/"
            service_url = ""
            api_revision = "3"

        snapshot = RemoteApiSnapshot.from_contract(Contract())

        assert snapshot == RemoteApiSnapshot("orders", "Orders API", "orders", None, "3")


class TestRunRecords:
    """Tests for decisions, outcomes and summaries."""

    def test_decision_describe(self) -> None:
        assert SyncDecision.create("a").describe() == "create"
        assert SyncDecision.create("a", "why").describe() == "create (why)"
        assert SyncDecision.update("a", "path changed").describe() == "update (path changed)"
        assert SyncDecision.unchanged("a").describe() == "unchanged"
        assert SyncDecision.unchanged("a").needs_deploy is False
        assert SyncDecision.update("a", "forced").action == SyncAction.UPDATE_NEEDED

    def test_exit_code_zero_without_failures(self) -> None:
        summary = RunSummary(
            Operation.SYNC,
            "dev",
            [DeploymentOutcome.deployed("a"), DeploymentOutcome.unchanged("b")],
        )

        assert summary.exit_code == 0
        assert summary.success

    def test_exit_code_one_on_failure(self) -> None:
        summary = RunSummary(
            Operation.DEPLOY,
            "dev",
            [DeploymentOutcome.deployed("a"), DeploymentOutcome.failed("b", "boom")],
        )

        assert summary.exit_code == 1
        assert summary.failed == ["b"]

    def test_dry_run_always_exits_zero(self) -> None:
        """Test that a dry run reporting failures still exits 0."""
        summary = RunSummary(
            Operation.DEPLOY,
            "dev",
            [DeploymentOutcome.failed("a", "spec not found")],
            dry_run=True,
        )

        assert summary.exit_code == 0

    def test_buckets_preserve_order(self) -> None:
        summary = RunSummary(
            Operation.DESTROY,
            "dev",
            [
                DeploymentOutcome("c", OutcomeStatus.DELETED),
                DeploymentOutcome("a", OutcomeStatus.SKIPPED),
                DeploymentOutcome("b", OutcomeStatus.DELETED),
            ],
        )

        assert summary.bucket(OutcomeStatus.DELETED) == ["c", "b"]
        assert summary.count(OutcomeStatus.SKIPPED) == 1
        assert summary.total == 3
        assert summary.duration_seconds == 0.0
