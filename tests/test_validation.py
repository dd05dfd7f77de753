"""Tests for offline validation checks."""

from pathlib import Path

import pytest

from apimctl.config import MAX_SPEC_FILE_SIZE_BYTES
from apimctl.models import ApiDefinition, ValidationWarning
from apimctl.validation import (
    Check,
    CheckStatus,
    SpecNotFoundError,
    ValidationReport,
    preflight,
    read_spec_value,
    validate_definitions,
    validate_environment,
)

VALID_ENVIRONMENT = {
    "ENVIRONMENT": "dev",
    "RESOURCE_GROUP": "rg-apim-dev",
    "APIM_NAME": "apim-test",
    "LOCATION": "westeurope",
    "SKU_NAME": "Developer",
    "SKU_CAPACITY": "1",
    "PUBLISHER_EMAIL": "api-team@example.com",
    "PUBLISHER_NAME": "Example API Team",
}


def definition(spec_path: str, **overrides: object) -> ApiDefinition:
    data: dict[str, object] = {
        "apiId": "orders",
        "displayName": "Orders API",
        "path": "orders",
        "specPath": spec_path,
    }
    data.update(overrides)
    return ApiDefinition.model_validate(data)


def statuses(checks: list[Check]) -> list[CheckStatus]:
    return [c.status for c in checks]


class TestReadSpecValue:
    """Tests for read_spec_value."""

    def test_reads_local_file(self, specs_dir: Path) -> None:
        spec = specs_dir / "orders.yaml"

        assert read_spec_value(definition(str(spec))) == spec.read_text()

    def test_link_passed_through(self) -> None:
        url = "https://example.com/openapi.yaml"

        assert read_spec_value(definition(url)) == url

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecNotFoundError) as exc_info:
            read_spec_value(definition(str(tmp_path / "missing.yaml")))

        assert exc_info.value.reason == "not found"
        assert exc_info.value.api_id == "orders"

    def test_oversized_file(self, tmp_path: Path) -> None:
        spec = tmp_path / "huge.yaml"
        spec.write_bytes(b"x" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecNotFoundError) as exc_info:
            read_spec_value(definition(str(spec)))

        assert "exceeds" in exc_info.value.reason


class TestPreflight:
    """Tests for per-definition local checks."""

    def test_all_pass(self, specs_dir: Path) -> None:
        checks = preflight(definition(str(specs_dir / "orders.yaml")))

        assert statuses(checks) == [CheckStatus.PASS, CheckStatus.PASS]
        assert all(c.api_id == "orders" for c in checks)

    def test_missing_spec_fails(self, tmp_path: Path) -> None:
        checks = preflight(definition(str(tmp_path / "missing.yaml")))

        assert checks[0].status == CheckStatus.FAIL
        assert "not found" in checks[0].message

    def test_warnings(self, specs_dir: Path) -> None:
        """Test format mismatch, odd path and unresolved placeholders."""
        checks = preflight(
            definition(
                str(specs_dir / "orders.yaml"),
                format="wsdl",
                path="orders v1",
                serviceUrl="https://${BACKEND_HOST}/orders",
            )
        )

        assert statuses(checks) == [
            CheckStatus.PASS,
            CheckStatus.WARN,
            CheckStatus.WARN,
            CheckStatus.WARN,
        ]

    def test_validate_definitions_includes_loader_warnings(self, specs_dir: Path) -> None:
        warnings = [ValidationWarning("variable X is not set", api_id="orders")]

        checks = validate_definitions([definition(str(specs_dir / "orders.yaml"))], warnings)

        assert checks[0] == Check.warn("variable X is not set", "orders")
        assert len(checks) == 3


class TestValidateEnvironment:
    """Tests for environment variable checks."""

    def test_valid(self) -> None:
        checks = validate_environment(VALID_ENVIRONMENT)

        assert CheckStatus.FAIL not in statuses(checks)
        assert CheckStatus.WARN not in statuses(checks)

    def test_missing_required(self) -> None:
        values = dict(VALID_ENVIRONMENT, PUBLISHER_NAME="")
        del values["LOCATION"]

        failures = [c.message for c in validate_environment(values) if c.status == CheckStatus.FAIL]

        assert failures == [
            "required variable missing or empty: LOCATION",
            "required variable missing or empty: PUBLISHER_NAME",
        ]

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("PUBLISHER_EMAIL", "not-an-email"),
            ("SKU_NAME", "Gold"),
            ("SKU_CAPACITY", "two"),
            ("VNET_CIDR", "10.0.0.0"),
            ("SUBNET_CIDR", "10.0.300.0/24"),
        ],
    )
    def test_invalid_values(self, key: str, value: str) -> None:
        checks = validate_environment(dict(VALID_ENVIRONMENT, **{key: value}))

        assert CheckStatus.FAIL in statuses(checks)

    def test_odd_location_only_warns(self) -> None:
        checks = validate_environment(dict(VALID_ENVIRONMENT, LOCATION="West Europe"))

        assert CheckStatus.WARN in statuses(checks)
        assert CheckStatus.FAIL not in statuses(checks)


class TestValidationReport:
    """Tests for ValidationReport."""

    def test_counts(self) -> None:
        report = ValidationReport()
        report.extend([Check.passed("a"), Check.warn("b"), Check.fail("c")])

        assert report.count(CheckStatus.PASS) == 1
        assert report.failures == [Check.fail("c")]
        assert not report.ok
