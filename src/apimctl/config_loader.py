"""API config document loading with validation.

The desired state is a list of API definitions written as YAML or JSON.
Both decode to the same shape. ``${NAME}`` placeholders in string values
are resolved against an explicit variable mapping before validation.

All problems with the document itself are fatal and raised as ConfigError
before any remote call is made. Unset placeholders and format/extension
mismatches are collected as ValidationWarning records instead.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import ApiDefinition, ValidationWarning, infer_format

logger = logging.getLogger(__name__)

CONFIG_BASENAME = "api-config"
# Auto-discovery order: YAML first
CONFIG_EXTENSIONS: tuple[str, ...] = (".yaml", ".yml", ".json")
REQUIRED_FIELDS: tuple[str, ...] = ("apiId", "displayName", "path", "specPath")

# Lines inspected when the extension does not reveal the syntax
SNIFF_LINES = 5

PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_YAML_KEY_PATTERN = re.compile(r"^[A-Za-z_\"'][\w\"' -]*:")


class ConfigErrorKind(str, Enum):
    """Categories of fatal config document problems."""

    SYNTAX = "syntax"
    MISSING_REQUIRED_FIELD = "missing-required-field"
    NOT_A_LIST = "not-a-list"
    INVALID_FIELD = "invalid-field"
    DUPLICATE_API_ID = "duplicate-api-id"
    NOT_FOUND = "not-found"


class ConfigError(Exception):
    """Raised when the API config document cannot be loaded or validated."""

    def __init__(self, kind: ConfigErrorKind, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.path = path


class ConfigFormat(str, Enum):
    """Surface syntaxes of the config document."""

    JSON = "json"
    YAML = "yaml"


@dataclass(frozen=True)
class ApiConfigDocument:
    """Normalized result of loading one config document."""

    source: Path
    format: ConfigFormat
    definitions: tuple[ApiDefinition, ...]
    warnings: tuple[ValidationWarning, ...] = ()

    @property
    def api_ids(self) -> list[str]:
        return [d.api_id for d in self.definitions]


def detect_config_format(path: Path, content: str | None = None) -> ConfigFormat:
    """Detect document syntax by extension, sniffing content otherwise.

    Args:
        path: Document path.
        content: Document text, read from ``path`` when not given.

    Raises:
        ConfigError: If the syntax cannot be determined.
    """
    suffix = path.suffix.lower()
    if suffix == ".json":
        return ConfigFormat.JSON
    if suffix in (".yaml", ".yml"):
        return ConfigFormat.YAML

    if content is None:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(
                ConfigErrorKind.NOT_FOUND, f"Failed to read config file {path}: {e}", path
            ) from e

    for line in content.splitlines()[:SNIFF_LINES]:
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(("{", "[")):
            return ConfigFormat.JSON
        if stripped.startswith(("-", "#", "---")) or _YAML_KEY_PATTERN.match(stripped):
            return ConfigFormat.YAML
        break

    raise ConfigError(
        ConfigErrorKind.SYNTAX,
        f"Cannot determine config format of {path}: expected a .json, .yaml or .yml file",
        path,
    )


def find_config_file(base: Path) -> Path:
    """Resolve a config document from a file, stem or directory path.

    A directory is searched for ``api-config.{yaml,yml,json}``. A path
    without a known extension is tried with each supported extension.

    Raises:
        ConfigError: If no document is found.
    """
    if base.is_dir():
        candidates = [base / f"{CONFIG_BASENAME}{ext}" for ext in CONFIG_EXTENSIONS]
    elif base.is_file():
        return base
    elif base.suffix.lower() in CONFIG_EXTENSIONS:
        candidates = []
    else:
        candidates = [base.with_name(base.name + ext) for ext in CONFIG_EXTENSIONS]

    for candidate in candidates:
        if candidate.is_file():
            logger.debug("Discovered config file %s", candidate)
            return candidate

    raise ConfigError(ConfigErrorKind.NOT_FOUND, f"Config file not found: {base}", base)


def substitute_placeholders(
    value: Any,
    variables: Mapping[str, str],
    *,
    warnings: list[ValidationWarning] | None = None,
    api_id: str | None = None,
    location: str = "",
) -> Any:
    """Resolve ``${NAME}`` placeholders recursively.

    Unset names are left verbatim and reported once per occurrence, both
    as a log warning and in ``warnings`` when a list is supplied.
    """
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name in variables:
                return variables[name]
            logger.warning(
                "Unset variable in config, leaving placeholder",
                extra={"variable": name, "api_id": api_id, "field": location or None},
            )
            if warnings is not None:
                warnings.append(
                    ValidationWarning(
                        f"variable {name} is not set; '${{{name}}}' left as-is",
                        api_id=api_id,
                        field=location or None,
                    )
                )
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(replace, value)

    if isinstance(value, dict):
        return {
            key: substitute_placeholders(
                item,
                variables,
                warnings=warnings,
                api_id=api_id,
                location=f"{location}.{key}" if location else str(key),
            )
            for key, item in value.items()
        }

    if isinstance(value, list):
        return [
            substitute_placeholders(
                item,
                variables,
                warnings=warnings,
                api_id=api_id,
                location=f"{location}[{index}]",
            )
            for index, item in enumerate(value)
        ]

    return value


def _decode(path: Path, content: str, config_format: ConfigFormat) -> Any:
    try:
        if config_format == ConfigFormat.JSON:
            return json.loads(content)
        return yaml.safe_load(content)
    except json.JSONDecodeError as e:
        raise ConfigError(ConfigErrorKind.SYNTAX, f"Invalid JSON in {path}: {e}", path) from e
    except yaml.YAMLError as e:
        raise ConfigError(ConfigErrorKind.SYNTAX, f"Invalid YAML in {path}: {e}", path) from e


def _format_validation_error(path: Path, index: int, error: ValidationError) -> str:
    # Format Pydantic validation errors for readability
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - [{index}].{loc}: {item['msg']}")
    error_list = "\n".join(errors)
    return f"Validation failed for {path}:\n{error_list}"


def load_api_config(
    path: Path,
    variables: Mapping[str, str] | None = None,
) -> ApiConfigDocument:
    """Load and validate an API config document.

    Args:
        path: Document file, stem, or directory to auto-discover in.
        variables: Substitution source for ``${NAME}`` placeholders.

    Returns:
        The normalized document with definitions in input order.

    Raises:
        ConfigError: If the document is missing, malformed or invalid.
    """
    variables = variables or {}
    path = find_config_file(path)

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigError(
            ConfigErrorKind.NOT_FOUND, f"Failed to stat config file {path}: {e}", path
        ) from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigError(
            ConfigErrorKind.SYNTAX,
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}",
            path,
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(
            ConfigErrorKind.SYNTAX, f"Failed to read config file {path}: {e}", path
        ) from e

    config_format = detect_config_format(path, content)
    raw_data = _decode(path, content, config_format)

    if not isinstance(raw_data, list):
        raise ConfigError(
            ConfigErrorKind.NOT_A_LIST,
            f"Config file must contain a list of API definitions, "
            f"got {type(raw_data).__name__}: {path}",
            path,
        )

    warnings: list[ValidationWarning] = []
    definitions: list[ApiDefinition] = []
    seen: dict[str, int] = {}

    for index, item in enumerate(raw_data):
        if not isinstance(item, dict):
            raise ConfigError(
                ConfigErrorKind.INVALID_FIELD,
                f"Entry [{index}] in {path} must be a mapping, got {type(item).__name__}",
                path,
            )

        missing = [name for name in REQUIRED_FIELDS if item.get(name) is None]
        if missing:
            label = item.get("apiId") or f"entry [{index}]"
            raise ConfigError(
                ConfigErrorKind.MISSING_REQUIRED_FIELD,
                f"{label} in {path} is missing required field(s): {', '.join(missing)}",
                path,
            )

        api_id = item.get("apiId") if isinstance(item.get("apiId"), str) else None
        resolved = substitute_placeholders(item, variables, warnings=warnings, api_id=api_id)

        try:
            definition = ApiDefinition.model_validate(resolved)
        except ValidationError as e:
            raise ConfigError(
                ConfigErrorKind.INVALID_FIELD, _format_validation_error(path, index, e), path
            ) from e

        if definition.api_id in seen:
            raise ConfigError(
                ConfigErrorKind.DUPLICATE_API_ID,
                f"Duplicate apiId '{definition.api_id}' in {path} "
                f"(entries [{seen[definition.api_id]}] and [{index}])",
                path,
            )
        seen[definition.api_id] = index

        warning = None
        if not resolved.get("format") and infer_format(definition.spec_path) is None:
            warning = ValidationWarning(
                "format not given and not inferable from specPath, "
                f"assuming '{definition.format.value}': {definition.spec_path}",
                api_id=definition.api_id,
                field="format",
            )
        elif not definition.format_matches_spec():
            warning = ValidationWarning(
                f"format '{definition.format.value}' "
                f"does not match specPath extension: {definition.spec_path}",
                api_id=definition.api_id,
                field="format",
            )
        if warning is not None:
            logger.warning(str(warning), extra={"api_id": definition.api_id})
            warnings.append(warning)

        definitions.append(definition)

    if not definitions:
        logger.warning("No APIs found in config file", extra={"path": str(path)})

    logger.info(
        "Loaded %d API definition(s) from %s",
        len(definitions),
        path,
        extra={"format": config_format.value, "warnings": len(warnings)},
    )
    return ApiConfigDocument(
        source=path,
        format=config_format,
        definitions=tuple(definitions),
        warnings=tuple(warnings),
    )
