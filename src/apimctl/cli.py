"""Azure API Management CLI (apim).

Usage:
    apim sync dev                          # Deploy only new or changed APIs
    apim deploy apis dev --parallel        # Deploy every declared API
    apim deploy infrastructure dev         # Provision the APIM environment
    apim destroy apis dev --dry-run        # Preview API deletion
    apim destroy infrastructure dev        # Tear the environment down
    apim destroy infrastructure dev --purge  # ...and purge the soft-deleted service
    apim validate dev                      # Check configuration offline
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
from collections.abc import Callable, Coroutine, Sequence
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import DEFAULT_ENVIRONMENTS_DIR, Config, ConfigurationError
from .config_loader import ConfigError, load_api_config
from .credentials import get_credential
from .deletion import ApiPreview, OperationCancelled
from .executor import load_api_template
from .main import run_with_signals, setup_logging
from .manifest import ArtifactRegistry
from .models import RunSummary, ServiceRef
from .pipeline import ApiPipeline
from .provisioner import (
    InfrastructureError,
    InfrastructureParameters,
    InfrastructureProvisioner,
    load_infrastructure_template,
)
from .remote_state import ApiManagementReader, RemoteError
from .reporter import print_summary
from .validation import (
    Check,
    CheckStatus,
    ValidationReport,
    validate_definitions,
    validate_environment,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_INTERRUPTED = 130
CONFIRMATION_WORD = "yes"

_CHECK_COLORS = {
    CheckStatus.PASS: "green",
    CheckStatus.WARN: "yellow",
    CheckStatus.FAIL: "red",
}

# Errors that end a run before or instead of a summary
_FATAL_ERRORS = (ConfigurationError, ConfigError, RemoteError, InfrastructureError)


def logging_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add --verbose, --debug and --log-format and configure logging from them."""

    @click.option("--verbose", "-v", is_flag=True, help="Show structured context in log lines")
    @click.option("--debug", is_flag=True, help="Enable debug logging")
    @click.option(
        "--log-format",
        type=click.Choice(["text", "json"]),
        default="text",
        envvar="LOG_FORMAT",
        show_default=True,
        help="Log output format",
    )
    @functools.wraps(func)
    def wrapper(*args: Any, verbose: bool, debug: bool, log_format: str, **kwargs: Any) -> Any:
        setup_logging(
            level=logging.DEBUG if debug else logging.INFO,
            json_output=log_format == "json",
            verbose=verbose,
        )
        return func(*args, **kwargs)

    return wrapper


def load_config(ctx: click.Context, environment: str) -> Config:
    """Load an environment's configuration or abort the command."""
    try:
        return Config.from_environment(environment, ctx.obj["environments_dir"])
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def run_async(operation: Coroutine[Any, Any, T], artifacts: ArtifactRegistry) -> T:
    """Run a coroutine to completion, mapping failures to exit codes.

    Raises:
        click.ClickException: On run-fatal errors (exit 1).
    """
    try:
        return asyncio.run(run_with_signals(operation, artifacts))
    except (asyncio.CancelledError, KeyboardInterrupt):
        click.secho("Interrupted", fg="yellow", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except OperationCancelled as e:
        click.echo(str(e))
        sys.exit(1)
    except _FATAL_ERRORS as e:
        logger.debug("Run aborted", exc_info=True)
        raise click.ClickException(str(e)) from e


def finish(summary: RunSummary) -> None:
    """Print the summary and exit with its code."""
    print_summary(summary)
    sys.exit(summary.exit_code)


def prompt_confirmation(message: str) -> bool:
    click.secho(message, fg="yellow")
    reply = click.prompt(
        f"Type '{CONFIRMATION_WORD}' to continue", default="", show_default=False
    )
    return reply.strip().lower() == CONFIRMATION_WORD


def confirm_deletion(previews: Sequence[ApiPreview]) -> bool:
    """List what is about to be deleted and ask the operator."""
    click.echo("The following APIs will be deleted:")
    for preview in previews:
        click.echo(f"  - {preview.api_id} ({preview.display_name}): {preview.label}")
    return prompt_confirmation("This cannot be undone.")


def echo_check(check: Check) -> None:
    scope = f"{check.api_id}: " if check.api_id else ""
    click.secho(f"[{check.status.value}] ", fg=_CHECK_COLORS[check.status], nl=False)
    click.echo(f"{scope}{check.message}")


def _api_config_path(value: str | None) -> Path | None:
    return Path(value) if value else None


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="apim")
@click.option(
    "--environments-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_ENVIRONMENTS_DIR,
    envvar="APIM_ENVIRONMENTS_DIR",
    show_default=True,
    help="Directory holding one sub-directory per environment",
)
@click.pass_context
def cli(ctx: click.Context, environments_dir: Path) -> None:
    """Azure API Management CLI (apim).

    Deploys, synchronizes and removes APIM APIs declared in an
    environment's api-config document.

    \b
    Quick Start:
        apim validate dev     # Check configuration
        apim sync dev         # Deploy new and changed APIs
    """
    ctx.ensure_object(dict)
    ctx.obj["environments_dir"] = environments_dir


# =============================================================================
# Sync Command
# =============================================================================


@cli.command()
@click.argument("environment")
@click.argument("api_config", required=False)
@click.option("--force-all", "--force", "force", is_flag=True, help="Redeploy every API")
@click.option("--dry-run", is_flag=True, help="Classify without deploying")
@click.option("--parallel", is_flag=True, help="Accepted for compatibility; sync is sequential")
@logging_options
@click.pass_context
def sync(
    ctx: click.Context,
    environment: str,
    api_config: str | None,
    force: bool,
    dry_run: bool,
    parallel: bool,
) -> None:
    """Deploy only APIs that are new or changed.

    \b
    Examples:
        apim sync dev
        apim sync prod --force-all
        apim sync dev ./my-apis.yaml --dry-run
    """
    config = load_config(ctx, environment)
    pipeline = ApiPipeline(config, api_config=_api_config_path(api_config))
    summary = run_async(
        pipeline.sync(force=force, dry_run=dry_run, parallel=parallel), pipeline.artifacts
    )
    finish(summary)


# =============================================================================
# Deploy Commands
# =============================================================================


@cli.group()
def deploy() -> None:
    """Deploy APIs or infrastructure."""
    pass


@deploy.command("apis")
@click.argument("environment")
@click.argument("api_config", required=False)
@click.option(
    "--force-all",
    "--force",
    "force",
    is_flag=True,
    help="Accepted for compatibility; deploy always redeploys",
)
@click.option("--parallel", is_flag=True, help="Deploy APIs concurrently")
@click.option("--dry-run", is_flag=True, help="Validate locally without deploying")
@logging_options
@click.pass_context
def deploy_apis(
    ctx: click.Context,
    environment: str,
    api_config: str | None,
    force: bool,
    parallel: bool,
    dry_run: bool,
) -> None:
    """Deploy every API declared for an environment."""
    config = load_config(ctx, environment)
    pipeline = ApiPipeline(config, api_config=_api_config_path(api_config))
    summary = run_async(
        pipeline.deploy(force=force, parallel=parallel, dry_run=dry_run), pipeline.artifacts
    )
    finish(summary)


def _provisioner(config: Config) -> InfrastructureProvisioner:
    try:
        parameters = InfrastructureParameters.from_values(config.variables)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    credential = get_credential(config.variables)
    reader = ApiManagementReader(
        credential,
        ServiceRef(config.subscription_id, config.resource_group, config.apim_name),
        timeout_seconds=config.remote_timeout_seconds,
    )
    return InfrastructureProvisioner(config, credential, parameters, reader)


@deploy.command("infrastructure")
@click.argument("environment")
@click.option("--dry-run", is_flag=True, help="Validate the template without deploying")
@logging_options
@click.pass_context
def deploy_infrastructure(ctx: click.Context, environment: str, dry_run: bool) -> None:
    """Provision network, NSG and the APIM service."""
    config = load_config(ctx, environment)
    try:
        template = load_infrastructure_template(config.infra_template_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    provisioner = _provisioner(config)
    params = provisioner.parameters
    click.echo(f"Environment:    {config.environment}")
    click.echo(f"Resource group: {config.resource_group}")
    click.echo(f"APIM service:   {params.apim_name} ({params.sku_name} x{params.sku_capacity})")
    click.echo(f"Location:       {params.location}")

    outputs = run_async(
        provisioner.apply(template, dry_run=dry_run), ArtifactRegistry(config.work_dir)
    )

    if dry_run:
        click.secho("Template validation passed (dry run, nothing deployed)", fg="yellow")
        return
    click.echo(f"APIM service:    {outputs.service_resource_id}")
    click.echo(f"Virtual network: {outputs.network_resource_id}")
    click.secho("Infrastructure deployed", fg="green", bold=True)


# =============================================================================
# Destroy Commands
# =============================================================================


@cli.group()
def destroy() -> None:
    """Delete APIs or infrastructure."""
    pass


@destroy.command("apis")
@click.argument("environment")
@click.argument("api_config", required=False)
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option(
    "--force", "--force-all", "force", is_flag=True, help="Skip the confirmation prompt"
)
@click.option(
    "--parallel", is_flag=True, help="Accepted for compatibility; deletion is sequential"
)
@logging_options
@click.pass_context
def destroy_apis(
    ctx: click.Context,
    environment: str,
    api_config: str | None,
    dry_run: bool,
    force: bool,
    parallel: bool,
) -> None:
    """Delete every API declared for an environment."""
    config = load_config(ctx, environment)
    pipeline = ApiPipeline(config, api_config=_api_config_path(api_config))
    summary = run_async(
        pipeline.destroy(
            force=force, dry_run=dry_run, parallel=parallel, confirm=confirm_deletion
        ),
        pipeline.artifacts,
    )
    finish(summary)


def _purge_soft_deleted(
    provisioner: InfrastructureProvisioner, artifacts: ArtifactRegistry, *, confirm: bool
) -> None:
    """Purge a soft-deleted instance holding the service name, if there is one."""
    name = provisioner.parameters.apim_name
    if not run_async(provisioner.soft_deleted_service_exists(), artifacts):
        click.echo(f"No soft-deleted APIM service found for '{name}'")
        return

    message = (
        f"Soft-deleted APIM service '{name}' found. Purging deletes it permanently "
        "and it cannot be recovered."
    )
    if confirm and not prompt_confirmation(message):
        click.echo("Operation cancelled by user")
        sys.exit(1)

    run_async(provisioner.purge_soft_deleted_service(), artifacts)
    click.secho(f"Purged soft-deleted APIM service '{name}'", fg="green")


@destroy.command("infrastructure")
@click.argument("environment")
@click.option("--force", is_flag=True, help="Skip the confirmation prompts")
@click.option(
    "--keep-resource-group",
    "--keep-rg",
    "keep_resource_group",
    is_flag=True,
    help="Delete only the APIM service and network, not the resource group",
)
@click.option(
    "--purge",
    is_flag=True,
    help="Purge the soft-deleted APIM service so its name can be reused at once",
)
@logging_options
@click.pass_context
def destroy_infrastructure(
    ctx: click.Context,
    environment: str,
    force: bool,
    keep_resource_group: bool,
    purge: bool,
) -> None:
    """Tear down an environment's infrastructure.

    \b
    Examples:
        apim destroy infrastructure dev
        apim destroy infrastructure dev --keep-rg
        apim destroy infrastructure dev --purge
    """
    config = load_config(ctx, environment)
    provisioner = _provisioner(config)
    artifacts = ArtifactRegistry(config.work_dir)

    if purge:
        # A leftover instance from an earlier teardown blocks the name too
        _purge_soft_deleted(provisioner, artifacts, confirm=not force)

    if not run_async(provisioner.resource_group_exists(), artifacts):
        click.echo(f"Resource group '{config.resource_group}' not found, nothing to destroy")
        return
    if keep_resource_group and not run_async(provisioner.exists(), artifacts):
        click.echo(f"APIM service '{config.apim_name}' not found, nothing to destroy")
        return

    target = (
        f"APIM service '{config.apim_name}' and its network"
        if keep_resource_group
        else f"resource group '{config.resource_group}' and everything in it"
    )
    if purge:
        target += ", purging the APIM service afterwards"
    if not force and not prompt_confirmation(f"This will permanently delete {target}."):
        click.echo("Operation cancelled by user")
        sys.exit(1)

    run_async(provisioner.destroy(delete_resource_group=not keep_resource_group), artifacts)
    click.secho(f"Deleted {target}", fg="green", bold=True)

    if purge:
        _purge_soft_deleted(provisioner, artifacts, confirm=False)


# =============================================================================
# Validate Command
# =============================================================================


@cli.command()
@click.argument("environment")
@click.argument("api_config", required=False)
@logging_options
@click.pass_context
def validate(ctx: click.Context, environment: str, api_config: str | None) -> None:
    """Check environment and API configuration without calling Azure."""
    report = ValidationReport()

    try:
        config = Config.from_environment(environment, ctx.obj["environments_dir"])
    except ConfigurationError as e:
        report.extend([Check.fail(str(e))])
        config = None

    if config is not None:
        report.extend([Check.passed(f"environment '{environment}' loaded")])
        report.extend(validate_environment(config.variables))

        try:
            load_api_template(config.api_template_path)
        except ConfigurationError as e:
            report.extend([Check.fail(str(e))])
        else:
            report.extend([Check.passed(f"API template found: {config.api_template_path}")])

        source = _api_config_path(api_config) or config.environment_dir or Path.cwd()
        try:
            document = load_api_config(source, config.variables)
        except ConfigError as e:
            report.extend([Check.fail(str(e))])
        else:
            report.extend(
                [
                    Check.passed(
                        f"API config valid: {document.source} "
                        f"({len(document.definitions)} API(s), {document.format.value})"
                    )
                ]
            )
            report.extend(validate_definitions(document.definitions, document.warnings))

    for check in report.checks:
        echo_check(check)

    click.echo("")
    click.secho(
        f"Validation: {report.count(CheckStatus.PASS)} passed, "
        f"{report.count(CheckStatus.WARN)} warning(s), "
        f"{report.count(CheckStatus.FAIL)} failed",
        fg="green" if report.ok else "red",
        bold=True,
    )
    sys.exit(0 if report.ok else 1)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
