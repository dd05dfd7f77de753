"""Run summaries for operators and automation.

The exit code alone tells a pipeline whether the run succeeded. The printed
summary is for the human operator: a counts table that is always shown,
followed by one line for every API that did not end up Unchanged.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import click

from .models import (
    DeploymentOutcome,
    Operation,
    OutcomeStatus,
    RunSummary,
    SyncAction,
    SyncDecision,
)

SUMMARY_WIDTH = 60

HEADLINE_ALL_UNCHANGED = "All APIs are up to date! No changes needed."
HEADLINE_NOTHING_DELETED = "No APIs were found to delete - all APIs already removed"
HEADLINE_NO_APIS = "No APIs configured - nothing to do"

_BUCKETS: dict[Operation, tuple[OutcomeStatus, ...]] = {
    Operation.SYNC: (OutcomeStatus.DEPLOYED, OutcomeStatus.UNCHANGED, OutcomeStatus.FAILED),
    Operation.DEPLOY: (OutcomeStatus.DEPLOYED, OutcomeStatus.UNCHANGED, OutcomeStatus.FAILED),
    Operation.DESTROY: (OutcomeStatus.DELETED, OutcomeStatus.SKIPPED, OutcomeStatus.FAILED),
}

_VERBS: dict[Operation, str] = {
    Operation.SYNC: "API synchronization",
    Operation.DEPLOY: "API deployment",
    Operation.DESTROY: "API deletion",
}


def summarize(
    decisions: Sequence[SyncDecision],
    outcomes: Sequence[DeploymentOutcome],
    *,
    operation: Operation,
    environment: str,
    start_time: datetime,
    dry_run: bool = False,
) -> RunSummary:
    """Merge decisions and outcomes into a run summary.

    Unchanged decisions pass straight into the Unchanged bucket. Every
    other decision must have exactly one outcome. Outcomes without a
    decision (deploy and destroy runs) are taken as they are.

    Raises:
        ValueError: If a decision needing action has no outcome.
    """
    by_api = {o.api_id: o for o in outcomes}
    merged: list[DeploymentOutcome] = []
    decided: set[str] = set()

    for decision in decisions:
        decided.add(decision.api_id)
        if decision.action == SyncAction.UNCHANGED:
            merged.append(DeploymentOutcome.unchanged(decision.api_id))
            continue
        outcome = by_api.get(decision.api_id)
        if outcome is None:
            raise ValueError(f"No outcome recorded for '{decision.api_id}'")
        merged.append(outcome)

    merged.extend(o for o in outcomes if o.api_id not in decided)

    return RunSummary(
        operation=operation,
        environment=environment,
        outcomes=merged,
        start_time=start_time,
        end_time=datetime.now(UTC),
        dry_run=dry_run,
    )


def status_label(summary: RunSummary, status: OutcomeStatus) -> str:
    """Operator-facing label for an outcome bucket."""
    if summary.dry_run and summary.operation == Operation.DEPLOY:
        # Dry-run deploys are validation only
        if status == OutcomeStatus.PLANNED:
            return "PASS"
        if status == OutcomeStatus.FAILED:
            return "FAIL"
    if status == OutcomeStatus.PLANNED:
        return "Would delete" if summary.operation == Operation.DESTROY else "Would deploy"
    return status.value.capitalize()


def headline(summary: RunSummary) -> str:
    """One-line verdict distinguishing the kinds of successful run."""
    verb = _VERBS[summary.operation]
    failed = summary.count(OutcomeStatus.FAILED)

    if summary.dry_run:
        if summary.operation == Operation.DEPLOY:
            return (
                f"Validation complete: {summary.count(OutcomeStatus.PLANNED)} passed, "
                f"{failed} failed (dry run, nothing deployed)"
            )
        action = "deleted" if summary.operation == Operation.DESTROY else "deployed"
        return (
            f"Dry run complete: {summary.count(OutcomeStatus.PLANNED)} API(s) "
            f"would be {action}"
        )

    if failed:
        return f"{verb} finished with {failed} failure(s)"
    if summary.total == 0:
        return HEADLINE_NO_APIS
    if summary.operation == Operation.DESTROY:
        if summary.count(OutcomeStatus.SKIPPED) == summary.total:
            return HEADLINE_NOTHING_DELETED
    elif summary.count(OutcomeStatus.UNCHANGED) == summary.total:
        return HEADLINE_ALL_UNCHANGED
    return f"{verb} completed successfully in {summary.duration_seconds:.0f}s"


def render_summary(summary: RunSummary) -> list[str]:
    """Render the summary table and itemized list as plain lines."""
    mode = " (dry run)" if summary.dry_run else ""
    lines = [
        "=" * SUMMARY_WIDTH,
        f"{_VERBS[summary.operation]} summary{mode}",
        "=" * SUMMARY_WIDTH,
        f"Environment:  {summary.environment}",
        f"Total APIs:   {summary.total}",
    ]

    statuses = list(_BUCKETS[summary.operation])
    if summary.dry_run:
        statuses.insert(0, OutcomeStatus.PLANNED)
    for status in statuses:
        label = f"{status_label(summary, status)}:"
        lines.append(f"{label:<14}{summary.count(status)}")
    lines.append(f"Duration:     {summary.duration_seconds:.1f}s")

    itemized = [o for o in summary.outcomes if o.status != OutcomeStatus.UNCHANGED]
    if itemized:
        lines.append("")
        for outcome in itemized:
            detail = f": {outcome.detail}" if outcome.detail else ""
            lines.append(f"  [{status_label(summary, outcome.status)}] {outcome.api_id}{detail}")

    lines.append("")
    lines.append(headline(summary))
    return lines


def print_summary(summary: RunSummary) -> None:
    """Print the summary to stdout with colors."""
    lines = render_summary(summary)
    for line in lines[:-1]:
        click.echo(line)

    if summary.count(OutcomeStatus.FAILED) and not summary.dry_run:
        color = "red"
    elif summary.dry_run:
        color = "yellow"
    else:
        color = "green"
    click.secho(lines[-1], fg=color, bold=True)
