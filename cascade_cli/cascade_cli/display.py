"""Rich output formatting for the Cadenza CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from cascade_engine.models.audit import PagedAuditEntries
    from cascade_engine.models.impact import DeletionImpact
    from cascade_engine.models.issues import CleanupResult, RepairResult, ValidationResult
    from cascade_engine.models.operation import OperationResult
    from cascade_engine.models.snapshot import RollbackResult, SnapshotInfo


# ---------------------------------------------------------------------------
# Colour mapping
# ---------------------------------------------------------------------------

_COLOURS: dict[str, str] = {
    "completed": "green",
    "healthy": "green",
    "low": "green",
    "warning": "yellow",
    "medium": "yellow",
    "failed": "red",
    "critical": "bold red",
    "high": "red",
    "cancelled": "dim red",
}


def _coloured(value: str) -> str:
    colour = _COLOURS.get(value, "white")
    return f"[{colour}]{value}[/{colour}]"


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


def display_impact(console: Console, impact: DeletionImpact) -> None:
    """Render a deletion preview: per-collection counts plus warnings."""
    header = [
        f"[bold]Target:[/bold]     {impact.target}",
        f"[bold]Records:[/bold]    {impact.total_records}",
        f"[bold]Risk:[/bold]       {_coloured(impact.risk_level.value)}",
        f"[bold]Proceed:[/bold]    {'yes' if impact.can_proceed else '[red]no[/red]'}",
        f"[bold]Confirm:[/bold]    {'required' if impact.requires_confirmation else 'not required'}",
        f"[bold]Est. time:[/bold]  {impact.estimated_duration_seconds:.1f}s",
    ]
    console.print(Panel("\n".join(header), title="Deletion Preview", border_style="blue"))

    if impact.affected_collections:
        table = Table(title="Affected Collections", show_lines=False, pad_edge=True, expand=False)
        table.add_column("Collection", style="bold")
        table.add_column("Records", justify="right")
        for collection in impact.affected_collections:
            table.add_row(collection, str(impact.counts.get(collection, 0)))
        console.print(table)
    else:
        console.print("[dim]No dependent records.[/dim]")

    for warning in impact.warnings:
        console.print(f"  {_coloured(warning.severity.value)} {warning.message}")


def display_operation(console: Console, result: OperationResult) -> None:
    lines = [
        f"[bold]Operation:[/bold] {result.operation_id}",
        f"[bold]Target:[/bold]    {result.target}",
        f"[bold]Status:[/bold]    {_coloured(result.status.value)}",
        f"[bold]Deleted:[/bold]   {result.records_deleted}",
        f"[bold]Nullified:[/bold] {result.records_nullified}",
        f"[bold]Snapshot:[/bold]  {result.snapshot_id or '(none)'}",
    ]
    if result.duplicate:
        lines.append("[yellow]An operation was already running for this target.[/yellow]")
    if result.error:
        lines.append(f"[red]{result.error_code}: {result.error}[/red]")
        if result.last_completed_step:
            lines.append(f"[bold]Last step:[/bold] {result.last_completed_step}")
    console.print(Panel("\n".join(lines), title="Deletion", border_style="blue"))


def display_rollback(console: Console, result: RollbackResult) -> None:
    table = Table(title=f"Rollback of {result.snapshot_id}", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Table", style="bold")
    table.add_column("Restored", justify="right")
    for name, count in result.restored.items():
        table.add_row(name, str(count))
    console.print(table)
    verified = "[green]verified[/green]" if result.verified else "[red]not verified[/red]"
    console.print(f"{result.records_restored} records restored, {verified}. New snapshot: {result.new_snapshot_id}")


def display_snapshots(console: Console, snapshots: list[SnapshotInfo]) -> None:
    if not snapshots:
        console.print("[dim]No snapshots.[/dim]")
        return
    table = Table(title="Snapshots", show_lines=False, pad_edge=True, expand=False)
    table.add_column("ID", style="bold")
    table.add_column("Kind")
    table.add_column("Records", justify="right")
    table.add_column("Created")
    table.add_column("Consumed")
    for snap in snapshots:
        table.add_row(
            snap.snapshot_id,
            snap.kind.value,
            str(snap.record_count),
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            "yes" if snap.consumed else "-",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


def display_cleanup(console: Console, result: CleanupResult) -> None:
    title = "Orphan Scan (dry run)" if result.dry_run else "Orphan Cleanup"
    if not result.issues:
        console.print(f"[green]{title}: no orphaned references.[/green]")
        return
    table = Table(title=title, show_lines=False, pad_edge=True, expand=False)
    table.add_column("Issue", style="bold")
    table.add_column("Severity")
    table.add_column("Count", justify="right")
    table.add_column("Method")
    table.add_column("Auto-fix", justify="center")
    table.add_column("Affected" if result.dry_run else "Cleaned", justify="right")
    for issue in result.issues:
        table.add_row(
            issue.id,
            _coloured(issue.severity.value),
            str(issue.count),
            issue.cleanup_method.value,
            "yes" if issue.can_auto_fix else "no",
            str(result.by_issue.get(issue.id, 0)),
        )
    console.print(table)
    console.print(f"cleaned={result.cleaned} skipped={result.skipped} batches={result.batches}")
    for error in result.errors:
        console.print(f"  [red]{error}[/red]")


def display_validation(console: Console, result: ValidationResult) -> None:
    console.print(
        f"Integrity: {_coloured(result.overall_status.value)} "
        f"({result.passed} checks passed, {result.failed} failed, {result.duration_ms} ms)"
    )
    if not result.issues:
        return
    table = Table(title="Integrity Issues", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Issue", style="bold")
    table.add_column("Severity")
    table.add_column("Count", justify="right")
    table.add_column("Fix")
    table.add_column("Description")
    for issue in result.issues:
        table.add_row(issue.id, _coloured(issue.severity.value), str(issue.count), issue.fix, issue.description)
    console.print(table)


def display_repair(console: Console, result: RepairResult) -> None:
    title = "Repair (dry run)" if result.dry_run else "Repair"
    table = Table(title=title, show_lines=False, pad_edge=True, expand=False)
    table.add_column("Issue", style="bold")
    table.add_column("Result")
    table.add_column("Records", justify="right")
    for outcome in result.outcomes:
        status = "[green]ok[/green]" if outcome.success else f"[red]{outcome.error or 'failed'}[/red]"
        table.add_row(outcome.issue_id, status, str(outcome.records_affected))
    console.print(table)
    console.print(
        f"repaired={result.repaired} failed={result.failed} skipped={len(result.skipped)} "
        f"backup={result.backup_snapshot_id or '-'}"
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def display_audit(console: Console, page: PagedAuditEntries) -> None:
    if not page.entries:
        console.print("[dim]No audit entries.[/dim]")
        return
    table = Table(
        title=f"Audit Log (page {page.page}, {page.total_count} total)",
        show_lines=False,
        pad_edge=True,
        expand=False,
    )
    table.add_column("Time", style="dim")
    table.add_column("Operation", style="bold", no_wrap=True)
    table.add_column("Actor")
    table.add_column("Entity")
    table.add_column("Result")
    table.add_column("ms", justify="right")
    for entry in page.entries:
        entity = f"{entry.entity_type}:{entry.entity_id}" if entry.entity_type else "-"
        result = "[green]ok[/green]" if entry.success else f"[red]{entry.error or 'failed'}[/red]"
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S") if entry.timestamp else "-",
            entry.operation,
            f"{entry.actor_id} ({entry.actor_role})",
            entity,
            result,
            str(entry.duration_ms) if entry.duration_ms is not None else "-",
        )
    console.print(table)
    if page.has_more:
        console.print(f"[dim]More entries available; use --page {page.page + 1}.[/dim]")


def display_security_summary(console: Console, summary: dict[str, Any]) -> None:
    violations = summary.get("violations", {})
    lines = [
        f"[bold]Violations (last hour):[/bold] {violations.get('total', 0)}",
        f"[bold]Blocked origins:[/bold]       {len(summary.get('blocked_origins', {}))}",
        f"[bold]Active rate-limit keys:[/bold] {summary.get('active_rate_limit_keys', 0)}",
        f"[bold]Active operations:[/bold]     {summary.get('active_operations', 0)}",
    ]
    for kind, count in sorted(violations.get("by_type", {}).items()):
        lines.append(f"  {kind}: {count}")
    console.print(Panel("\n".join(lines), title="Security Summary", border_style="blue"))
