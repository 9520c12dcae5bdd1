"""Cadenza CLI application -- Typer-based operator interface.

Provides commands for deletion preview and execution, rollback, orphan
cleanup, integrity validation/repair, and audit queries and exports.  Every command
goes through the same guarded, audited service facade as the HTTP API.
Human-readable output goes to *stderr* via Rich; ``--json`` writes the
machine-readable result to *stdout*.

Exit codes: 0 success, 1 engine error (or critical integrity status for
``validate``), 3 admission refusal or aborted confirmation.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import typer
from cascade_api.config import load_api_settings
from cascade_api.container import build_services
from cascade_api.security.context import Refusal, SecurityContext, parse_role
from cascade_api.services.audit_service import AuditExportFormat
from cascade_api.services.deletion_service import DeletionService
from cascade_engine.config import load_settings
from cascade_engine.errors import CascadeError
from cascade_engine.models.audit import AuditQuery
from cascade_engine.models.operation import DeletionOperation, DeletionOptions
from pydantic import BaseModel
from rich.console import Console

from cascade_cli import __version__
from cascade_cli.display import (
    display_audit,
    display_cleanup,
    display_impact,
    display_operation,
    display_repair,
    display_rollback,
    display_security_summary,
    display_snapshots,
    display_validation,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="cadenza",
    help="Cadenza - cascade deletion, integrity and audit operator tool",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_actor_id: str = "operator"
_role: str = "admin"
_database_url: str | None = None

_EXIT_ERROR = 1
_EXIT_REFUSED = 3


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    actor: str = typer.Option(
        "operator",
        "--actor",
        help="Actor id recorded in the audit log.",
        envvar="CADENZA_ACTOR",
    ),
    role: str = typer.Option(
        "admin",
        "--role",
        help="Actor role (admin | teacher | student).",
        envvar="CADENZA_ROLE",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="State store URL; defaults to CASCADE_DATABASE_URL or the local SQLite file.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _actor_id, _role, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _actor_id = actor
    _role = role
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _context() -> SecurityContext:
    """Security context for a terminal operator.

    The operator is treated as freshly authenticated: they are running the
    command interactively on a host they already have access to.
    """
    try:
        role = parse_role(_role)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_EXIT_REFUSED) from exc
    now = datetime.now(UTC)
    return SecurityContext(
        actor_id=_actor_id,
        actor_role=role,
        session_id=f"cli-{os.getpid()}",
        origin="localhost",
        user_agent=f"cadenza-cli/{__version__}",
        timestamp=now,
        last_authenticated_at=now,
    )


def _emit_json(data: Any) -> None:
    if isinstance(data, BaseModel):
        payload = data.model_dump(mode="json")
    elif isinstance(data, list):
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    else:
        payload = data
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def _invoke(call: Callable[[DeletionService, SecurityContext], Awaitable[T]]) -> T:
    overrides: dict[str, Any] = {}
    if _database_url:
        overrides["database_url"] = _database_url
    services = await build_services(load_api_settings(), load_settings(**overrides))
    try:
        return await call(services.service, _context())
    finally:
        await services.stop()


def _run(call: Callable[[DeletionService, SecurityContext], Awaitable[T | Refusal]]) -> T:
    """Run *call* against a fresh service stack and unwrap its result.

    Refusals and engine errors are reported and turned into exit codes.
    """
    try:
        result = asyncio.run(_invoke(call))
    except CascadeError as exc:
        if _json_output:
            _emit_json({"error": exc.to_dict()})
        console.print(f"[red]{exc.code}: {exc.message}[/red]")
        raise typer.Exit(code=_EXIT_ERROR) from exc
    if isinstance(result, Refusal):
        if _json_output:
            _emit_json({"refused": result.model_dump(mode="json")})
        console.print(f"[red]Refused ({result.code.value}): {result.reason}[/red]")
        raise typer.Exit(code=_EXIT_REFUSED)
    return result


def _parse_datetime(value: str | None, label: str) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} timestamp '{value}': {exc}[/red]")
        raise typer.Exit(code=_EXIT_REFUSED) from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


@app.command()
def preview(
    entity_type: str = typer.Argument(..., help="student | teacher | orchestra"),
    entity_id: str = typer.Argument(..., help="Entity primary key."),
) -> None:
    """Show what deleting an entity would remove.  Read-only."""
    impact = _run(lambda service, ctx: service.preview_deletion(entity_type, entity_id, ctx))
    if _json_output:
        _emit_json(impact)
    else:
        display_impact(console, impact)


@app.command()
def delete(
    entity_type: str = typer.Argument(..., help="student | teacher | orchestra"),
    entity_id: str = typer.Argument(..., help="Entity primary key."),
    batch_size: int | None = typer.Option(None, "--batch-size", min=1, help="Records per transaction."),
    no_snapshot: bool = typer.Option(False, "--no-snapshot", help="Skip the pre-deletion snapshot."),
    force: bool = typer.Option(False, "--force", help="Ignore the post-rollback cool-down."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete an entity and every record that depends on it."""
    if not yes:
        impact = _run(lambda service, ctx: service.preview_deletion(entity_type, entity_id, ctx))
        display_impact(console, impact)
        if not impact.can_proceed:
            console.print("[red]Deletion cannot proceed right now.[/red]")
            raise typer.Exit(code=_EXIT_REFUSED)
        if impact.requires_confirmation and not typer.confirm("Proceed with deletion?", default=False, err=True):
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(code=_EXIT_REFUSED)

    options = DeletionOptions(create_snapshot=not no_snapshot, batch_size=batch_size, force_delete=force)

    def _progress(op: DeletionOperation) -> None:
        if not _json_output:
            console.print(f"[dim]{op.progress:3d}% {op.current_step}[/dim]")

    result = _run(
        lambda service, ctx: service.execute_delete(entity_type, entity_id, ctx, options, on_progress=_progress)
    )
    if _json_output:
        _emit_json(result)
    else:
        display_operation(console, result)
    if result.status.value != "completed":
        raise typer.Exit(code=_EXIT_ERROR)


@app.command()
def snapshots(
    entity_type: str = typer.Argument(..., help="student | teacher | orchestra"),
    entity_id: str = typer.Argument(..., help="Entity primary key."),
) -> None:
    """List snapshots recorded for an entity."""
    found = _run(lambda service, ctx: service.list_snapshots(entity_type, entity_id, ctx))
    if _json_output:
        _emit_json(found)
    else:
        display_snapshots(console, found)


@app.command()
def rollback(snapshot_id: str = typer.Argument(..., help="Snapshot to restore.")) -> None:
    """Restore the records captured in a snapshot."""
    result = _run(lambda service, ctx: service.rollback_deletion(snapshot_id, ctx))
    if _json_output:
        _emit_json(result)
    else:
        display_rollback(console, result)


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


@app.command()
def cleanup(
    collection: list[str] | None = typer.Option(None, "--collection", "-c", help="Limit to these tables."),
    issue: list[str] | None = typer.Option(None, "--issue", "-i", help="Clean only these issue ids."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be cleaned."),
    batch_size: int | None = typer.Option(None, "--batch-size", min=1),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip the pre-cleanup snapshot."),
) -> None:
    """Find and remove references to records that no longer exist."""
    result = _run(
        lambda service, ctx: service.cleanup_orphaned(
            ctx,
            collections=collection or None,
            issue_ids=issue or None,
            dry_run=dry_run,
            batch_size=batch_size,
            create_backup=not no_backup,
        )
    )
    if _json_output:
        _emit_json(result)
    else:
        display_cleanup(console, result)


@app.command()
def validate() -> None:
    """Run every integrity check.  Exits 1 when the status is critical."""
    result = _run(lambda service, ctx: service.validate_integrity(ctx))
    if _json_output:
        _emit_json(result)
    else:
        display_validation(console, result)
    if result.overall_status.value == "critical":
        raise typer.Exit(code=_EXIT_ERROR)


@app.command()
def repair(
    issue: list[str] | None = typer.Option(None, "--issue", "-i", help="Repair only these issue ids."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be repaired."),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip the pre-repair snapshot."),
) -> None:
    """Repair integrity issues found by ``validate``."""
    result = _run(
        lambda service, ctx: service.repair_integrity(
            ctx,
            issue_ids=issue or None,
            create_backup=not no_backup,
            dry_run=dry_run,
        )
    )
    if _json_output:
        _emit_json(result)
    else:
        display_repair(console, result)


# ---------------------------------------------------------------------------
# Audit & security
# ---------------------------------------------------------------------------


@app.command()
def audit(
    actor: str | None = typer.Option(None, "--actor-id", help="Filter by actor."),
    operation: str | None = typer.Option(None, "--operation", help="Filter by operation name."),
    entity_type: str | None = typer.Option(None, "--entity-type"),
    entity_id: str | None = typer.Option(None, "--entity-id"),
    since: str | None = typer.Option(None, "--since", help="ISO-8601 lower bound."),
    until: str | None = typer.Option(None, "--until", help="ISO-8601 upper bound."),
    status: str | None = typer.Option(None, "--status", help="success | failure"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(50, "--limit", min=1, max=500),
    verify: bool = typer.Option(False, "--verify", help="Verify the hash chain instead of listing."),
    export: AuditExportFormat | None = typer.Option(
        None, "--export", help="Export every matching entry as json or csv instead of listing."
    ),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the export to this file."),
) -> None:
    """Query, export or verify the audit log."""
    if verify:
        report = _run(lambda service, ctx: service.verify_audit_chain(ctx))
        if _json_output:
            _emit_json(report)
        elif report["valid"]:
            console.print(f"[green]Audit chain intact ({report['entries_checked']} entries).[/green]")
        else:
            console.print(f"[red]Audit chain broken after {report['entries_checked']} entries.[/red]")
        if not report["valid"]:
            raise typer.Exit(code=_EXIT_ERROR)
        return

    if status not in (None, "success", "failure"):
        console.print(f"[red]Invalid --status '{status}'; use success or failure.[/red]")
        raise typer.Exit(code=_EXIT_REFUSED)
    try:
        query = AuditQuery(
            actor_id=actor,
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            since=_parse_datetime(since, "--since"),
            until=_parse_datetime(until, "--until"),
            success=None if status is None else status == "success",
            page=page,
            limit=limit,
        )
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_EXIT_REFUSED) from exc

    if export is not None:
        document = _run(lambda service, ctx: service.export_audit_log(query, ctx, export))
        if output is None:
            typer.echo(document.data.decode("utf-8"), nl=False)
        else:
            output.write_bytes(document.data)
            console.print(f"[green]Exported {document.record_count} entries to {output}.[/green]")
        if document.truncated:
            console.print("[yellow]Export truncated; narrow the filters to get every entry.[/yellow]")
        return

    result = _run(lambda service, ctx: service.get_audit_log(query, ctx))
    if _json_output:
        _emit_json(result)
    else:
        display_audit(console, result)


@app.command()
def security() -> None:
    """Summarize recent security violations and blocked origins."""
    summary = _run(lambda service, ctx: service.security_summary(ctx))
    if _json_output:
        _emit_json(summary)
    else:
        display_security_summary(console, summary)


@app.command()
def migrate(
    revision: str = typer.Argument("head", help="Target Alembic revision."),
) -> None:
    """Apply state store schema migrations."""
    from cascade_engine.state.database import upgrade_schema

    url = _database_url or load_settings().database_url
    upgrade_schema(url, revision)
    if _json_output:
        _emit_json({"revision": revision})
    else:
        console.print(f"[green]✓[/green] Schema upgraded to {revision}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", help="Bind port."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
    uvicorn.run("cascade_api.main:create_app", factory=True, host=host, port=port, log_level="info")
