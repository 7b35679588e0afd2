"""Main CLI entry point for the lifecycle command."""

import csv
import functools
import json
import logging
import sys
import click
from pathlib import Path
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, BarColumn, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from typing import Optional
from datetime import datetime

from ..api.config import Settings
from ..core.config import ScoringConfigManager
from ..core.features import FEATURE_DEFINITIONS, FEATURES_BY_NAME
from ..core.scorer import DEFAULT_WEIGHTS
from ..errors import LifecycleError
from ..journeys.definitions import ChannelType, Priority
from ..service import LifecycleService
from ..storage.models import Lead, TriggerType, VerificationStatus, local_naive

console = Console()

TIER_COLORS = {"hot": "red", "warm": "yellow", "cold": "dim"}


def get_service(ctx: click.Context) -> LifecycleService:
    """Build the service once per invocation."""
    if "service" not in ctx.obj:
        settings = Settings()
        if ctx.obj.get("db_path"):
            settings.db_path = Path(ctx.obj["db_path"])
        if ctx.obj.get("journeys_path"):
            settings.journeys_path = Path(ctx.obj["journeys_path"])
        ctx.obj["service"] = LifecycleService.from_settings(settings)
    return ctx.obj["service"]


def handle_errors(func):
    """Print lifecycle errors instead of a traceback and exit non-zero."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LifecycleError as e:
            console.print(f"[red]Error ({e.kind}):[/red] {e.message}")
            sys.exit(1)
    return wrapper


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@click.group()
@click.version_option(version="1.0.0", prog_name="lifecycle")
@click.option("--tenant", "-t", envvar="LIFECYCLE_TENANT", default="default", show_default=True,
              help="Tenant to operate on")
@click.option("--db", "db_path", help="Custom database path")
@click.option("--journeys", "journeys_path", help="Custom journey definitions file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, tenant: str, db_path: Optional[str], journeys_path: Optional[str], verbose: bool):
    """Lead Lifecycle Engine - lead scoring and journey enrollment.

    \b
    Quick Start:
      lifecycle init                                 # Database, templates, default model
      lifecycle leads import ./leads.csv             # Import leads
      lifecycle score --all                          # Score every lead
      lifecycle bulk-enroll master-domestic L1 L2    # Enroll leads in a journey
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj.update({"tenant": tenant, "db_path": db_path, "journeys_path": journeys_path})


# ============================================================================
# SETUP
# ============================================================================

@cli.command()
@click.pass_context
@handle_errors
def init(ctx: click.Context):
    """Initialize the database, seed master journeys and a default model."""
    service = get_service(ctx)
    tenant = ctx.obj["tenant"]

    created = service.seed_templates(tenant)
    models = service.list_models(tenant)
    if not models:
        model = service.create_model(tenant, dict(DEFAULT_WEIGHTS), activate=True)
        model_line = f"Created and activated scoring model [cyan]v{model.version}[/cyan]"
    else:
        model_line = f"{len(models)} scoring model(s) already present"

    console.print(Panel.fit(
        f"[green]✓ Lifecycle engine initialized for tenant {tenant}[/green]\n\n"
        f"Database: [cyan]{service.db.db_path}[/cyan]\n"
        f"Journeys: [cyan]{service.store.data_path}[/cyan]\n"
        f"Seeded {len(created)} master journey(s)\n"
        f"{model_line}\n\n"
        f"[bold]Next:[/bold]\n"
        f"1. [yellow]lifecycle leads import ./leads.csv[/yellow]\n"
        f"2. [yellow]lifecycle score --all[/yellow]\n"
        f"3. [yellow]lifecycle bulk-enroll master-domestic <lead ids>[/yellow]",
        title="Lead Lifecycle Engine"
    ))


# ============================================================================
# LEADS
# ============================================================================

@cli.group()
def leads():
    """Add and import leads."""
    pass


@leads.command("add")
@click.argument("lead_id")
@click.option("--email")
@click.option("--phone")
@click.option("--first-name")
@click.option("--last-name")
@click.option("--source", help="Lead source, e.g. referral, google_ads, web_form")
@click.option("--utm-source")
@click.option("--utm-medium")
@click.option("--tags", help="Comma-separated tags")
@click.pass_context
@handle_errors
def add_lead(ctx: click.Context, lead_id: str, email: Optional[str], phone: Optional[str],
             first_name: Optional[str], last_name: Optional[str], source: Optional[str],
             utm_source: Optional[str], utm_medium: Optional[str], tags: Optional[str]):
    """Add or update a single lead."""
    service = get_service(ctx)
    lead = service.add_lead(ctx.obj["tenant"], Lead(
        id=lead_id, tenant_id=ctx.obj["tenant"], email=email, phone=phone,
        first_name=first_name, last_name=last_name, source=source,
        utm_source=utm_source, utm_medium=utm_medium, tags=tags,
    ))
    console.print(f"[green]✓ Saved lead {lead.id} ({lead.display_name})[/green]")


@leads.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
@handle_errors
def import_leads(ctx: click.Context, path: str):
    """Import leads from a CSV file with an ``id`` column.

    Recognised columns: id, first_name, last_name, email, phone, source,
    utm_source, utm_medium, utm_campaign, tags, created_at. Any other
    column is kept as a routing attribute.
    """
    service = get_service(ctx)
    tenant = ctx.obj["tenant"]
    known = {"id", "first_name", "last_name", "email", "phone", "source",
             "utm_source", "utm_medium", "utm_campaign", "tags", "created_at"}

    imported = 0
    skipped = 0
    with open(path, newline="") as f:
        for row in csv.DictReader(f):
            lead_id = (row.get("id") or "").strip()
            if not lead_id:
                skipped += 1
                continue
            extra = {k: v for k, v in row.items() if k and k not in known and v}
            created_at = row.get("created_at")
            service.add_lead(tenant, Lead(
                id=lead_id,
                tenant_id=tenant,
                first_name=row.get("first_name") or None,
                last_name=row.get("last_name") or None,
                email=row.get("email") or None,
                phone=row.get("phone") or None,
                source=row.get("source") or None,
                utm_source=row.get("utm_source") or None,
                utm_medium=row.get("utm_medium") or None,
                utm_campaign=row.get("utm_campaign") or None,
                tags=row.get("tags") or None,
                attributes_json=json.dumps(extra) if extra else None,
                created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(),
            ))
            imported += 1

    console.print(f"[green]✓ Imported {imported} leads[/green]" +
                  (f" [yellow]({skipped} rows without an id skipped)[/yellow]" if skipped else ""))


# ============================================================================
# SCORING
# ============================================================================

@cli.command()
@click.argument("lead_id", required=False)
@click.option("--all", "score_all", is_flag=True, help="Score every lead")
@click.pass_context
@handle_errors
def score(ctx: click.Context, lead_id: Optional[str], score_all: bool):
    """Score one lead (with breakdown) or all leads."""
    service = get_service(ctx)
    tenant = ctx.obj["tenant"]

    if score_all:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            progress.add_task("Scoring leads...", total=None)
            results = service.bulk_score(tenant)

        console.print(Panel.fit(
            f"[green]✓ Scored {results['scored']} leads[/green]\n"
            f"Tier changes: {results['tier_changes']}\n"
            f"Errors: {results['errors']}",
            title="Scoring Complete"
        ))
        return

    if not lead_id:
        raise click.UsageError("Give a LEAD_ID or --all")

    result = service.compute_score(tenant, lead_id)
    tier_style = TIER_COLORS.get(result.tier, "")
    table = Table(title=f"Lead {lead_id}: [{tier_style}]{result.score} ({result.tier})[/{tier_style}]")
    table.add_column("Feature", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Points", justify="right", style="bold")

    for item in result.top(service.ledger.config.breakdown_report_limit):
        color = "green" if item.points > 0 else "red" if item.points < 0 else "dim"
        table.add_row(item.label, str(item.value), f"{item.weight:g}", f"[{color}]{item.points:+g}[/{color}]")

    console.print(table)
    if result.model_version is None:
        console.print("[yellow]No active scoring model; neutral base score used.[/yellow]")


@cli.command()
@click.argument("lead_id")
@click.option("--limit", "-n", default=20, help="Number of entries to show")
@click.pass_context
@handle_errors
def history(ctx: click.Context, lead_id: str, limit: int):
    """Show a lead's score history."""
    service = get_service(ctx)
    records = service.get_score_history(ctx.obj["tenant"], lead_id, limit)
    if not records:
        console.print("[yellow]No scores recorded for this lead.[/yellow]")
        return

    table = Table(title=f"Score history for {lead_id}")
    table.add_column("Computed", style="dim")
    table.add_column("Score", justify="right", style="bold")
    table.add_column("Tier", justify="center")
    table.add_column("Model", justify="right")
    for record in records:
        tier_style = TIER_COLORS.get(record.tier, "")
        table.add_row(_fmt(record.computed_at), str(record.score),
                      f"[{tier_style}]{record.tier}[/{tier_style}]",
                      f"v{record.model_version}" if record.model_version else "-")
    console.print(table)


@cli.command()
@click.argument("lead_id")
@click.option("--converted/--not-converted", required=True, help="Did the lead convert?")
@click.pass_context
@handle_errors
def outcome(ctx: click.Context, lead_id: str, converted: bool):
    """Record whether a lead converted, resolving its score predictions."""
    updated = get_service(ctx).record_outcome(ctx.obj["tenant"], lead_id, converted)
    console.print(f"[green]✓ Resolved {updated} prediction(s) for {lead_id}[/green]")


@cli.command()
@click.option("--model", "model_version", type=int, help="Only this model version")
@click.pass_context
@handle_errors
def accuracy(ctx: click.Context, model_version: Optional[int]):
    """Show conversion rate per tier for resolved predictions."""
    report = get_service(ctx).model_accuracy(ctx.obj["tenant"], model_version)
    if not report["resolved"]:
        console.print("[yellow]No predictions with a recorded outcome yet.[/yellow]")
        return

    table = Table(title=f"Model accuracy ({report['resolved']} resolved, accuracy {report['accuracy']:.0%})")
    table.add_column("Tier")
    table.add_column("Leads", justify="right")
    table.add_column("Converted", justify="right")
    table.add_column("Rate", justify="right")
    for tier, stats in sorted(report["by_tier"].items()):
        table.add_row(tier, str(stats["count"]), str(stats["converted"]), f"{stats['conversion_rate']:.0%}")
    console.print(table)


@cli.group()
def models():
    """Manage scoring models."""
    pass


@models.command("list")
@click.pass_context
@handle_errors
def list_models(ctx: click.Context):
    """List scoring model versions."""
    items = get_service(ctx).list_models(ctx.obj["tenant"])
    if not items:
        console.print("[yellow]No scoring models. Run 'lifecycle init'.[/yellow]")
        return

    table = Table(title="Scoring models")
    table.add_column("Version", justify="right")
    table.add_column("Kind")
    table.add_column("Features", justify="right")
    table.add_column("Active", justify="center")
    table.add_column("Created", style="dim")
    for model in items:
        table.add_row(f"v{model.version}", model.kind, str(len(model.weights)),
                      "[green]✓[/green]" if model.is_active else "", _fmt(model.created_at))
    console.print(table)


@models.command("create")
@click.option("--weights", "weights_path", type=click.Path(exists=True, dir_okay=False),
              help="JSON file of feature weights (default weights when omitted)")
@click.option("--activate", is_flag=True, help="Activate the new version")
@click.pass_context
@handle_errors
def create_model(ctx: click.Context, weights_path: Optional[str], activate: bool):
    """Create a new scoring model version."""
    weights = None
    if weights_path:
        with open(weights_path) as f:
            weights = json.load(f)
    model = get_service(ctx).create_model(ctx.obj["tenant"], weights, activate=activate)
    console.print(f"[green]✓ Created model v{model.version}[/green]" + (" (active)" if activate else ""))


@models.command("activate")
@click.argument("version", type=int)
@click.pass_context
@handle_errors
def activate_model(ctx: click.Context, version: int):
    """Make a model version the active one."""
    model = get_service(ctx).activate_model(ctx.obj["tenant"], version)
    console.print(f"[green]✓ Model v{model.version} is now active[/green]")


@cli.group()
def config():
    """View and tune scoring parameters."""
    pass


def get_config_manager() -> ScoringConfigManager:
    return ScoringConfigManager(Settings().scoring_config_path)


@config.command("show")
def show_config():
    """Show tier thresholds and decay parameters."""
    manager = get_config_manager()
    cfg = manager.config
    console.print(Panel.fit(
        f"Base score: {cfg.base_score} (range {cfg.min_score}-{cfg.max_score})\n"
        f"Tiers: hot >= [red]{cfg.hot_threshold}[/red], warm >= [yellow]{cfg.warm_threshold}[/yellow]\n"
        f"Breakdown rows reported: {cfg.breakdown_report_limit}",
        title=f"Scoring config ({manager.config_path})"
    ))

    table = Table(title="Decay and cap parameters")
    table.add_column("Feature", style="cyan")
    table.add_column("Denominator", justify="right")
    table.add_column("Cap", justify="right")
    table.add_column("Overridden", justify="center")
    for definition in FEATURE_DEFINITIONS:
        if definition.denominator is None and definition.cap is None:
            continue
        override = cfg.feature_params.get(definition.name, {})
        denominator = override.get("denominator", definition.denominator)
        cap = override.get("cap", definition.cap)
        table.add_row(definition.name, "-" if denominator is None else f"{denominator:g}",
                      "-" if cap is None else f"{cap:g}", "✓" if override else "")
    console.print(table)


@config.command("tiers")
@click.option("--hot", type=int, required=True, help="Minimum score for hot")
@click.option("--warm", type=int, required=True, help="Minimum score for warm")
def set_tiers(hot: int, warm: int):
    """Set tier thresholds."""
    if not 0 <= warm < hot <= 100:
        raise click.BadParameter("need 0 <= warm < hot <= 100")
    get_config_manager().update_thresholds(hot, warm)
    console.print(f"[green]✓ Tiers set: hot >= {hot}, warm >= {warm}[/green]")


@config.command("decay")
@click.argument("feature")
@click.option("--denominator", type=float, help="Days (or units) per step")
@click.option("--cap", type=float, help="Maximum number of steps")
def set_decay(feature: str, denominator: Optional[float], cap: Optional[float]):
    """Override a feature's decay denominator and/or cap."""
    if feature not in FEATURES_BY_NAME:
        raise click.BadParameter(f"unknown feature {feature}", param_hint="FEATURE")
    if denominator is None and cap is None:
        raise click.UsageError("Give --denominator and/or --cap")
    if denominator is not None and denominator <= 0:
        raise click.BadParameter("must be positive", param_hint="--denominator")
    get_config_manager().set_feature_params(feature, denominator, cap)
    console.print(f"[green]✓ Updated {feature}[/green]")


# ============================================================================
# JOURNEYS
# ============================================================================

@cli.group()
def journeys():
    """Manage journey definitions."""
    pass


@journeys.command("list")
@click.pass_context
@handle_errors
def list_journeys(ctx: click.Context):
    """List journeys (latest version of each)."""
    items = get_service(ctx).list_journeys(ctx.obj["tenant"])
    if not items:
        console.print("[yellow]No journeys. Run 'lifecycle journeys seed'.[/yellow]")
        return

    table = Table(title="Journeys")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version", justify="right")
    table.add_column("Stages", justify="right")
    for journey in items:
        table.add_row(journey.id, journey.name, str(journey.version), str(journey.stage_count))
    console.print(table)


@journeys.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
@handle_errors
def import_journeys(ctx: click.Context, path: str):
    """Register journey definitions from a JSON file."""
    created = get_service(ctx).store.import_file(Path(path))
    for journey in created:
        console.print(f"[green]✓ Registered {journey.id} v{journey.version}[/green]")


@journeys.command("seed")
@click.pass_context
@handle_errors
def seed_journeys(ctx: click.Context):
    """Create the master domestic and international journeys."""
    created = get_service(ctx).seed_templates(ctx.obj["tenant"])
    if created:
        for journey in created:
            console.print(f"[green]✓ Created {journey.name}[/green]")
    else:
        console.print("[dim]Master journeys already exist[/dim]")


@journeys.command("stats")
@click.argument("journey_id")
@click.pass_context
@handle_errors
def journey_stats(ctx: click.Context, journey_id: str):
    """Enrollment counts and stage distribution for a journey."""
    stats = get_service(ctx).journey_stats(ctx.obj["tenant"], journey_id)
    table = Table(title=f"{journey_id}: active by stage")
    table.add_column("Stage", style="cyan")
    table.add_column("Active", justify="right")
    for stage_id, count in stats["active_by_stage"].items():
        table.add_row(stage_id, str(count))

    console.print(Panel.fit(
        f"Total: {stats['total']}  Active: {stats['active']}  "
        f"Completed: [green]{stats['completed']}[/green]  Exited: [dim]{stats['exited']}[/dim]\n"
        f"Completion rate: [bold]{stats['completion_rate']}%[/bold]",
        title="Journey stats"
    ))
    console.print(table)


# ============================================================================
# ENROLLMENTS
# ============================================================================

@cli.command()
@click.argument("lead_id")
@click.argument("journey_id")
@click.option("--replace", is_flag=True, help="Replace an existing active enrollment")
@click.option("--actor", default="system", help="Who is enrolling the lead")
@click.pass_context
@handle_errors
def enroll(ctx: click.Context, lead_id: str, journey_id: str, replace: bool, actor: str):
    """Enroll a lead in a journey."""
    enrollment = get_service(ctx).enroll(ctx.obj["tenant"], lead_id, journey_id, actor=actor, replace=replace)
    console.print(f"[green]✓ Enrolled {lead_id} in {journey_id}[/green] [dim]({enrollment.id})[/dim]")


@cli.command("bulk-enroll")
@click.argument("journey_id")
@click.argument("lead_ids", nargs=-1)
@click.option("--file", "ids_file", type=click.Path(exists=True, dir_okay=False),
              help="File with one lead id per line")
@click.option("--remove-existing", is_flag=True, help="Replace existing active enrollments")
@click.pass_context
@handle_errors
def bulk_enroll(ctx: click.Context, journey_id: str, lead_ids, ids_file: Optional[str], remove_existing: bool):
    """Enroll many leads in a journey."""
    ids = list(lead_ids)
    if ids_file:
        with open(ids_file) as f:
            ids.extend(line.strip() for line in f if line.strip())

    service = get_service(ctx)
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console
    ) as progress:
        task = progress.add_task("Enrolling leads...", total=len(ids))
        results = service.bulk_enroll(
            ctx.obj["tenant"], ids, journey_id, remove_existing=remove_existing,
            on_progress=lambda done, total: progress.update(task, completed=done),
        )

    console.print(Panel.fit(
        f"[green]Enrolled: {results['success']}[/green]\n"
        f"Skipped (already enrolled): {results['skipped']}\n"
        f"[red]Failed: {len(results['failed'])}[/red]",
        title="Bulk enroll"
    ))
    for failure in results["failed"]:
        console.print(f"  [red]✗[/red] {failure['lead_id']}: {failure['reason']}")


@cli.command("re-enroll-all")
@click.option("--dry-run", is_flag=True, help="Report what would be assigned without writing")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def re_enroll_all(ctx: click.Context, dry_run: bool, yes: bool):
    """Clear all routing assignments and re-route every lead."""
    if not dry_run and not yes:
        if not Confirm.ask("[yellow]This clears every routing assignment for the tenant. Continue?[/yellow]"):
            console.print("[dim]Cancelled[/dim]")
            return

    service = get_service(ctx)
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console
    ) as progress:
        task = progress.add_task("Routing leads...", total=None)
        results = service.re_enroll_all(
            ctx.obj["tenant"],
            on_progress=lambda done, total: progress.update(task, completed=done, total=total),
            dry_run=dry_run,
        )

    console.print(Panel.fit(
        f"Processed: {results['processed']}\n"
        f"[green]Assigned: {results['assigned']}[/green]\n"
        f"Skipped (no matching rule): {results['skipped']}\n"
        f"Errors: {results['errors']}",
        title="Re-enroll (dry run)" if dry_run else "Re-enroll"
    ))


@cli.command()
@click.argument("enrollment_id")
@click.option("--trigger", type=click.Choice([t.value for t in TriggerType]), default="manual",
              show_default=True)
@click.option("--target", "target_stage", type=int, help="Stage index to jump to (manual only)")
@click.option("--actor", help="Who is making the change (required for manual)")
@click.option("--note")
@click.pass_context
@handle_errors
def advance(ctx: click.Context, enrollment_id: str, trigger: str, target_stage: Optional[int],
            actor: Optional[str], note: Optional[str]):
    """Advance an enrollment to its next stage."""
    enrollment = get_service(ctx).advance_step(
        ctx.obj["tenant"], enrollment_id, trigger, actor, target_stage, note=note
    )
    console.print(f"[green]✓ Enrollment is {enrollment.status.value} at stage {enrollment.current_stage_index}[/green]")


@cli.command()
@click.argument("enrollment_id")
@click.option("--actor", required=True)
@click.option("--reason")
@click.pass_context
@handle_errors
def remove(ctx: click.Context, enrollment_id: str, actor: str, reason: Optional[str]):
    """Exit an enrollment from its journey."""
    get_service(ctx).remove_enrollment(ctx.obj["tenant"], enrollment_id, actor, reason)
    console.print(f"[green]✓ Enrollment {enrollment_id} exited[/green]")


@cli.command()
@click.argument("enrollment_id")
@click.argument("requirement_id")
@click.argument("status", type=click.Choice([s.value for s in VerificationStatus]))
@click.option("--actor", required=True)
@click.pass_context
@handle_errors
def requirement(ctx: click.Context, enrollment_id: str, requirement_id: str, status: str, actor: str):
    """Set a requirement's verification status."""
    result = get_service(ctx).update_requirement_status(
        ctx.obj["tenant"], enrollment_id, requirement_id, status, actor
    )
    console.print(f"[green]✓ {requirement_id} is {status}[/green]" +
                  (" [bold]- stage complete, advanced[/bold]" if result["advanced"] else ""))


@cli.command()
@click.argument("enrollment_id")
@click.option("--actor", required=True)
@click.option("--note")
@click.pass_context
@handle_errors
def approve(ctx: click.Context, enrollment_id: str, actor: str, note: Optional[str]):
    """Approve the enrollment's current stage."""
    result = get_service(ctx).approve_stage(ctx.obj["tenant"], enrollment_id, actor, note)
    console.print(f"[green]✓ Stage {result['stage_index']} approved[/green]" +
                  (" [bold]- advanced[/bold]" if result["advanced"] else ""))


@cli.command()
@click.argument("enrollment_id")
@click.pass_context
@handle_errors
def state(ctx: click.Context, enrollment_id: str):
    """Show an enrollment's stage, requirements and timing."""
    info = get_service(ctx).get_enrollment_state_by_id(ctx.obj["tenant"], enrollment_id)
    enrollment = info["enrollment"]
    stage = info["stage"]

    lines = [
        f"Lead: [cyan]{enrollment.lead_id}[/cyan]   Journey: {info['journey_name']} v{enrollment.journey_version}",
        f"Status: [bold]{enrollment.status.value}[/bold]   "
        f"Stage {stage['index'] + 1}/{info['stage_count']}: {stage['name']}",
    ]
    if info["timing"]:
        timing = info["timing"]
        flags = [label for key, label in (("is_overdue", "overdue"), ("is_stalled", "stalled"),
                                          ("needs_escalation", "needs escalation")) if timing[key]]
        line = f"Days in stage: {timing['days_in_stage']}"
        if flags:
            line += f"  [red]{', '.join(flags)}[/red]"
        lines.append(line)
    if info["completion"]:
        done = "[green]yes[/green]" if info["completion"]["satisfied"] else "[yellow]no[/yellow]"
        lines.append(f"Stage complete: {done}")
    console.print(Panel.fit("\n".join(lines), title=f"Enrollment {enrollment.id}"))

    if info["requirements"]:
        table = Table(title="Requirements")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Mandatory", justify="center")
        table.add_column("Status")
        for req in info["requirements"]:
            table.add_row(req["id"], req["name"], req["type"], "✓" if req["mandatory"] else "", req["status"])
        console.print(table)


@cli.command()
@click.argument("enrollment_id")
@click.pass_context
@handle_errors
def log(ctx: click.Context, enrollment_id: str):
    """Show an enrollment's transition log."""
    entries = get_service(ctx).list_transition_log(ctx.obj["tenant"], enrollment_id)
    table = Table(title=f"Transition log {enrollment_id}")
    table.add_column("When", style="dim")
    table.add_column("From")
    table.add_column("To", style="cyan")
    table.add_column("Trigger")
    table.add_column("Actor")
    table.add_column("Note", max_width=40)
    for entry in entries:
        table.add_row(_fmt(entry.created_at), entry.from_stage or "-", entry.to_stage or "-",
                      entry.trigger.value, entry.actor, entry.note or "")
    console.print(table)


@cli.command("preview-channel")
@click.argument("enrollment_id")
@click.argument("channel", type=click.Choice([c.value for c in ChannelType]))
@click.argument("action")
@click.option("--priority", type=click.Choice([p.value for p in Priority]), default="medium", show_default=True)
@click.option("--at", "at_time", help="Evaluate at this ISO time instead of now")
@click.pass_context
@handle_errors
def preview_channel(ctx: click.Context, enrollment_id: str, channel: str, action: str,
                    priority: str, at_time: Optional[str]):
    """Check whether a communication would be allowed."""
    try:
        now = local_naive(datetime.fromisoformat(at_time)) if at_time else None
    except ValueError:
        raise click.BadParameter(f"not an ISO timestamp: {at_time}", param_hint="--at")
    decision = get_service(ctx).preview_channel_decision(
        ctx.obj["tenant"], enrollment_id, channel, action, priority, now
    )
    if decision.allowed:
        console.print(f"[green]✓ {channel} allowed[/green]")
    else:
        console.print(f"[red]✗ {channel} blocked:[/red] {decision.reason}")


@cli.command()
@click.pass_context
@handle_errors
def sweep(ctx: click.Context):
    """Run the stall, escalation and auto-advance sweep now."""
    report = get_service(ctx).sweep(ctx.obj["tenant"])
    console.print(Panel.fit(
        f"Checked: {report.checked}\n"
        f"[yellow]Stalled: {len(report.stalled)}[/yellow]\n"
        f"[red]Escalations: {len(report.escalations)}[/red]\n"
        f"[green]Auto-advanced: {len(report.advanced)}[/green]",
        title="Sweep"
    ))
    for plan in report.escalations:
        signal = plan.signal
        channels = ", ".join(c.value for c in plan.allowed_channels) or "none allowed"
        console.print(f"  [red]![/red] {signal.lead_id} in {signal.stage_name} for "
                      f"{signal.days_in_stage:g} days -> {signal.escalate_to} via {channels}")


# ============================================================================
# ROUTING
# ============================================================================

@cli.group()
def rules():
    """Manage routing rules."""
    pass


@rules.command("add")
@click.argument("name")
@click.argument("target")
@click.option("--when", "conditions", default="{}", help='JSON conditions, e.g. \'{"source": "referral"}\'')
@click.option("--priority", default=100, show_default=True, help="Lower runs first")
@click.option("--id", "rule_id", help="Rule id (to replace an existing rule)")
@click.pass_context
@handle_errors
def add_rule(ctx: click.Context, name: str, target: str, conditions: str, priority: int, rule_id: Optional[str]):
    """Route leads matching conditions to TARGET advisor."""
    try:
        parsed = json.loads(conditions)
    except ValueError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--when")
    rule = get_service(ctx).add_routing_rule(ctx.obj["tenant"], name, parsed, target, priority, rule_id)
    console.print(f"[green]✓ Saved rule {rule.name} ({rule.id}) -> {rule.target}[/green]")


@rules.command("list")
@click.pass_context
@handle_errors
def list_rules(ctx: click.Context):
    """List active routing rules in evaluation order."""
    items = get_service(ctx).list_routing_rules(ctx.obj["tenant"])
    table = Table(title="Routing rules")
    table.add_column("Priority", justify="right")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Conditions")
    table.add_column("Target", style="cyan")
    for rule in items:
        table.add_row(str(rule.priority), rule.id, rule.name, json.dumps(rule.conditions), rule.target)
    console.print(table)


# ============================================================================
# SERVER
# ============================================================================

@cli.command()
@click.option("--host", help="Bind address (default from LIFECYCLE_API_HOST)")
@click.option("--port", type=int, help="Port (default from LIFECYCLE_API_PORT)")
def serve(host: Optional[str], port: Optional[int]):
    """Run the HTTP API."""
    import uvicorn
    from ..api.main import create_app

    settings = Settings()
    uvicorn.run(create_app(), host=host or settings.host, port=port or settings.port)


if __name__ == "__main__":
    cli()
