#!/usr/bin/env python3
"""
Game Leadership Map - Pipeline Entry Point

Runs the reconciliation pass, exports the static map feeds and gives admins
a command line for the submission review queue.

Usage:
    python -m pipeline.main seed
    python -m pipeline.main status
    python -m pipeline.main export
    python -m pipeline.main submissions list
    python -m pipeline.main submissions approve 12
"""

import json
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table
from sqlalchemy import func, select

load_dotenv()

from pipeline.config import settings
from pipeline.database import Author, Authorship, Institution, Paper, SessionLocal, Submission
from pipeline.directory import search_institutions, search_submitters
from pipeline.geocode import geocode_location
from pipeline.seed import SeedError, run_seed
from pipeline.static_exporter import build_static
from pipeline.submissions import ModerationError, ModerationService, SubmissionService


console = Console()

CLI_IP = "127.0.0.1"
CLI_USER_AGENT = "glmap-cli"


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Also write logs to this file (default: LOG_FILE)")
def cli(debug, log_file):
    """Game Leadership Map - Data Pipeline"""
    if debug or log_file:
        from pipeline.utils.logging import setup_logging
        setup_logging(level="DEBUG" if debug else None, log_file=log_file)


# =============================================================================
# Reconciliation and export
# =============================================================================

@cli.command()
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory holding the input dumps (default: DATA_DIR)")
def seed(data_dir):
    """Reconcile the paper, institution and authorship dumps into the database."""
    console.print("\n[bold blue]Game Leadership Map - Reconciliation[/bold blue]")
    console.print(f"Data directory: {data_dir or settings.pipeline.data_dir}\n")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}"),
        console=console,
    ) as progress:
        task = progress.add_task("Seeding...", total=None)

        def on_progress(current, total, status):
            progress.update(task, completed=current, total=total, description=status or "Seeding...")

        try:
            stats = run_seed(data_dir=data_dir, progress_callback=on_progress)
        except SeedError as e:
            progress.update(task, description="[red]✗ seed failed[/red]")
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        except Exception as e:
            logger.exception("Seed failed")
            console.print(f"[red]Seed failed: {e}[/red]")
            sys.exit(1)

        progress.update(task, description="[green]✓ seed complete[/green]")

    table = Table(title="Reconciliation Summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Institutions upserted (geo)", str(stats.institutions_upserted))
    table.add_row("Papers upserted", str(stats.papers_upserted))
    table.add_row("Papers dropped (no key)", str(stats.papers_dropped))
    table.add_row("Authorship lines", str(stats.lines_processed))
    table.add_row("Links", str(stats.authorships_linked))
    table.add_row("New authorships", str(stats.authorships_created))
    table.add_row("Lines skipped", str(stats.lines_skipped))
    table.add_row("Papers missing", str(stats.papers_missing))
    table.add_row("Identifier conflicts", str(stats.id_conflicts))
    if stats.duration_seconds is not None:
        table.add_row("Duration", f"{stats.duration_seconds:.1f}s")
    console.print(table)


@cli.command()
def status():
    """Show database statistics."""
    console.print("\n[bold blue]Game Leadership Map - Status[/bold blue]\n")

    session = SessionLocal()
    try:
        def count(stmt):
            return session.scalar(stmt) or 0

        table = Table(title="Database Statistics")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        table.add_row("Papers", str(count(select(func.count(Paper.id)))))
        table.add_row("Papers with DOI", str(count(select(func.count(Paper.id)).where(Paper.doi.is_not(None)))))
        table.add_row("Authors", str(count(select(func.count(Author.id)))))
        table.add_row("Institutions", str(count(select(func.count(Institution.id)))))
        table.add_row(
            "Institutions with coordinates",
            str(count(select(func.count(Institution.id)).where(Institution.lat.is_not(None), Institution.lng.is_not(None)))),
        )
        table.add_row("Authorships", str(count(select(func.count(Authorship.id)))))

        for state, n in session.execute(select(Submission.status, func.count(Submission.id)).group_by(Submission.status)):
            table.add_row(f"Submissions ({state})", str(n))

        console.print(table)
    finally:
        session.close()


@cli.command()
@click.option("--output", "-o", default=None, help="Output directory (default: EXPORT_DIR)")
@click.option("--no-gzip", is_flag=True, help="Skip gzip compression")
def export(output, no_gzip):
    """Export the map feeds to static JSON."""
    stats = build_static(output_dir=output, compress=not no_gzip)
    console.print(
        f"[green]Exported {stats.get('markers', 0)} institution markers and "
        f"{stats.get('community_markers', 0)} community markers[/green]"
    )


# =============================================================================
# Submission moderation
# =============================================================================

@cli.group()
def submissions():
    """Review community submissions."""
    pass


def _submission_table(title: str, rows) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Contact")
    table.add_column("Institution")
    table.add_column("Country")
    table.add_column("Geocode")
    table.add_column("Linked")
    table.add_column("Submitted")
    for s in rows:
        linked = s.institution_id or "-"
        if s.duplicate_of_id:
            linked += f" (dup of {s.duplicate_of_id})"
        table.add_row(
            str(s.id),
            s.contact_name,
            s.institution_name[:40],
            s.institution_country or "-",
            s.geocode_status,
            linked,
            s.created_at.strftime("%Y-%m-%d %H:%M") if s.created_at else "-",
        )
    return table


@submissions.command("list")
def submissions_list():
    """Show the review queue."""
    session = SessionLocal()
    try:
        queue = ModerationService(session).review_queue()
        console.print(_submission_table(f"Pending ({len(queue.pending)})", queue.pending))
        console.print(_submission_table("Recently approved", queue.approved))
        console.print(_submission_table("Recently rejected", queue.rejected))
    finally:
        session.close()


def _moderate(action: str, submission_id: int, reviewer: str | None, notes: str | None = None):
    session = SessionLocal()
    try:
        ModerationService(session).update_status(submission_id, action, reviewer=reviewer, notes=notes)
    except ModerationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        session.close()
    console.print(f"[green]Submission {submission_id}: {action} done[/green]")


@submissions.command("approve")
@click.argument("submission_id", type=int)
@click.option("--reviewer", default=None, help="Reviewer name (default: ADMIN_USER)")
def submissions_approve(submission_id, reviewer):
    """Approve a submission."""
    _moderate("approve", submission_id, reviewer)


@submissions.command("reject")
@click.argument("submission_id", type=int)
@click.option("--reviewer", default=None, help="Reviewer name (default: ADMIN_USER)")
@click.option("--notes", default=None, help="Rejection reason")
def submissions_reject(submission_id, reviewer, notes):
    """Reject a submission."""
    _moderate("reject", submission_id, reviewer, notes)


@submissions.command("reset")
@click.argument("submission_id", type=int)
def submissions_reset(submission_id):
    """Move a submission back to pending."""
    _moderate("reset", submission_id, None)


@submissions.command("link")
@click.argument("submission_id", type=int)
@click.argument("mode", type=click.Choice(["institution", "duplicate"]))
@click.argument("action", type=click.Choice(["assign", "clear"]))
@click.argument("value", required=False)
def submissions_link(submission_id, mode, action, value):
    """Assign or clear a linked institution or duplicate."""
    session = SessionLocal()
    try:
        ModerationService(session).update_link(submission_id, mode, action, value)
    except ModerationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        session.close()
    console.print(f"[green]Submission {submission_id}: {mode} link {action} done[/green]")


@submissions.command("delete")
@click.argument("submission_id", type=int)
@click.confirmation_option(prompt="Are you sure you want to delete this submission?")
def submissions_delete(submission_id):
    """Delete a submission."""
    session = SessionLocal()
    try:
        ModerationService(session).delete(submission_id)
    except ModerationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        session.close()
    console.print(f"[green]Submission {submission_id} deleted[/green]")


@submissions.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--ip", default=CLI_IP, help="Address recorded in the request log")
def submissions_import(file, ip):
    """
    Submit one or more forms from a JSON file.

    FILE holds a single form object or a list of them, with the same keys the
    submission form posts.
    """
    raw = file.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except ValueError:
        payload = raw
    payloads = payload if isinstance(payload, list) else [payload]

    session = SessionLocal()
    failures = 0
    try:
        service = SubmissionService(session)
        for form in payloads:
            result = service.submit(form, ip=ip, user_agent=CLI_USER_AGENT)
            if result.status_code == 201:
                console.print(
                    f"[green]Stored submission {result.body['submission_id']} "
                    f"(geocode: {result.body['geocode_status']})[/green]"
                )
            else:
                failures += 1
                detail = "; ".join(result.body.get("errors", [])) or result.body.get("error", "")
                console.print(f"[red]{result.status_code}: {detail}[/red]")
    finally:
        session.close()

    if failures:
        sys.exit(1)


# =============================================================================
# Lookups
# =============================================================================

@cli.group()
def search():
    """Run the autocomplete searches."""
    pass


@search.command("institutions")
@click.argument("query")
@click.option("--country", default=None, help="Two-letter country filter")
@click.option("--limit", type=int, default=None, help="Maximum suggestions (1-25)")
def search_institutions_cmd(query, country, limit):
    """Find institutions by name."""
    session = SessionLocal()
    try:
        result = search_institutions(session, query, CLI_IP, CLI_USER_AGENT, limit=limit, country=country)
    finally:
        session.close()

    if result.status_code != 200:
        console.print(f"[red]{result.body.get('error')}[/red]")
        sys.exit(1)

    table = Table()
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Country")
    table.add_column("Papers", justify="right")
    for s in result.suggestions:
        table.add_row(s["id"], s["name"] or "-", s["country"] or "-", str(s["paperCount"]))
    console.print(table)


@search.command("submitters")
@click.argument("query")
@click.option("--limit", type=int, default=None, help="Maximum suggestions (1-25)")
def search_submitters_cmd(query, limit):
    """Find earlier submitters and authors by name."""
    session = SessionLocal()
    try:
        result = search_submitters(session, query, CLI_IP, CLI_USER_AGENT, limit=limit)
    finally:
        session.close()

    if result.status_code != 200:
        console.print(f"[red]{result.body.get('error')}[/red]")
        sys.exit(1)

    table = Table()
    table.add_column("Name")
    table.add_column("Email")
    table.add_column("Source")
    for s in result.suggestions:
        table.add_row(s["name"], s["email"] or "-", s["source"])
    console.print(table)


@cli.command()
@click.argument("name")
@click.option("--city", default=None)
@click.option("--country-name", default=None)
@click.option("--country-code", default=None)
def geocode(name, city, country_name, country_code):
    """Look up coordinates for an institution."""
    outcome = geocode_location(
        institution_name=name,
        institution_city=city,
        country_name=country_name,
        country_code=country_code,
    )
    if outcome.ok:
        console.print(f"[green]{outcome.latitude}, {outcome.longitude}[/green]")
    else:
        console.print(f"[yellow]Geocoding {outcome.status}[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
