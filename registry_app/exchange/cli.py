"""
Operator commands for the data exchange engine.

Mounted as ``flask exchange`` when ``EXCHANGE_ENABLED`` is on.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from registry_app.exchange.celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from registry_app.exchange.errors import ExchangeError
from registry_app.exchange.mapping import load_mapping_file
from registry_app.exchange.service import ExchangeService
from registry_app.exchange.templates import MappingTemplateService
from registry_app.exchange.utils import dispatch_mode, is_exchange_enabled
from registry_app.models import DuplicateStrategy, FileFormat, Organization, db

@click.group(name="exchange", invoke_without_command=True)
@click.pass_context
def exchange_cli(ctx):
    """
    Data exchange commands.

    Shows the worker configuration when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_exchange_enabled(app):
        raise click.ClickException(
            "Exchange is disabled via EXCHANGE_ENABLED=false. Enable it to run exchange CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo(f"Exchange enabled (dispatch: {dispatch_mode(app)}, batch size: {app.config.get('EXCHANGE_BATCH_SIZE')})")


def get_disabled_exchange_group() -> click.Group:
    """Return a command group that tells the operator the exchange is disabled."""

    @click.group(name="exchange", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Exchange commands are unavailable because EXCHANGE_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Exchange Celery app is unavailable. Ensure EXCHANGE_ENABLED=true and the "
            "exchange package initialises before running worker commands."
        )
    return celery_app


def _resolve_organization(value: str) -> Organization:
    organization = None
    if value.isascii() and value.isdigit():
        organization = db.session.get(Organization, int(value))
    if organization is None:
        organization = Organization.find_by_slug(value)
    if organization is None:
        raise click.ClickException(f"Organization '{value}' not found.")
    return organization


def _service_for(org: str, *, inline: bool | None = None) -> ExchangeService:
    organization = _resolve_organization(org)
    return ExchangeService(organization.id, inline=inline)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@exchange_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the exchange background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get(EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("EXCHANGE_WORKER_ENABLED"):
        click.echo(
            "Warning: EXCHANGE_WORKER_ENABLED is false. Jobs run inline until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get(EXTENSION_KEY)
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting exchange worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("exchange.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'exchange.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


@exchange_cli.command("import")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--org", required=True, help="Organization id or slug.")
@click.option(
    "--mapping",
    "mapping_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="YAML column mapping file.",
)
@click.option("--template", "template_id", type=int, help="Saved mapping template id.")
@click.option(
    "--strategy",
    type=click.Choice([strategy.value for strategy in DuplicateStrategy]),
    default=DuplicateStrategy.SKIP.value,
    show_default=True,
)
@click.option("--key-field", help="Target field used for duplicate detection.")
@click.option("--block-on-errors", is_flag=True, help="Fail the job when validation finds errors.")
@click.option("--validate-only", is_flag=True, help="Validate and report without importing.")
@click.option(
    "--inline/--no-inline",
    default=None,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def exchange_import(
    ctx,
    file_path: Path,
    org: str,
    mapping_path: Optional[Path],
    template_id: Optional[int],
    strategy: str,
    key_field: Optional[str],
    block_on_errors: bool,
    validate_only: bool,
    inline: Optional[bool],
):
    """Import clients from a CSV or XLSX file."""
    ctx.ensure_object(ScriptInfo).load_app()
    if mapping_path is None and template_id is None:
        raise click.ClickException("Provide --mapping or --template.")

    service = _service_for(org, inline=inline)
    try:
        mapping = load_mapping_file(mapping_path) if mapping_path else None
        job = service.create_import_job(
            file_path.read_bytes(),
            file_path.name,
            mapping=mapping,
            template_id=template_id,
            duplicate_strategy=strategy,
            duplicate_key_field=key_field,
            block_on_validation_errors=block_on_errors,
        )
        report = service.validate_import(job.id)
        if validate_only:
            _echo_json({"job_id": job.id, **report.summary()})
            return
        status = service.start_import(job.id)
    except ExchangeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(status.as_dict())


@exchange_cli.command("export")
@click.option("--org", required=True, help="Organization id or slug.")
@click.option(
    "--format",
    "file_format",
    type=click.Choice([fmt.value for fmt in FileFormat]),
    default=FileFormat.CSV.value,
    show_default=True,
)
@click.option("--field", "fields", multiple=True, help="Field to export; repeat for several.")
@click.option("--status", "statuses", multiple=True, help="Only export clients with this status.")
@click.option("--search", help="Substring match on name, NIP or email.")
@click.option("--sort", help="Sort field, prefix with '-' for descending.")
@click.option(
    "--output",
    type=click.Path(path_type=Path, dir_okay=False, writable=True),
    help="Write the finished export to this path (inline runs only).",
)
@click.option("--inline/--no-inline", default=None)
@click.pass_context
def exchange_export(
    ctx,
    org: str,
    file_format: str,
    fields: tuple[str, ...],
    statuses: tuple[str, ...],
    search: Optional[str],
    sort: Optional[str],
    output: Optional[Path],
    inline: Optional[bool],
):
    """Export clients to CSV or XLSX."""
    ctx.ensure_object(ScriptInfo).load_app()
    service = _service_for(org, inline=inline)
    try:
        status = service.start_export(
            file_format=file_format,
            fields=fields or None,
            filters={"statuses": list(statuses), "search": search},
            sort=sort,
        )
        if output is not None:
            if status.status != "completed":
                raise click.ClickException(f"Export job {status.id} is {status.status}; nothing written.")
            output.write_bytes(service.download_export(status.id))
            click.echo(f"Wrote {status.successful} client(s) to {output}")
            return
    except (ExchangeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(status.as_dict())


@exchange_cli.command("status")
@click.argument("job_id", type=int)
@click.option("--org", required=True, help="Organization id or slug.")
@click.option("--errors", "show_errors", is_flag=True, help="Include the first page of row errors.")
@click.pass_context
def exchange_status(ctx, job_id: int, org: str, show_errors: bool):
    """Show progress for an exchange job."""
    ctx.ensure_object(ScriptInfo).load_app()
    service = _service_for(org)
    try:
        payload = service.get_job_status(job_id).as_dict()
        if show_errors:
            errors, total = service.list_row_errors(job_id)
            payload["row_errors"] = [
                {
                    "row_number": error.row_number,
                    "field_name": error.field_name,
                    "error_kind": error.error_kind.value,
                    "message": error.message,
                }
                for error in errors
            ]
            payload["row_error_total"] = total
    except ExchangeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@exchange_cli.command("cancel")
@click.argument("job_id", type=int)
@click.option("--org", required=True, help="Organization id or slug.")
@click.pass_context
def exchange_cancel(ctx, job_id: int, org: str):
    """Request cancellation of a running job."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        status = _service_for(org).cancel_job(job_id)
    except ExchangeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Job {job_id} is {status.status}.")


@exchange_cli.command("reverse")
@click.argument("mutation_id", type=int)
@click.option("--org", required=True, help="Organization id or slug.")
@click.pass_context
def exchange_reverse(ctx, mutation_id: int, org: str):
    """Reverse a bulk mutation."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        result = _service_for(org).reverse_bulk_mutation(mutation_id)
    except ExchangeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.as_dict())


@exchange_cli.group(name="templates")
def templates_group():
    """Manage saved column mapping templates."""


@templates_group.command("list")
@click.option("--org", required=True, help="Organization id or slug.")
@click.pass_context
def templates_list(ctx, org: str):
    ctx.ensure_object(ScriptInfo).load_app()
    organization = _resolve_organization(org)
    templates = MappingTemplateService(organization.id).list()
    if not templates:
        click.echo("No mapping templates saved.")
        return
    for template in templates:
        click.echo(f"{template.id}\t{template.name}\t{len(template.mapping_json)} column(s)")


@templates_group.command("create")
@click.argument("name")
@click.option("--org", required=True, help="Organization id or slug.")
@click.option(
    "--mapping",
    "mapping_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="YAML column mapping file.",
)
@click.option("--description", help="Free-form description.")
@click.pass_context
def templates_create(ctx, name: str, org: str, mapping_path: Path, description: Optional[str]):
    ctx.ensure_object(ScriptInfo).load_app()
    organization = _resolve_organization(org)
    try:
        template = MappingTemplateService(organization.id).create(
            name,
            load_mapping_file(mapping_path),
            description=description,
        )
    except ExchangeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created mapping template {template.id} ('{template.name}').")
