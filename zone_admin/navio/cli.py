"""
``flask navio`` commands for driving the pipeline from a terminal.

Long loops (import, commit, geo sync) run inline by default and print one
line per unit of work; ``--no-inline`` hands them to the Celery worker.
"""

from __future__ import annotations

import json
import uuid
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from zone_admin.utils.navio import get_pipeline_service, is_navio_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import CorruptBatchCache, NavioPipelineError, PartialBatchFailure
from .pipeline.batch_cache import BatchCache, CachedBatch
from .pipeline.operation_log import OperationLogService, serialize_operation


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


@click.group(name="navio", invoke_without_command=True)
@click.pass_context
def navio_cli(ctx):
    """
    Navio delivery-zone pipeline commands.

    Shows the cached in-progress batch, if any, when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if not is_navio_enabled(app):
        raise click.ClickException("Navio pipeline is disabled via NAVIO_ENABLED=false.")
    if ctx.invoked_subcommand is None:
        cached = _load_cached(BatchCache.for_app(app))
        if cached is None:
            click.echo("No batch in progress.")
        else:
            click.echo(f"Batch in progress: {cached.batch_id} (stage: {cached.stage}, started {cached.started_at})")
            for city in cached.cities:
                click.echo(f"  - {city}")


def get_disabled_navio_group() -> click.Group:
    """Placeholder group telling the operator the pipeline is switched off."""

    @click.group(name="navio", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Navio commands are unavailable because NAVIO_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Navio Celery app is unavailable. Ensure NAVIO_ENABLED=true.")
    return celery_app


def _fail(exc: NavioPipelineError) -> click.ClickException:
    if isinstance(exc, PartialBatchFailure):
        return click.ClickException(
            f"{exc} Completed: {exc.completed}, remaining: {exc.remaining}. Re-run with --resume to continue."
        )
    message = f"{type(exc).__name__}: {exc}"
    if exc.progress():
        message += f" Completed: {exc.completed}, remaining: {exc.remaining}."
    return click.ClickException(message)


def _load_cached(cache: BatchCache) -> Optional[CachedBatch]:
    try:
        return cache.load()
    except CorruptBatchCache as exc:
        raise click.ClickException(f"{exc} Run `flask navio import --fresh` to discard it.") from exc


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _echo_retry(attempt: int, max_attempts: int) -> None:
    click.echo(f"  retrying (attempt {attempt}/{max_attempts})", err=True)


@navio_cli.command("delta-check")
@click.pass_context
def delta_check(ctx):
    """Compare the live provider zones with the stored snapshot."""
    _load_app(ctx)
    try:
        result = get_pipeline_service().delta_check()
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    summary = result["summary"]
    click.echo(
        "Delta: new={new} removed={removed} changed={changed} (geofence={geofenceChanged}) "
        "unchanged={unchanged}".format(**summary)
    )
    if result["isFirstImport"]:
        click.echo("Snapshot is empty; this will be a first import.")
    if result["affectedCities"]:
        click.echo(f"Affected cities: {', '.join(result['affectedCities'])}")


@navio_cli.command("import")
@click.option("--only-affected", is_flag=True, help="Queue only the cities touched by the current delta.")
@click.option("--resume", "mode", flag_value="resume", help="Continue the cached in-progress batch.")
@click.option("--fresh", "mode", flag_value="fresh", help="Discard the cached batch and start over.")
@click.option(
    "--inline/--no-inline",
    default=True,
    help="Drive the loop in this process instead of queueing it on the worker.",
)
@click.option("--summary-json", is_flag=True, help="Print the final result as JSON.")
@click.pass_context
def import_command(ctx, only_affected: bool, mode: Optional[str], inline: bool, summary_json: bool):
    """Stage live zones for review, one city at a time."""
    app = _load_app(ctx)
    cache = BatchCache.for_app(app)
    service = get_pipeline_service()
    try:
        cached = cache.load()
    except CorruptBatchCache as exc:
        if mode != "fresh":
            raise click.ClickException(f"{exc} Re-run with --fresh to discard it.") from exc
        cache.clear()
        click.echo("Discarded unreadable batch cache.")
        cached = None

    if cached is not None and mode is None:
        raise click.ClickException(
            f"Batch {cached.batch_id} is still in progress ({cached.stage}). "
            "Choose --resume to continue it or --fresh to discard it."
        )
    if mode == "resume" and cached is None:
        raise click.ClickException("There is no cached batch to resume.")
    if mode == "fresh" and cached is not None:
        cleared = service.clear_batch(cached.batch_id)
        cache.clear()
        click.echo(f"Discarded batch {cached.batch_id} ({cleared['areas']} staged areas removed).")
        cached = None

    batch_id = cached.batch_id if cached is not None else str(uuid.uuid4())
    if cached is None:
        cache.save(CachedBatch(batch_id=batch_id))

    if not inline:
        result = _resolve_celery(app).send_task(
            "navio.pipeline.run_import",
            kwargs={"batch_id": batch_id, "only_affected": only_affected},
        )
        click.echo(json.dumps({"batch_id": batch_id, "task_id": result.id, "status": "queued"}))
        return

    def _on_step(step) -> None:
        if step.processed_city:
            click.echo(
                f"  {step.processed_city}: {step.zones_processed}/{step.zones_total} zones, "
                f"{step.districts_discovered} districts, {step.needs_mapping} need mapping"
            )

    click.echo(f"Importing batch {batch_id}")
    try:
        result = service.run_import(batch_id, only_affected=only_affected, on_step=_on_step, on_retry=_echo_retry)
    except NavioPipelineError as exc:
        raise _fail(exc) from exc

    cities = [city["name"] for city in result["initialize"]["cities"]]
    cached = cache.load() or CachedBatch(batch_id=batch_id)
    cached.cities = cities
    cached.stage = "staged" if "finalize" in result else result["loop"]["status"]
    cache.save(cached)

    if "finalize" in result:
        staged = result["finalize"]["staged"]
        click.echo(
            f"Staged {staged['cities']} cities, {staged['districts']} districts, {staged['areas']} areas "
            f"({staged['needsMapping']} need mapping)."
        )
    else:
        click.echo(f"Import {result['loop']['status']}; re-run with --resume to continue.")
    if summary_json:
        _echo_json(result)


def _batch_from(app, batch_id: Optional[str]) -> str:
    if batch_id:
        return batch_id
    cached = _load_cached(BatchCache.for_app(app))
    if cached is None:
        raise click.ClickException("No --batch-id given and no cached batch found.")
    return cached.batch_id


@navio_cli.command("approve")
@click.option("--batch-id", help="Batch to approve; defaults to the cached batch.")
@click.option("--city-id", "city_ids", multiple=True, type=int, help="Approve only these staging cities.")
@click.pass_context
def approve_command(ctx, batch_id: Optional[str], city_ids: tuple[int, ...]):
    """Approve staged cities and everything beneath them."""
    app = _load_app(ctx)
    resolved = _batch_from(app, batch_id) if not city_ids else batch_id
    try:
        result = get_pipeline_service().approve(list(city_ids) or None, batch_id=resolved)
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    click.echo(f"Approved {result['cities']} cities.")


@navio_cli.command("reject")
@click.option("--city-id", "city_ids", multiple=True, type=int, required=True)
@click.pass_context
def reject_command(ctx, city_ids: tuple[int, ...]):
    """Reject staged cities, deleting their staged districts and areas."""
    _load_app(ctx)
    try:
        result = get_pipeline_service().reject(list(city_ids))
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    click.echo(f"Rejected {result['cities']} cities.")


@navio_cli.command("resolve")
@click.option("--area-id", required=True, type=int, help="Staging area flagged needs_mapping.")
@click.option("--district", "district_name", required=True)
@click.option("--area-name", default=None)
@click.pass_context
def resolve_command(ctx, area_id: int, district_name: str, area_name: Optional[str]):
    """Place a needs_mapping area under a district."""
    _load_app(ctx)
    try:
        result = get_pipeline_service().resolve_mapping(area_id, district_name=district_name, area_name=area_name)
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    click.echo(f"Area {result['id']} ({result['name']}) is now {result['status']}.")


@navio_cli.command("commit")
@click.option("--batch-id", help="Batch to commit; defaults to the cached batch.")
@click.option("--inline/--no-inline", default=True)
@click.pass_context
def commit_command(ctx, batch_id: Optional[str], inline: bool):
    """Commit every approved city, one city per transaction."""
    app = _load_app(ctx)
    batch_id = _batch_from(app, batch_id)
    if not inline:
        result = _resolve_celery(app).send_task("navio.pipeline.run_commit", kwargs={"batch_id": batch_id})
        click.echo(json.dumps({"batch_id": batch_id, "task_id": result.id, "status": "queued"}))
        return

    def _on_step(step) -> None:
        if step.committed_city:
            click.echo(f"  committed {step.committed_city} ({step.remaining} remaining)")

    try:
        result = get_pipeline_service().run_commit(batch_id, on_step=_on_step, on_retry=_echo_retry)
    except NavioPipelineError as exc:
        raise _fail(exc) from exc

    cache = BatchCache.for_app(app)
    cached = _load_cached(cache)
    if cached is not None and cached.batch_id == batch_id and result["loop"]["status"] == "completed":
        cache.clear()
    click.echo(f"Commit {result['loop']['status']}: {len(result['committedCities'])} cities committed.")


@navio_cli.command("sync-geo")
@click.pass_context
def sync_geo_command(ctx):
    """Copy snapshot geofences onto production areas."""
    _load_app(ctx)

    def _on_step(step) -> None:
        if step.synced_city:
            click.echo(f"  {step.synced_city}: {step.areas_updated} updated")

    try:
        result = get_pipeline_service().run_geo_sync(on_step=_on_step, on_retry=_echo_retry)
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    click.echo(f"Geo sync complete: {result['areasUpdated']} areas updated.")


@navio_cli.command("coverage-check")
@click.option("--summary-json", is_flag=True)
@click.pass_context
def coverage_check_command(ctx, summary_json: bool):
    """Audit alignment between provider zones, snapshot and production areas."""
    _load_app(ctx)
    try:
        result = get_pipeline_service().coverage_check()
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    alignment = result["alignment"]
    click.echo(f"Health: {result['healthStatus']}")
    click.echo(
        f"  provider zones covered: {alignment['navioAreasCovered']}/{alignment['navioAreasTotal']}"
    )
    click.echo(
        f"  production areas orphaned: {alignment['productionAreasOrphaned']}/{alignment['productionAreasTotal']}"
    )
    for reason in result["healthReasons"]:
        click.echo(f"  - {reason}")
    if summary_json:
        _echo_json(result)


@navio_cli.command("deactivate-orphans")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def deactivate_orphans_command(ctx, yes: bool):
    """Stop delivering to areas whose provider zone is gone or inactive."""
    _load_app(ctx)
    if not yes:
        click.confirm("This changes live delivery availability. Continue?", abort=True)
    try:
        result = get_pipeline_service().deactivate_orphans(confirm=True)
    except NavioPipelineError as exc:
        raise _fail(exc) from exc
    click.echo(f"Deactivated {result['deactivated']} areas.")


@navio_cli.command("status")
@click.option("--batch-id")
@click.pass_context
def status_command(ctx, batch_id: Optional[str]):
    app = _load_app(ctx)
    try:
        _echo_json(get_pipeline_service().batch_status(_batch_from(app, batch_id)))
    except NavioPipelineError as exc:
        raise _fail(exc) from exc


@navio_cli.command("operations")
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--type", "operation_type", default=None)
@click.pass_context
def operations_command(ctx, limit: int, operation_type: Optional[str]):
    """List recent pipeline operations."""
    _load_app(ctx)
    for entry in OperationLogService().list_recent(limit=limit, operation_type=operation_type):
        data = serialize_operation(entry)
        click.echo(f"{data['started_at']}  {data['operation_type']:<20} {data['status']:<8} {data['batch_id'] or ''}")


@navio_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the Navio background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("navio", {})
    if not state.get("worker_enabled") and not app.config.get("NAVIO_WORKER_ENABLED"):
        click.echo(
            "Warning: NAVIO_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True)
@click.pass_context
def worker_run(ctx, loglevel: str, queues: str):
    """Start the Celery worker in the current process (single-process, one batch at a time)."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    state = app.extensions.get("navio")
    if state is not None:
        state["worker_enabled"] = True

    click.echo(f"Starting Navio worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=["worker", "--loglevel", loglevel, "-Q", queues, "--concurrency", "1"])
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    app = _load_app(ctx)
    task = _resolve_celery(app).tasks.get("navio.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'navio.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - broker failures
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
