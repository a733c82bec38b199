from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

import click
from rich.console import Console
from rich.table import Table

from .config import Settings, load_config
from .definitions import load_definition, load_definitions
from .errors import ConveyorError
from .logging_config import configure_logging
from .models import PipelineDefinition, Run, RunStatus, StageSpec
from .persistence import RunStore, create_session_factory
from .scheduler import PipelineScheduler
from .services import ServiceFactory

console = Console()

STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "aborted": "yellow",
    "running": "cyan",
    "queued": "cyan",
    "skipped": "dim",
    "pending": "dim",
}

config_option = click.option(
    "--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None, help="YAML or JSON settings file."
)
verbose_option = click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="conveyor-ci", message="Conveyor %(version)s")
def main() -> None:
    """Minimal CI/CD pipeline engine: build, push and deploy on every new revision."""


@main.command()
@click.argument("definition_path", type=click.Path(exists=True, path_type=Path))
@click.option("--revision", type=str, default=None, help="Revision to build; defaults to the source's latest.")
@config_option
@verbose_option
def run(definition_path: Path, revision: Optional[str], config_path: Optional[Path], verbose: bool) -> None:
    """Run a pipeline once and wait for it to finish."""

    logger = configure_logging(verbose=verbose, logger_name="conveyor.cli")
    settings = _prepare_settings(config_path)
    definition = _load(definition_path)
    store, services = _bootstrap(settings)
    scheduler = _scheduler(settings, store, [definition], services)
    try:
        started = scheduler.trigger(definition.name, revision)
        scheduler.wait_idle()
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        scheduler.stop()

    if started is None:
        raise click.ClickException(f"Pipeline {definition.name} did not start a run")
    result = store.load_run(started.run_id)
    logger.debug("Run %s finished as %s", result.run_id, result.status.value)
    _print_run(result)
    if result.status is not RunStatus.SUCCEEDED:
        sys.exit(1)


@main.command()
@click.argument("definition_paths", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--once", is_flag=True, default=False, help="Poll every source once, wait for the runs and exit.")
@click.option("--http/--no-http", "serve_http", default=False, help="Expose the webhook API.")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@config_option
@verbose_option
def serve(
    definition_paths: Tuple[Path, ...],
    once: bool,
    serve_http: bool,
    host: str,
    port: int,
    config_path: Optional[Path],
    verbose: bool,
) -> None:
    """Watch the sources of one or more pipelines and run them on new revisions."""

    logger = configure_logging(verbose=verbose, logger_name="conveyor.cli")
    settings = _prepare_settings(config_path)
    try:
        definitions = load_definitions(definition_paths)
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc
    store, services = _bootstrap(settings)
    scheduler = _scheduler(settings, store, definitions, services)

    if once:
        scheduler.recover()
        observed = scheduler.poll_once()
        scheduler.wait_idle()
        scheduler.stop()
        for pipeline, revision in observed.items():
            console.print(f"{pipeline}: {revision[:12] if revision else 'source unavailable'}")
        return

    scheduler.start()
    logger.info("Watching %s", ", ".join(scheduler.pipelines()))
    try:
        if serve_http:
            import uvicorn

            from .webhook import create_app

            uvicorn.run(create_app(scheduler, store), host=host, port=port, log_level="debug" if verbose else "info")
        else:
            while True:
                scheduler.wait_idle(timeout=3600)
    except KeyboardInterrupt:
        logger.info("Interrupted; waiting for active runs")
    finally:
        scheduler.stop()


@main.command()
@click.option("--pipeline", type=str, default=None, help="Only show runs of this pipeline.")
@click.option("--limit", type=int, default=20, show_default=True)
@config_option
def history(pipeline: Optional[str], limit: int, config_path: Optional[Path]) -> None:
    """List recent runs, newest first."""

    settings = _prepare_settings(config_path)
    store = RunStore(create_session_factory(settings.database_url))
    runs = store.list_runs(pipeline=pipeline, limit=limit)
    if not runs:
        console.print("No runs recorded.")
        return

    table = Table(title="Run history")
    table.add_column("Run", justify="right")
    table.add_column("Pipeline")
    table.add_column("Revision")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Error")
    for item in runs:
        table.add_row(
            str(item.run_id),
            item.pipeline,
            item.revision_id[:12],
            _styled(item.status.value),
            item.started_at.strftime("%Y-%m-%d %H:%M:%S") if item.started_at else "",
            item.error or "",
        )
    console.print(table)


@main.command()
@click.argument("run_id", type=int)
@click.option("--events/--no-events", default=True, help="Include the run's event log.")
@config_option
def show(run_id: int, events: bool, config_path: Optional[Path]) -> None:
    """Show the stages and events of one run."""

    settings = _prepare_settings(config_path)
    store = RunStore(create_session_factory(settings.database_url))
    try:
        result = store.load_run(run_id)
    except KeyError as exc:
        raise click.ClickException(f"Run {run_id} not found") from exc
    _print_run(result)
    if not events:
        return

    table = Table(title="Events")
    table.add_column("Time")
    table.add_column("Event")
    table.add_column("Message")
    for event in store.events(run_id):
        table.add_row(event["created_at"].strftime("%H:%M:%S"), event["event_type"], event["message"])
    console.print(table)


@main.command()
@click.argument("definition_path", type=click.Path(exists=True, path_type=Path))
@click.option("--stage", "stage_name", type=str, default=None, help="Deploy stage to roll back; defaults to the first.")
@click.option("--timeout", "timeout_seconds", type=float, default=None, help="Readiness timeout in seconds.")
@config_option
@verbose_option
def rollback(
    definition_path: Path,
    stage_name: Optional[str],
    timeout_seconds: Optional[float],
    config_path: Optional[Path],
    verbose: bool,
) -> None:
    """Swap a deployment slot back to its previous artifact."""

    configure_logging(verbose=verbose, logger_name="conveyor.cli")
    settings = _prepare_settings(config_path)
    definition = _load(definition_path)
    stage = _deploy_stage(definition, stage_name)
    _, services = _bootstrap(settings)
    slot_id = str(stage.parameters.get("slot") or definition.name)
    try:
        controller = services(definition).controller_for(stage.parameters.get("target"))
        result = controller.rollback(
            slot_id, timeout_seconds=timeout_seconds or settings.deploy.default_timeout_seconds
        )
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"Slot [bold]{slot_id}[/bold] now serves {result.digest} (was {result.replaced_digest})")


@main.command()
@config_option
def prune(config_path: Optional[Path]) -> None:
    """Apply the retention policy to the artifact registry."""

    settings = _prepare_settings(config_path)
    _, services = _bootstrap(settings)
    removed = services.registry.prune(settings.retention)
    if not removed:
        console.print("Nothing to prune.")
        return
    for digest in removed:
        console.print(f"removed {digest}")


@main.command()
@config_option
def slots(config_path: Optional[Path]) -> None:
    """List deployment slots and what they serve."""

    settings = _prepare_settings(config_path)
    _, services = _bootstrap(settings)
    table = Table(title="Deployment slots")
    table.add_column("Slot")
    table.add_column("State")
    table.add_column("Health")
    table.add_column("Current")
    table.add_column("Previous")
    for slot in services.slots.list_slots():
        table.add_row(
            slot.slot_id,
            slot.state.value,
            slot.health_status.value,
            (slot.current_artifact_digest or "")[:19],
            (slot.previous_artifact_digest or "")[:19],
        )
    console.print(table)


def _prepare_settings(config_path: Optional[Path]) -> Settings:
    try:
        settings = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    settings.ensure_directories()
    return settings


def _bootstrap(settings: Settings) -> Tuple[RunStore, ServiceFactory]:
    session_factory = create_session_factory(settings.database_url)
    return RunStore(session_factory), ServiceFactory(settings, session_factory)


def _scheduler(
    settings: Settings, store: RunStore, definitions: Sequence[PipelineDefinition], services: ServiceFactory
) -> PipelineScheduler:
    try:
        return PipelineScheduler(settings, store, definitions, services)
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc


def _load(path: Path) -> PipelineDefinition:
    try:
        return load_definition(path)
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc


def _deploy_stage(definition: PipelineDefinition, stage_name: Optional[str]) -> StageSpec:
    candidates: Sequence[StageSpec] = [stage for stage in definition.stages if stage.action == "deploy"]
    if stage_name:
        candidates = [stage for stage in candidates if stage.name == stage_name]
    if not candidates:
        raise click.ClickException(f"Pipeline {definition.name} has no matching deploy stage")
    return candidates[0]


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _print_run(result: Run) -> None:
    table = Table(title=f"Run {result.run_id} ({result.pipeline} @ {result.revision_id[:12]})", show_lines=True)
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")
    for stage in result.stages:
        duration = stage.duration_seconds
        table.add_row(
            stage.stage_name,
            _styled(stage.status.value),
            str(stage.attempts),
            f"{duration:.2f}s" if duration is not None else "",
            stage.error or "",
        )
    console.print(table)
    console.print(f"Run ID: {result.run_id}")
    console.print(f"Status: {_styled(result.status.value)}")
    if result.error:
        console.print(f"Error: {result.error}")


if __name__ == "__main__":  # pragma: no cover
    main()
