"""Thin CLI wrapper for stagedbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console

from stagedbuild import __version__
from stagedbuild.config import Settings, get_settings, print_settings_json
from stagedbuild.log import configure_logging

app = typer.Typer(
    name="stagedbuild",
    help="Staged builder - cached dependency pre-builds, application builds "
    "and minimal runtime images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagedbuild version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Staged builder - cached dependency pre-builds, application builds and minimal runtime images."""


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _setup() -> tuple[Settings, Any]:
    """Load settings, configure logging and open the database."""
    from stagedbuild.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    configure_logging(settings.log_level, console=err_console)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return settings, get_session_factory(engine)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Artifacts directory: {settings.artifacts_dir}")
        console.print(f"  Images directory:    {settings.images_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Keep workspaces:     {settings.keep_workspace}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


def _report_error(error: Exception, json_output: bool, run_id: int | None = None) -> None:
    from stagedbuild.errors import PipelineError

    if json_output:
        payload: dict[str, Any] = (
            error.to_dict()
            if isinstance(error, PipelineError)
            else {"code": "lock_timeout", "message": str(error)}
        )
        if run_id is not None:
            payload["run_id"] = run_id
        _print_json({"success": False, "error": payload})
        return
    code = getattr(error, "code", "lock_timeout")
    err_console.print(f"[red]Pipeline failed ({code}): {error}[/red]")
    log_path = getattr(error, "log_path", None)
    if log_path:
        err_console.print(f"  Log: {log_path}")


@app.command()
def run(
    project: Annotated[
        Path,
        typer.Argument(help="Project directory with manifest and source"),
    ],
    definition: Annotated[
        Path | None,
        typer.Option("--definition", "-f", help="Pipeline definition file"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Rebuild every stage even if cached"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the full pipeline: dependencies, application, runtime image."""
    from stagedbuild.builds.service import list_pipeline_runs
    from stagedbuild.builds.summaries import run_to_dict
    from stagedbuild.errors import PipelineError
    from stagedbuild.pipeline.io import load_pipeline
    from stagedbuild.pipeline.service import run_pipeline

    settings, factory = _setup()

    try:
        pipeline = load_pipeline(project, definition) if definition else None
    except PipelineError as e:
        _report_error(e, json_output)
        raise typer.Exit(code=1) from None

    with factory() as session:
        try:
            pipeline_run = run_pipeline(
                session,
                project,
                settings=settings,
                pipeline=pipeline,
                force_rebuild=force,
            )
            session.commit()
        except (PipelineError, TimeoutError) as e:
            # The failed run is kept as a record
            session.commit()
            latest = list_pipeline_runs(session, limit=1)
            _report_error(e, json_output, latest[0].id if latest else None)
            raise typer.Exit(code=1) from None

        if json_output:
            _print_json({"success": True, "run": run_to_dict(pipeline_run)})
            return

        image = pipeline_run.runtime_image
        console.print(f"[green]✓ Pipeline run #{pipeline_run.id} packaged an image[/green]")
        console.print(
            f"  Dependencies: {'reused' if pipeline_run.dependency_cache_hit else 'built'}"
        )
        console.print(
            f"  Application:  {'reused' if pipeline_run.application_cache_hit else 'built'}"
        )
        console.print(f"  Image:        {image.digest}")
        console.print(f"  Bundle:       {image.bundle_dir}")


deps_app = typer.Typer(help="Manage dependency caches")
app.add_typer(deps_app, name="deps")


@deps_app.command("build")
def deps_build(
    project: Annotated[
        Path,
        typer.Argument(help="Project directory with manifest"),
    ],
    force: Annotated[
        bool,
        typer.Option("--force", help="Recompile even if a cache exists"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Pre-build the dependency cache for a project's manifest."""
    from stagedbuild.builds.prebuild import prebuild_dependencies
    from stagedbuild.builds.summaries import cache_to_dict
    from stagedbuild.errors import PipelineError
    from stagedbuild.pipeline.io import load_pipeline

    settings, factory = _setup()

    with factory() as session:
        try:
            pipeline = load_pipeline(project)
            cache, hit = prebuild_dependencies(
                session, project, pipeline, settings, force_rebuild=force
            )
            session.commit()
        except (PipelineError, TimeoutError) as e:
            session.commit()
            _report_error(e, json_output)
            raise typer.Exit(code=1) from None

        if json_output:
            _print_json({"cache_hit": hit, "cache": cache_to_dict(cache)})
        else:
            verb = "Reused" if hit else "Built"
            console.print(f"[green]✓ {verb} dependency cache for {cache.package_name}[/green]")
            console.print(f"  Key:   {cache.manifest_key}")
            console.print(f"  Store: {cache.store_dir}")
            console.print(f"  Pins:  {len(cache.pins or [])}")


@deps_app.command("list")
def deps_list(
    state: Annotated[
        str | None,
        typer.Option("--state", help="Filter by state (pending, ready, broken)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List dependency caches."""
    from stagedbuild.builds.service import list_dependency_caches
    from stagedbuild.builds.summaries import cache_to_dict
    from stagedbuild.types import CacheState

    state_filter: CacheState | None = None
    if state:
        try:
            state_filter = CacheState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            console.print("Valid values: pending, ready, broken")
            raise typer.Exit(code=1) from None

    _, factory = _setup()

    with factory() as session:
        caches = list_dependency_caches(session, state=state_filter, limit=limit)

        if json_output:
            _print_json([cache_to_dict(c) for c in caches])
            return

        if not caches:
            console.print("[yellow]No dependency caches found[/yellow]")
            return

        console.print(f"[bold]Found {len(caches)} dependency cache(s):[/bold]")
        console.print()
        for c in caches:
            state_color = {
                "ready": "green",
                "pending": "yellow",
                "broken": "red",
            }.get(c.state, "white")
            console.print(
                f"  [{state_color}]{c.package_name} {c.manifest_key[:23]}[/{state_color}]"
            )
            console.print(f"    State: {c.state}")
            console.print(f"    Pins: {', '.join(c.pin_labels()) or '(none)'}")
            console.print(f"    Hits: {c.hit_count}")
            if c.error_message:
                console.print(f"    Error: {c.error_message}")
            console.print()


@deps_app.command("prune")
def deps_prune(
    keep: Annotated[
        int,
        typer.Option("--keep", "-k", min=0, help="Ready caches to keep per package"),
    ] = 1,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without actually pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Prune broken and superseded dependency caches."""
    from stagedbuild.builds.service import prune_dependency_caches

    settings, factory = _setup()

    with factory() as session:
        pruned = prune_dependency_caches(
            session, keep_latest=keep, dry_run=dry_run, settings=settings
        )
        if not dry_run:
            session.commit()

        if json_output:
            _print_json(
                {
                    "dry_run": dry_run,
                    "pruned": [
                        {"package_name": c.package_name, "manifest_key": c.manifest_key}
                        for c in pruned
                    ],
                }
            )
        elif not pruned:
            console.print("[yellow]No dependency caches to prune[/yellow]")
        else:
            prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
            console.print(f"[bold]{prefix} {len(pruned)} dependency cache(s):[/bold]")
            for c in pruned:
                console.print(f"  - {c.package_name} {c.manifest_key[:23]}")


builds_app = typer.Typer(help="Inspect application builds")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List application build records."""
    from stagedbuild.builds.service import list_application_builds
    from stagedbuild.builds.summaries import build_to_dict
    from stagedbuild.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    _, factory = _setup()

    with factory() as session:
        builds = list_application_builds(session, status=status_filter, limit=limit)

        if json_output:
            _print_json([build_to_dict(b) for b in builds])
            return

        if not builds:
            console.print("[yellow]No build records found[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "blue",
                "pending": "yellow",
            }.get(b.status, "white")
            console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
            console.print(f"    Binary: {b.binary_name}")
            console.print(f"    Status: {b.status}")
            console.print(f"    Key: {b.cache_key[:23]}")
            if b.executable_path:
                console.print(f"    Executable: {b.executable_path}")
            if b.error_message:
                console.print(f"    Error: {b.error_message}")
            console.print()


runs_app = typer.Typer(help="Inspect pipeline runs")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    state: Annotated[
        str | None,
        typer.Option("--state", help="Filter by pipeline state"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List pipeline runs."""
    from stagedbuild.builds.service import list_pipeline_runs
    from stagedbuild.builds.summaries import run_to_dict
    from stagedbuild.types import PipelineState

    state_filter: PipelineState | None = None
    if state:
        try:
            state_filter = PipelineState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            console.print(f"Valid values: {', '.join(s.value for s in PipelineState)}")
            raise typer.Exit(code=1) from None

    _, factory = _setup()

    with factory() as session:
        runs = list_pipeline_runs(session, state=state_filter, limit=limit)

        if json_output:
            _print_json([run_to_dict(r) for r in runs])
            return

        if not runs:
            console.print("[yellow]No pipeline runs found[/yellow]")
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        console.print()
        for r in runs:
            state_color = {
                "image_packaged": "green",
                "failed": "red",
            }.get(r.state, "yellow")
            console.print(f"  [{state_color}]Run #{r.id}[/{state_color}]")
            console.print(f"    Project: {r.project_dir}")
            console.print(f"    State: {r.state}")
            if r.error_message:
                console.print(f"    Error ({r.error_stage}): {r.error_message}")
            console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Pipeline run ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a pipeline run."""
    from stagedbuild.builds.service import RunNotFoundError, get_pipeline_run
    from stagedbuild.builds.summaries import run_to_dict

    _, factory = _setup()

    with factory() as session:
        try:
            pipeline_run = get_pipeline_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Pipeline run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        data = run_to_dict(pipeline_run)
        if json_output:
            _print_json(data)
            return

        console.print(f"[bold]Pipeline run #{pipeline_run.id}[/bold]")
        for key, value in data.items():
            if key != "id" and value is not None:
                console.print(f"  {key}: {value}")


images_app = typer.Typer(help="Inspect and start runtime images")
app.add_typer(images_app, name="images")


@images_app.command("list")
def images_list(
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List runtime images."""
    from stagedbuild.builds.service import list_runtime_images
    from stagedbuild.builds.summaries import image_to_dict

    _, factory = _setup()

    with factory() as session:
        images = list_runtime_images(session, limit=limit)

        if json_output:
            _print_json([image_to_dict(i) for i in images])
            return

        if not images:
            console.print("[yellow]No runtime images found[/yellow]")
            return

        console.print(f"[bold]Found {len(images)} image(s):[/bold]")
        console.print()
        for i in images:
            console.print(f"  [green]Image #{i.id}[/green] {i.digest[:23]}")
            console.print(f"    Base: {i.base_image}")
            console.print(f"    Port: {i.port}")
            console.print(f"    Bundle: {i.bundle_dir}")
            console.print()


@images_app.command("inspect")
def images_inspect(
    image_id: Annotated[int, typer.Argument(help="Runtime image ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show what an image contains and declares."""
    from dataclasses import asdict

    from stagedbuild.builds.service import ImageNotFoundError, get_runtime_image
    from stagedbuild.errors import PackagingError
    from stagedbuild.packaging.image import inspect_image

    _, factory = _setup()

    with factory() as session:
        try:
            image = get_runtime_image(session, image_id)
            inspection = inspect_image(Path(image.bundle_dir))
        except ImageNotFoundError:
            console.print(f"[red]Runtime image not found: {image_id}[/red]")
            raise typer.Exit(code=1) from None
        except PackagingError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        _print_json(asdict(inspection))
        return

    console.print(f"[bold]Image {inspection.digest}[/bold]")
    console.print(f"  Base image: {inspection.base_image}")
    console.print(f"  Workdir:    {inspection.workdir}")
    console.print(f"  Command:    {' '.join(inspection.command)}")
    console.print(f"  Ports:      {', '.join(inspection.exposed_ports)}")
    console.print("  Env:")
    for name, value in sorted(inspection.env.items()):
        console.print(f"    {name}={value}")
    console.print("  Files:")
    for name in inspection.files:
        console.print(f"    /{name}")


@images_app.command("start")
def images_start(
    image_id: Annotated[int, typer.Argument(help="Runtime image ID")],
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Environment override NAME=VALUE (repeatable)"),
    ] = None,
    rootfs: Annotated[
        Path | None,
        typer.Option("--rootfs", help="Directory to unpack the image into"),
    ] = None,
    wait: Annotated[
        bool,
        typer.Option("--wait/--no-wait", help="Wait for the instance to exit"),
    ] = True,
) -> None:
    """Start a local instance of a runtime image."""
    import tempfile

    from stagedbuild.builds.service import ImageNotFoundError, get_runtime_image
    from stagedbuild.errors import PackagingError
    from stagedbuild.packaging.runtime import launch_instance, parse_env_overrides

    try:
        overrides = parse_env_overrides(env)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    settings, factory = _setup()

    with factory() as session:
        try:
            bundle_dir = Path(get_runtime_image(session, image_id).bundle_dir)
        except ImageNotFoundError:
            console.print(f"[red]Runtime image not found: {image_id}[/red]")
            raise typer.Exit(code=1) from None

    if rootfs is None:
        rootfs = Path(tempfile.mkdtemp(prefix="stagedbuild_rootfs_", dir=settings.tmp_dir))

    try:
        process = launch_instance(bundle_dir, rootfs, overrides)
    except PackagingError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]Started instance (pid {process.pid}) from {rootfs}[/green]")
    if wait:
        raise typer.Exit(code=process.wait())


if __name__ == "__main__":
    app()
