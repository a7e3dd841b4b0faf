"""Thin CLI wrapper for stagecraft.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from stagecraft import __version__
from stagecraft.config import get_settings, print_settings_json

app = typer.Typer(
    name="stagecraft",
    help="stagecraft - multi-stage, cache-friendly build pipelines",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagecraft version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _echo_json(data: Any) -> None:
    # Plain echo: rich would wrap long lines and break the JSON
    typer.echo(json.dumps(data, indent=2, default=str))


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
    """stagecraft - multi-stage, cache-friendly build pipelines."""
    setup_logging(get_settings().log_level)


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
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Images directory:    {settings.images_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Keep stages:         {settings.keep_stages}")
        console.print(f"  Strict base images:  {settings.strict_base_images}")
        console.print(f"  Install command:     {' '.join(settings.install_command)}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Command timeout:     {settings.command_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


def _load_pipeline_or_exit(path: Path | None, context_dir: Path | None = None) -> Any:
    """Load a pipeline file, the context's default file, or the built-in pipeline."""
    import yaml
    from pydantic import ValidationError

    from stagecraft.pipelines.defaults import default_pipeline
    from stagecraft.pipelines.graph import PipelineGraphError
    from stagecraft.pipelines.io import find_pipeline_file, load_pipeline

    if path is None and context_dir is not None:
        path = find_pipeline_file(context_dir)
    if path is None:
        return default_pipeline()

    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        return load_pipeline(path)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except PipelineGraphError as e:
        console.print(f"[red]Invalid pipeline ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None
    except (ValueError, yaml.YAMLError, json.JSONDecodeError) as e:
        console.print(f"[red]Validation failed: {e}[/red]")
        raise typer.Exit(code=1) from None


@app.command()
def init(
    output: Annotated[
        Path,
        typer.Option("--output", "-o", help="Pipeline file to write"),
    ] = Path("stagecraft.yaml"),
    name: Annotated[
        str,
        typer.Option("--name", "-n", help="Pipeline and binary name"),
    ] = "app",
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing file"),
    ] = False,
) -> None:
    """Write the built-in four-stage pipeline as a starting point."""
    from stagecraft.pipelines.defaults import default_pipeline
    from stagecraft.pipelines.io import save_pipeline

    if output.exists() and not force:
        console.print(f"[red]File exists: {output} (use --force)[/red]")
        raise typer.Exit(code=1)

    save_pipeline(default_pipeline(name=name, binary_name=name), output)
    console.print(f"[green]✓ Wrote pipeline to {output}[/green]")


@app.command()
def validate(
    path: Annotated[Path, typer.Argument(help="Pipeline file to validate")],
) -> None:
    """Validate a pipeline file without running it."""
    from stagecraft.pipelines.graph import build_stage_graph

    pipeline = _load_pipeline_or_exit(path)
    order = build_stage_graph(pipeline).topo_order()
    console.print(f"[green]✓ Valid pipeline: {pipeline.name}[/green]")
    console.print(f"  Stages: {' -> '.join(order)}")
    console.print(f"  Overrides: {len(pipeline.overrides)}")
    console.print(f"  Final stage: {pipeline.final_stage.name}")


@app.command()
def plan(
    context: Annotated[
        Path, typer.Argument(help="Source directory to plan")
    ] = Path("."),
    pipeline_path: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline file with planner options"),
    ] = None,
    planner_json: Annotated[
        str | None,
        typer.Option(
            "--planner", help="Planner options as JSON (overrides the pipeline)"
        ),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the recipe to this file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compute the dependency recipe of a source tree."""
    from pydantic import ValidationError

    from stagecraft.builds.recipe import PlanningError, plan_recipe, write_recipe
    from stagecraft.pipelines.schema import PlannerSchema

    pipeline = _load_pipeline_or_exit(pipeline_path, context_dir=context)
    planner = pipeline.planner
    if planner_json is not None:
        try:
            planner = PlannerSchema.model_validate_json(planner_json)
        except ValidationError as e:
            console.print("[red]Invalid planner options:[/red]")
            console.print(str(e), markup=False)
            raise typer.Exit(code=1) from None

    try:
        recipe = plan_recipe(context, planner)
    except PlanningError as e:
        console.print(f"[red]Planning failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if output is not None:
        write_recipe(recipe, output)

    if json_output:
        _echo_json(
            {
                "recipe_hash": recipe.recipe_hash,
                "manifests": [m.path for m in recipe.manifests],
                "lockfiles": [m.path for m in recipe.lockfiles],
                "entry_points": recipe.entry_points,
                "output": str(output) if output else None,
            }
        )
    else:
        console.print(f"[green]✓ Recipe {recipe.recipe_hash}[/green]")
        for item in recipe.manifests:
            console.print(f"  manifest: {item.path}")
        for item in recipe.lockfiles:
            console.print(f"  lockfile: {item.path}")
        for entry_point in recipe.entry_points:
            console.print(f"  entry point: {entry_point}")
        if output is not None:
            console.print(f"  Written to {output}")


@app.command()
def cook(
    recipe_path: Annotated[Path, typer.Argument(help="Recipe file")],
    command: Annotated[
        list[str], typer.Argument(help="Dependency build command (after --)")
    ],
    directory: Annotated[
        Path,
        typer.Option("--dir", "-C", help="Directory receiving the recipe skeleton"),
    ] = Path("."),
) -> None:
    """Materialise a recipe skeleton and run the dependency build command."""
    from stagecraft.builds.recipe import RecipeError, load_recipe, materialize_skeleton
    from stagecraft.builds.runner import CommandExecutionError, run_passthrough

    try:
        recipe = load_recipe(recipe_path)
        materialize_skeleton(recipe, directory)
    except RecipeError as e:
        console.print(f"[red]Invalid recipe ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    try:
        exit_code = run_passthrough(command, cwd=directory)
    except CommandExecutionError as e:
        console.print(f"[red]Cook failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None
    if exit_code != 0:
        console.print(f"[red]Cook command failed with exit code {exit_code}[/red]")
    raise typer.Exit(code=exit_code)


@app.command()
def build(
    context: Annotated[
        Path, typer.Argument(help="Build context directory")
    ] = Path("."),
    pipeline_path: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline file (default: context file)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Image directory (default: images dir)"),
    ] = None,
    force_cook: Annotated[
        bool,
        typer.Option("--force-cook", help="Re-run cook steps even when cached"),
    ] = False,
    keep_stages: Annotated[
        bool,
        typer.Option("--keep-stages", help="Keep stage directories after the run"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the pipeline and export the runtime image."""
    from stagecraft.builds.service import (
        PipelineFailedError,
        PipelineServiceError,
        run_pipeline,
    )
    from stagecraft.db import open_database

    settings = get_settings()
    pipeline = _load_pipeline_or_exit(pipeline_path, context_dir=context)
    if output is None:
        output = settings.images_dir / pipeline.name

    factory = open_database(settings)

    failure: PipelineFailedError | None = None
    with factory() as session:
        try:
            result = run_pipeline(
                session,
                pipeline,
                context_dir=context,
                output_dir=output,
                settings=settings,
                force_cook=force_cook,
                keep_stages=keep_stages or settings.keep_stages,
            )
        except PipelineServiceError as e:
            console.print(f"[red]Error ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        except PipelineFailedError as e:
            failure = e
        # Failed runs are recorded too
        session.commit()

    if failure is not None:
        if json_output:
            _echo_json(
                {
                    "success": False,
                    "run_id": failure.run_id,
                    "stage": failure.stage,
                    "kind": failure.kind.value,
                    "code": failure.code,
                    "message": str(failure),
                }
            )
        else:
            console.print(
                f"[red]✗ Stage '{failure.stage}' failed "
                f"({failure.kind.value}, {failure.code})[/red]"
            )
            console.print(str(failure), markup=False)
        raise typer.Exit(code=1)

    if json_output:
        _echo_json(
            {
                "success": True,
                "run_id": result.run.id,
                "image": str(result.image.path),
                "entrypoint": result.image.entrypoint,
                "recipe_hashes": result.run.recipe_hashes or {},
                "cache_hits": result.cache_hits,
                "stages": [o.name for o in result.stages],
            }
        )
    else:
        console.print(f"[green]✓ Built {pipeline.name} (run #{result.run.id})[/green]")
        for outcome in result.stages:
            marker = ""
            if outcome.cook_key is not None:
                marker = " (cache hit)" if outcome.cache_hit else " (cooked)"
            console.print(f"  {outcome.name}{marker}")
        console.print(f"  Image: {result.image.path}")
        console.print(f"  Entrypoint: {json.dumps(result.image.entrypoint)}")


@app.command(
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True}
)
def run(
    image: Annotated[str, typer.Argument(help="Image directory or image name")],
    args: Annotated[
        list[str] | None,
        typer.Argument(help="Arguments passed to the entry point"),
    ] = None,
) -> None:
    """Run an image's entry point and exit with its exit code."""
    from stagecraft.builds.image import ImageError, load_image, run_image

    image_path = Path(image)
    if not image_path.is_dir():
        image_path = get_settings().images_dir / image

    try:
        runtime_image = load_image(image_path)
        exit_code = run_image(runtime_image, args or [])
    except ImageError as e:
        console.print(f"[red]Error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None
    raise typer.Exit(code=exit_code)


@app.command()
def dockerfile(
    path: Annotated[
        Path | None,
        typer.Argument(help="Pipeline file (default: built-in pipeline)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the Dockerfile to this file"),
    ] = None,
    planner_install: Annotated[
        str | None,
        typer.Option(
            "--planner-install",
            help="Shell command installing stagecraft into toolchain images",
        ),
    ] = None,
) -> None:
    """Render a pipeline as an equivalent multi-stage Dockerfile."""
    from stagecraft.pipelines.dockerfile import render_dockerfile

    pipeline = _load_pipeline_or_exit(path)
    text = render_dockerfile(pipeline, planner_install=planner_install)
    if output is None:
        typer.echo(text, nl=False)
    else:
        output.write_text(text, encoding="utf-8")
        console.print(f"[green]✓ Wrote Dockerfile to {output}[/green]")


cache_app = typer.Typer(help="Manage the cook cache")
app.add_typer(cache_app, name="cache")


def _layer_to_dict(layer: Any) -> dict[str, Any]:
    return {
        "cache_key": layer.cache_key,
        "recipe_hash": layer.recipe_hash,
        "outputs": layer.outputs,
        "path": layer.path,
        "size_bytes": layer.size_bytes,
        "hit_count": layer.hit_count,
        "created_at": layer.created_at.isoformat() if layer.created_at else None,
        "last_used_at": layer.last_used_at.isoformat() if layer.last_used_at else None,
    }


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cooked dependency layers."""
    from stagecraft.builds.cache import CacheStore
    from stagecraft.db import open_database

    settings = get_settings()
    factory = open_database(settings)

    with factory() as session:
        layers = CacheStore(session, settings.cache_dir).list_layers()

        if not layers:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No cache layers found[/yellow]")
            return

        if json_output:
            _echo_json([_layer_to_dict(layer) for layer in layers])
        else:
            console.print(f"[bold]Found {len(layers)} cache layer(s):[/bold]")
            console.print()
            for layer in layers:
                console.print(f"  [green]{layer.cache_key}[/green]")
                console.print(f"    Recipe: {layer.recipe_hash}")
                console.print(f"    Outputs: {', '.join(layer.outputs)}")
                console.print(f"    Size: {layer.size_bytes} bytes")
                console.print(f"    Hits: {layer.hit_count}")
                console.print()


@cache_app.command("prune")
def cache_prune(
    keep: Annotated[
        int,
        typer.Option("--keep", "-k", help="Number of most recently used layers to keep"),
    ] = 0,
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
    """Remove cooked dependency layers."""
    from stagecraft.builds.cache import CacheStore
    from stagecraft.db import open_database

    settings = get_settings()
    factory = open_database(settings)

    with factory() as session:
        pruned = CacheStore(session, settings.cache_dir).prune(
            keep=keep, dry_run=dry_run
        )
        keys = [layer.cache_key for layer in pruned]
        if not dry_run:
            session.commit()

    if json_output:
        _echo_json({"dry_run": dry_run, "pruned": keys})
    elif not keys:
        console.print("[yellow]No cache layers to prune[/yellow]")
    else:
        prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
        console.print(f"[bold]{prefix} {len(keys)} cache layer(s):[/bold]")
        for key in keys:
            console.print(f"  - {key}")


@cache_app.command("evict")
def cache_evict(
    cache_key: Annotated[str, typer.Argument(help="Cache key to remove")],
) -> None:
    """Remove a single cooked dependency layer."""
    from stagecraft.builds.cache import CacheStore
    from stagecraft.db import open_database

    settings = get_settings()
    factory = open_database(settings)

    with factory() as session:
        removed = CacheStore(session, settings.cache_dir).evict(cache_key)
        session.commit()

    if not removed:
        console.print(f"[red]Cache layer not found: {cache_key}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Evicted {cache_key}[/green]")


runs_app = typer.Typer(help="Inspect pipeline runs")
app.add_typer(runs_app, name="runs")


def _run_to_dict(run: Any) -> dict[str, Any]:
    return {
        "id": run.id,
        "pipeline": run.pipeline_name,
        "status": run.status,
        "context_dir": run.context_dir,
        "output_dir": run.output_dir,
        "failed_stage": run.failed_stage,
        "failure_kind": run.failure_kind,
        "error_type": run.error_type,
        "error_message": run.error_message,
        "recipe_hashes": run.recipe_hashes or {},
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "stages": [
            {
                "name": s.name,
                "role": s.role,
                "status": s.status,
                "cache_hit": s.cache_hit,
                "error_type": s.error_type,
            }
            for s in run.stages
        ],
    }


@runs_app.command("list")
def runs_list(
    pipeline_name: Annotated[
        str | None,
        typer.Option("--pipeline", "-p", help="Filter by pipeline name"),
    ] = None,
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
    """List pipeline runs."""
    from stagecraft.builds.service import list_runs
    from stagecraft.db import open_database
    from stagecraft.types import RunStatus

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    settings = get_settings()
    factory = open_database(settings)

    with factory() as session:
        runs = list_runs(
            session, pipeline_name=pipeline_name, status=status_filter, limit=limit
        )

        if not runs:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No pipeline runs found[/yellow]")
            return

        if json_output:
            _echo_json([_run_to_dict(r) for r in runs])
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        console.print()
        for r in runs:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "blue",
                "pending": "yellow",
            }.get(r.status, "white")
            console.print(f"  [{status_color}]Run #{r.id}[/{status_color}]")
            console.print(f"    Pipeline: {r.pipeline_name}")
            console.print(f"    Status: {r.status}")
            if r.failed_stage:
                console.print(f"    Failed stage: {r.failed_stage} ({r.failure_kind})")
            if r.error_message:
                console.print(f"    Error: {r.error_message}", markup=False)
            console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a pipeline run."""
    from stagecraft.builds.service import RunNotFoundError, get_run
    from stagecraft.db import open_database

    settings = get_settings()
    factory = open_database(settings)

    with factory() as session:
        try:
            r = get_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        data = _run_to_dict(r)

    if json_output:
        _echo_json(data)
        return

    console.print(f"[bold]Run #{data['id']}[/bold] ({data['pipeline']})")
    console.print(f"  Status: {data['status']}")
    for stage in data["stages"]:
        hit = " (cache hit)" if stage["cache_hit"] else ""
        console.print(
            f"  - {stage['name']} [{stage['role']}]: {stage['status']}{hit}",
            markup=False,
        )
    if data["error_message"]:
        console.print(f"  Error: {data['error_message']}", markup=False)


if __name__ == "__main__":
    app()
