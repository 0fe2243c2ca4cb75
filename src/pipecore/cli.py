# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

import click

from pipecore.config import Settings, secrets_from_env
from pipecore.contracts import default_registry
from pipecore.dag import GraphBuilder, PipelineGraph
from pipecore.errors import DeclarationError, PipelineLoadError
from pipecore.loader import find_pipeline_files, load_pipeline
from pipecore.model import JobKind, JobSpec, PipelineContext, PipelineStatus
from pipecore.runner import Orchestrator, configure_tracker
from pipecore.ui.console import Console, get_console, set_console


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If no pipeline can be found or multiple pipelines exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and not path.suffix:
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  pipecore run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()

    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                "  pipecore_pipeline.py",
                "  *_pipeline.py",
                "  *.pipeline.yml",
            ],
            suggestion="Create a pipeline file:\n  pipecore_pipeline.py\n\nOr specify one explicitly:\n  pipecore run --pipeline deploy.pipeline.yml",
        )
        sys.exit(1)

    if len(files) > 1:
        file_list = "\n".join(f"  {f}" for f in files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  pipecore run --pipeline pipecore_pipeline.py",
        )
        sys.exit(1)

    return files[0]


def parse_pairs(values: Iterable[str], option: str) -> Dict[str, str]:
    """['a=1', 'b=2'] -> {'a': '1', 'b': '2'}"""
    pairs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=option)
        pairs[key.strip()] = value
    return pairs


def _load(pipeline_arg: str | None) -> Tuple[Path, str, List[JobSpec]]:
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    try:
        name, jobs = load_pipeline(path)
    except PipelineLoadError as e:
        console.print_error("Invalid pipeline file", f"{e.path}: {e.message}", details=e.details)
        sys.exit(1)
    return path, name, jobs


def _build(jobs: List[JobSpec], name: str) -> PipelineGraph:
    try:
        return GraphBuilder(default_registry()).build(jobs, name=name)
    except DeclarationError as e:
        get_console().print_error(
            "Invalid pipeline declaration",
            f"{len(e.problems)} problem(s) found:",
            details=[str(p) for p in e.problems],
        )
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipecore: typed, guarded pipeline orchestration."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to pipecore_pipeline.py if present)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--timeout", default=None, type=float, help="Default per-job timeout in seconds (0 disables)")
@click.option("--event", default="push", show_default=True, help="Trigger event exposed as context.event")
@click.option("--branch", default="main", show_default=True, help="Branch exposed as context.branch")
@click.option("--secret", "secrets", multiple=True, help="Secret as NAME=VALUE (repeatable)")
@click.option("--approve", "approvals", multiple=True, help="Approve a gated job by name (repeatable)")
@click.option("--set", "extra", multiple=True, help="Extra context field as KEY=VALUE (repeatable)")
@click.pass_context
def run(ctx, pipeline, workers, timeout, event, branch, secrets, approvals, extra):
    """Run a pipeline."""
    console = get_console()
    path, name, jobs = _load(pipeline)
    graph = _build(jobs, name)

    try:
        settings = Settings.from_env()
        run_secrets = secrets_from_env()
        run_secrets.update(parse_pairs(secrets, "--secret"))
        context = PipelineContext(event=event, branch=branch, extra=parse_pairs(extra, "--set"))

        orchestrator = Orchestrator(settings=settings, tracker=configure_tracker(settings))

        console.print_run_started(pipeline=graph.name, source=path.name, job_count=len(graph.order))
        result = orchestrator.run(
            graph,
            context,
            run_secrets,
            approvals=approvals,
            max_workers=workers,
            timeout=timeout,
            on_event=console.print_job_event,
        )

        console.print_results(result)

        if result.status != PipelineStatus.SUCCESS:
            sys.exit(1)

    except click.ClickException:
        raise
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to pipecore_pipeline.py if present)")
def validate(pipeline):
    """Check a pipeline declaration and report every problem."""
    path, name, jobs = _load(pipeline)
    graph = _build(jobs, name)
    get_console().print_info(f"{path.name}: pipeline '{graph.name}' is valid ({len(graph.order)} jobs)")


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to pipecore_pipeline.py if present)")
def plan(pipeline):
    """Print the pipeline's parallel stages."""
    console = get_console()
    _, name, jobs = _load(pipeline)
    graph = _build(jobs, name)
    console.print_header(f"Plan: {graph.name}")
    console.print_plan(graph.levels(), {n: graph.jobs[n].kind.value for n in graph.order})


@cli.command()
@click.argument("kind", required=False)
def contracts(kind):
    """List job kinds and their input/output/secret contracts."""
    console = get_console()
    registry = default_registry()
    kinds = registry.kinds()
    if kind:
        try:
            kinds = [JobKind.parse(kind)]
        except ValueError as e:
            console.print_error("Unknown job kind", str(e))
            sys.exit(1)

    for k in kinds:
        schema = registry.schema(k)
        console.print_contract(
            k.value,
            [f"{n}{'*' if s.required else ''}: {s.type.value}" for n, s in schema.inputs.items()],
            [f"{n}: {s.type.value}" for n, s in schema.outputs.items()],
            [f"{n}{'*' if s.required else ''}" for n, s in schema.secrets.items()],
        )


if __name__ == "__main__":
    cli()
