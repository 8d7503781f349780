"""CLI for the workbench - service lifecycle, ports and model pulls."""

from __future__ import annotations

import json
import logging
import os
import time

import click

from workbench import __version__
from workbench.config import CONFIG_PATH_ENV
from workbench.requirements import MIN_DISK_GB, MIN_RAM_GB
from workbench.schemas import ComponentProgress, Event, ServiceName

SERVICE_CHOICE = click.Choice([s.value for s in ServiceName])


def _echo_event(event: Event) -> None:
    """Print one event on the terminal."""
    data = event.data
    if isinstance(data, ComponentProgress):
        eta = f" (eta {data.eta_seconds}s)" if data.eta_seconds is not None else ""
        click.echo(f"[{data.component}] {data.percent:3d}% {data.status.value}: {data.message}{eta}")
    else:
        click.echo(f"[{data.component}] {data.message}")


def _open_workbench(ctx: click.Context, stream: bool = True):
    from workbench.commands import Workbench

    workbench = Workbench(verbose=ctx.obj["verbose"])
    if stream:
        workbench.sink.subscribe(_echo_event)
    return workbench


def _run_foreground(workbench, name: str) -> None:
    """Block while a service launched by this process runs; Ctrl+C stops it."""
    click.echo("Press Ctrl+C to stop.")
    try:
        while workbench.launcher.is_running(name):
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
        workbench.stop_service(name)
    workbench.sink.flush()


@click.group()
@click.version_option(version=__version__, prog_name="workbench")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging and unfiltered process output")
@click.option(
    "--config",
    "config_file",
    default=None,
    type=click.Path(dir_okay=False),
    help=f"Config file (defaults to ${CONFIG_PATH_ENV} or the per-user location)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_file: str | None) -> None:
    """Workbench - run a local n8n + Ollama stack.

    Allocates ports, launches and stops the services, and pulls models.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if config_file:
        os.environ[CONFIG_PATH_ENV] = config_file
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@main.command()
@click.option("--port", default=8765, help="Port to run the broker on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int, host: str, reload: bool) -> None:
    """Start the workbench HTTP/WebSocket broker."""
    import uvicorn

    click.echo(f"Starting workbench broker on {host}:{port}")
    uvicorn.run(
        "workbench.broker:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@main.command()
@click.pass_context
def ports(ctx: click.Context) -> None:
    """Allocate and persist the n8n/Ollama port pair."""
    with _open_workbench(ctx, stream=False) as workbench:
        allocated = workbench.allocate_ports()
    click.echo(f"n8n:    {allocated.n8n_port}")
    click.echo(f"ollama: {allocated.ollama_port}")


@main.command()
@click.argument("name", type=SERVICE_CHOICE)
@click.option("--replace", is_flag=True, help="Stop a tracked instance first")
@click.pass_context
def launch(ctx: click.Context, name: str, replace: bool) -> None:
    """Launch a service in the foreground until interrupted.

    \b
    Example:
        workbench launch ollama
        workbench launch n8n
    """
    with _open_workbench(ctx) as workbench:
        result = workbench.launch_service(name, replace=replace)
        if not result.ok:
            workbench.sink.flush()
            raise click.ClickException(result.message)

        _run_foreground(workbench, name)


@main.command()
@click.argument("name", type=SERVICE_CHOICE)
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """Stop a service tracked by this workbench."""
    with _open_workbench(ctx, stream=False) as workbench:
        result = workbench.stop_service(name)
    click.echo(result.message)
    if not result.ok:
        ctx.exit(1)


@main.command()
@click.argument("name", type=SERVICE_CHOICE)
@click.pass_context
def health(ctx: click.Context, name: str) -> None:
    """Check whether a service answers on its configured port."""
    with _open_workbench(ctx, stream=False) as workbench:
        result = workbench.check_service_health(name)
    click.echo(result.message)
    if not result.ok:
        ctx.exit(1)


@main.command()
@click.argument("target")
@click.pass_context
def pull(ctx: click.Context, target: str) -> None:
    """Pull a model, streaming progress until it finishes.

    \b
    Example:
        workbench pull llama3.2:1b
    """
    with _open_workbench(ctx) as workbench:
        result = workbench.pull_model(target)
        if not result.ok:
            workbench.sink.flush()
            raise click.ClickException(result.message)
        try:
            while not workbench.downloads.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            click.echo("\nCancelling...")
            workbench.cancel_download()
            workbench.downloads.wait(timeout=5)
        workbench.sink.flush()
        job = workbench.downloads.last_job
        if job is not None and job.failure is not None:
            raise click.ClickException(str(job.failure))


@main.command()
@click.option("--raw", is_flag=True, help="Output JSON instead of one model per line")
@click.pass_context
def models(ctx: click.Context, raw: bool) -> None:
    """List installed models."""
    with _open_workbench(ctx, stream=False) as workbench:
        listing = workbench.list_models()
    if not listing.ok:
        raise click.ClickException(listing.message)
    names = listing.models
    if raw:
        click.echo(json.dumps(names))
        return
    if not names:
        click.echo("No models found.")
    for model_name in names:
        click.echo(model_name)


@main.command()
@click.option("--min-ram", default=MIN_RAM_GB, show_default=True, help="Required RAM in GB")
@click.option("--min-disk", default=MIN_DISK_GB, show_default=True, help="Required free disk in GB")
@click.pass_context
def doctor(ctx: click.Context, min_ram: float, min_disk: float) -> None:
    """Probe node, npm, n8n and Ollama, then check RAM and disk."""
    with _open_workbench(ctx) as workbench:
        workbench.validate_environment()
        report = workbench.check_requirements(min_ram, min_disk)
        workbench.sink.flush()
    if not report.passed:
        ctx.exit(1)


@main.command()
@click.pass_context
def ensure(ctx: click.Context) -> None:
    """Launch n8n unless something already answers on its port."""
    with _open_workbench(ctx) as workbench:
        result = workbench.ensure_platform()
        workbench.sink.flush()
        if not result.ok:
            raise click.ClickException(result.message)
        if workbench.launcher.is_running(ServiceName.N8N.value):
            _run_foreground(workbench, ServiceName.N8N.value)


@main.command()
@click.option("--launch", "launch_after", is_flag=True, help="Ensure n8n is running afterwards")
@click.pass_context
def setup(ctx: click.Context, launch_after: bool) -> None:
    """Check Node.js, install n8n if missing, check Ollama.

    \b
    Example:
        workbench setup
        workbench setup --launch
    """
    with _open_workbench(ctx) as workbench:
        result = workbench.setup(launch=launch_after)
        workbench.sink.flush()
        if not result.ok:
            raise click.ClickException(result.message)
        if launch_after and workbench.launcher.is_running(ServiceName.N8N.value):
            _run_foreground(workbench, ServiceName.N8N.value)


@main.command("install-n8n")
@click.pass_context
def install_n8n(ctx: click.Context) -> None:
    """Install n8n globally with npm."""
    with _open_workbench(ctx) as workbench:
        result = workbench.install_n8n()
        workbench.sink.flush()
    if not result.ok:
        raise click.ClickException(result.message)
