"""CLI for the flowpod sandbox orchestrator."""

import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from . import __version__
from .config import OrchestratorConfig, load_config
from .deps import build_manifest, detect_dependencies
from .log_helpers import configure_file_logging
from .models import SandboxState
from .orchestrator import Orchestrator
from .store import JsonFileProjectStore
from .wrapper import wrap_source


console = Console()

STATE_STYLE = {
    SandboxState.RUNNING: "green",
    SandboxState.PORT_DOWN: "yellow",
    SandboxState.ERROR: "red",
    SandboxState.STOPPED: "dim",
}


def _default_store() -> str:
    return os.environ.get("FLOWPOD_STORE_PATH") or str(Path(tempfile.gettempdir()) / "flowpod" / "projects.json")


def _load(ctx: click.Context) -> OrchestratorConfig:
    config_path = ctx.obj.get("config_path")
    if config_path:
        return load_config(config_path)
    return OrchestratorConfig.from_env()


def _orchestrator(ctx: click.Context) -> Orchestrator:
    store = JsonFileProjectStore(ctx.obj["store_path"])
    return Orchestrator.from_config(_load(ctx), store=store, provider_name=ctx.obj["provider"])


@click.group()
@click.version_option(version=__version__, prog_name="flowpod")
@click.option(
    "--provider",
    default=lambda: os.environ.get("FLOWPOD_PROVIDER", "e2b"),
    help="Sandbox provider: e2b, or memory (sandboxes live only as long as this process)",
)
@click.option("--store", "store_path", default=_default_store, help="Path of the JSON project store")
@click.option("--config", "config_path", type=click.Path(exists=True), default=None, help="YAML config file")
@click.pass_context
def cli(ctx: click.Context, provider: str, store_path: str, config_path: Optional[str]):
    """flowpod - sandboxes for generated voice agents."""
    load_dotenv()
    configure_file_logging()
    ctx.ensure_object(dict)
    ctx.obj.update(provider=provider, store_path=store_path, config_path=config_path)


@cli.command()
@click.option("--host", default=None, help="Bind host (default FLOWPOD_API_HOST or 0.0.0.0)")
@click.option("--port", default=None, type=int, help="Bind port (default FLOWPOD_API_PORT or 8800)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]):
    """Run the orchestrator HTTP API."""
    import uvicorn

    from .api import create_app

    os.environ["FLOWPOD_PROVIDER"] = ctx.obj["provider"]
    os.environ["FLOWPOD_STORE_PATH"] = ctx.obj["store_path"]
    if ctx.obj.get("config_path"):
        os.environ["FLOWPOD_CONFIG"] = ctx.obj["config_path"]
    host = host or os.environ.get("FLOWPOD_API_HOST", "0.0.0.0")
    port = port or int(os.environ.get("FLOWPOD_API_PORT", "8800"))
    console.print(f"[bold]flowpod API[/bold] on http://{host}:{port}")
    uvicorn.run(create_app(), host=host, port=port)


@cli.command()
@click.argument("project_id")
@click.pass_context
def create(ctx: click.Context, project_id: str):
    """Create (or replace) the sandbox of a project."""
    try:
        info = asyncio.run(_orchestrator(ctx).create_sandbox(project_id))
        console.print(f"[green]✓ Sandbox {info.external_id} created[/green]")
        console.print(f"  Webhook: [cyan]{info.endpoint}[/cyan]")
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("project_id")
@click.argument("source_file", type=click.Path(exists=True))
@click.pass_context
def deploy(ctx: click.Context, project_id: str, source_file: str):
    """Deploy an assistant program into the project's sandbox."""
    try:
        source = Path(source_file).read_text()

        def on_log(msg: str, level: str = "INFO") -> None:
            style = {"WARNING": "yellow", "ERROR": "red"}.get(level, "dim")
            console.print(f"[{style}]{msg}[/{style}]")

        result = asyncio.run(_orchestrator(ctx).deploy(project_id, source, on_log=on_log))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if not result.success:
        console.print(f"[red]✗ Deploy failed ({result.error_category.value})[/red]")
        sys.exit(1)
    if result.detected_dependencies:
        console.print(f"Dependencies: {', '.join(result.detected_dependencies)}")
    mark = "[green]✓ Ready[/green]" if result.ready else "[yellow]… Started, not answering yet[/yellow]"
    console.print(f"{mark}  [cyan]{result.endpoint}[/cyan]")


@cli.command()
@click.argument("project_id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def status(ctx: click.Context, project_id: str, as_json: bool):
    """Show the state of a project's sandbox."""
    try:
        result = asyncio.run(_orchestrator(ctx).status(project_id))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(result.to_dict()))
        return
    style = STATE_STYLE.get(result.state, "white")
    console.print(f"{project_id}: [{style}]{result.state.value}[/{style}]")
    if result.endpoint:
        console.print(f"  Webhook: [cyan]{result.endpoint}[/cyan]")


@cli.command("status-bulk")
@click.argument("project_ids", nargs=-1)
@click.option("--all", "all_projects", is_flag=True, help="Every project with a known sandbox")
@click.pass_context
def status_bulk(ctx: click.Context, project_ids: tuple, all_projects: bool):
    """Show the state of many projects at once."""
    try:
        orch = _orchestrator(ctx)
        ids = list(project_ids)
        if all_projects:
            ids.extend(pid for pid in orch.active_project_ids() if pid not in ids)
        results = asyncio.run(orch.status_bulk(ids))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title="Sandboxes")
    table.add_column("Project", style="cyan")
    table.add_column("Status")
    for pid in ids:
        state = results[pid].state if pid in results else SandboxState.STOPPED
        style = STATE_STYLE.get(state, "white")
        table.add_row(pid, f"[{style}]{state.value}[/{style}]")
    console.print(table)


@cli.command()
@click.argument("project_id")
@click.pass_context
def logs(ctx: click.Context, project_id: str):
    """Print captured output and sandbox diagnostics."""
    try:
        result = asyncio.run(_orchestrator(ctx).logs(project_id))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if result.error:
        console.print(f"[yellow]{result.error}[/yellow]")
        sys.exit(1)
    click.echo(result.logs)


@cli.command()
@click.argument("project_id")
@click.pass_context
def terminate(ctx: click.Context, project_id: str):
    """Kill the project's sandbox."""
    try:
        killed = asyncio.run(_orchestrator(ctx).terminate(project_id))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if killed:
        console.print(f"[green]✓ Sandbox for {project_id} terminated[/green]")
    else:
        console.print(f"[dim]No running sandbox for {project_id}[/dim]")


@cli.command()
@click.argument("project_id")
@click.pass_context
def recover(ctx: click.Context, project_id: str):
    """Check a project and redeploy it if the server crashed."""
    try:
        result = asyncio.run(_orchestrator(ctx).check_and_recover(project_id))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if result.report:
        console.print(Markdown(result.report))
    style = "green" if result.recovered or not result.attempted else "red"
    console.print(f"[{style}]{result.message}[/{style}]")


@cli.command()
@click.argument("project_ids", nargs=-1)
@click.option("--interval", "-i", default=30.0, type=float, help="Seconds between rounds")
@click.option("--rounds", default=None, type=int, help="Stop after N rounds")
@click.pass_context
def watch(ctx: click.Context, project_ids: tuple, interval: float, rounds: Optional[int]):
    """Keep checking projects and recover crashed servers."""
    orch = _orchestrator(ctx)

    def report(res) -> None:
        if res.attempted or res.skipped:
            console.print(f"[yellow]{res.project_id}[/yellow]: {res.message}")

    console.print("[dim]Press Ctrl+C to stop watching[/dim]")
    try:
        asyncio.run(orch.watch(list(project_ids) or None, interval=interval, rounds=rounds, on_result=report))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command("detect-deps")
@click.argument("source_file", type=click.Path(exists=True))
@click.option("--manifest", is_flag=True, help="Print the full package.json")
def detect_deps(source_file: str, manifest: bool):
    """List the extra npm packages a program imports."""
    source = Path(source_file).read_text()
    detected = detect_dependencies(source)
    if manifest:
        click.echo(json.dumps(build_manifest(detected), indent=2))
        return
    if not detected:
        console.print("[dim]No extra dependencies[/dim]")
        return
    for name in detected:
        click.echo(name)


@cli.command()
@click.argument("project_id")
@click.argument("source_file", type=click.Path(exists=True))
@click.option("--app-url", default=None, help="Base URL of the builder app")
@click.option("--port", default=3000, type=int, help="Port the server listens on")
def wrap(project_id: str, source_file: str, app_url: Optional[str], port: int):
    """Print a program with the runtime header and server footer added."""
    source = Path(source_file).read_text()
    app_url = app_url or OrchestratorConfig.from_env().app_url
    click.echo(wrap_source(project_id, source, app_url=app_url, port=port), nl=False)


if __name__ == "__main__":
    cli()
