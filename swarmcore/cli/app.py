"""CLI application: Click-based command hierarchy for swarmcore.

The main CLI group, global flags and the wiring that turns them into a
SwarmService. Subcommand modules register themselves by importing and
adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
import json as json_mod
from pathlib import Path
from typing import Any, Callable, Optional

import click

from swarmcore.config import SwarmConfig
from swarmcore.directory import AgentDirectory, FileAgentDirectory, InMemoryAgentDirectory
from swarmcore.main import configure_logging
from swarmcore.orchestrator import SwarmOrchestrator
from swarmcore.service import ControlResponse, SwarmService
from swarmcore.store import JsonSessionStore


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Session storage directory (default: SWARM_DATA_DIR or ./swarm_data)",
)
@click.option(
    "--agents",
    "agents_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSON agent directory (default: SWARM_AGENTS_FILE)",
)
@click.option("--user", "user_id", envvar="SWARM_USER", default="local", show_default=True,
              help="User id that owns created swarms")
@click.pass_context
def cli(
    ctx: click.Context,
    json_output: bool,
    no_color: bool,
    data_dir: Optional[Path],
    agents_file: Optional[Path],
    user_id: str,
) -> None:
    """swarmcore - form, run and dissolve agent swarms."""
    configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["no_color"] = no_color
    ctx.obj["data_dir"] = data_dir
    ctx.obj["agents_file"] = agents_file
    ctx.obj["user_id"] = user_id


def load_config(obj: dict[str, Any], **overrides: Any) -> SwarmConfig:
    """SwarmConfig from the environment with CLI flags layered on top."""
    values: dict[str, Any] = {"monitoring_enabled": False}
    if obj.get("data_dir") is not None:
        values["data_dir"] = obj["data_dir"]
    if obj.get("agents_file") is not None:
        values["agents_file"] = obj["agents_file"]
    values.update(overrides)
    return SwarmConfig(**values)


def build_service(obj: dict[str, Any], directory: Optional[AgentDirectory] = None) -> SwarmService:
    """A file-backed service for one CLI invocation."""
    config = load_config(obj)
    if directory is None:
        directory = (
            FileAgentDirectory(config.agents_file) if config.agents_file else InMemoryAgentDirectory()
        )
    orchestrator = SwarmOrchestrator(
        config=config,
        directory=directory,
        store=JsonSessionStore(config.data_dir / "sessions"),
    )
    return SwarmService(orchestrator)


def emit(ctx: click.Context, response: ControlResponse, render: Callable[[dict], None]) -> None:
    """Print *response* as JSON or via *render*; exit non-zero on failure."""
    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(
            {"status_code": response.status_code, **response.body}, indent=2, default=str
        ))
    elif response.ok:
        render(response.body)
    else:
        message = response.body.get("error", "Request failed")
        click.echo(f"Error ({response.status_code}): {message}", err=True)
        for detail in response.body.get("details", []):
            click.echo(f"  - {detail}", err=True)
        if response.body.get("hint"):
            click.echo(f"  hint: {response.body['hint']}", err=True)
    if not response.ok:
        ctx.exit(1)


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from swarmcore.cli.swarms import (
        create_cmd,
        dissolve_cmd,
        list_cmd,
        simulate_cmd,
        status_cmd,
        update_task_cmd,
    )

    cli.add_command(create_cmd)
    cli.add_command(status_cmd)
    cli.add_command(update_task_cmd)
    cli.add_command(dissolve_cmd)
    cli.add_command(list_cmd)
    cli.add_command(simulate_cmd)


_register_subcommands()
