"""Swarm commands: create, status, update-task, dissolve, list, simulate."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import click
import structlog

from swarmcore.cli.app import async_cmd, build_service, emit, load_config
from swarmcore.cli.formatters import (
    build_table,
    format_duration,
    format_progress,
    get_console,
    status_indicator,
    truncate,
)
from swarmcore.communication import CommunicationManager
from swarmcore.decomposer import CAPABILITY_PATTERNS, GENERAL_CAPABILITY
from swarmcore.directory import AgentDirectory, FileAgentDirectory, InMemoryAgentDirectory
from swarmcore.errors import CommunicationError
from swarmcore.models import (
    SYSTEM_AGENT_ID,
    AgentMessage,
    AgentMetadata,
    ResultHandoffPayload,
    now_ms,
)
from swarmcore.orchestrator import SwarmOrchestrator
from swarmcore.service import SwarmService
from swarmcore.store import InMemorySessionStore

logger = structlog.get_logger(__name__)

_PRIORITIES = ["low", "medium", "high", "urgent"]
_SUBTASK_STATUSES = ["pending", "in_progress", "completed", "error"]


def _task_request(
    description: str,
    task_type: str,
    priority: str,
    requirements: tuple[str, ...],
    constraints: tuple[str, ...],
    output_format: str,
    deadline_minutes: Optional[int],
) -> dict[str, Any]:
    return {
        "description": description,
        "type": task_type,
        "priority": priority,
        "requirements": list(requirements),
        "constraints": list(constraints),
        "expected_output_format": output_format,
        "deadline": now_ms() + deadline_minutes * 60_000 if deadline_minutes else None,
    }


def _task_options(func):
    """Options shared by create and simulate."""
    options = [
        click.option("--type", "task_type", default="general", show_default=True, help="Task category"),
        click.option("--priority", type=click.Choice(_PRIORITIES), default="medium", show_default=True),
        click.option("--requirement", "-r", "requirements", multiple=True, help="Required capability"),
        click.option("--constraint", "-c", "constraints", multiple=True, help="Task constraint"),
        click.option("--format", "output_format", default="text", show_default=True,
                     help="Expected output format"),
        click.option("--deadline-minutes", type=click.IntRange(min=1), default=None,
                     help="Deadline relative to now"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------

def _render_created(ctx: click.Context, body: dict) -> None:
    console = get_console(no_color=ctx.obj.get("no_color", False))
    swarm = body["swarm"]
    console.print(status_indicator(swarm["status"]), end="")
    console.print(f"[bold]Swarm {swarm['session_id']}[/bold] is {swarm['status']}")
    console.print(f"  Coordinator: {swarm['coordinator']}")
    console.print(f"  Agents: {', '.join(swarm['active_agents'])}")
    rows = [
        [st["id"], status_indicator(st["status"]), st["assigned_agent_id"] or "-",
         truncate(st["description"])]
        for st in swarm["subtasks"]
    ]
    console.print(build_table("Subtasks", ["ID", "", "Agent", "Description"], rows))


def _render_status(ctx: click.Context, body: dict) -> None:
    console = get_console(no_color=ctx.obj.get("no_color", False))
    session = body["session"]
    health = body["health"]

    console.print(f"[bold]Swarm {session['session_id']}[/bold]")
    console.print("  Status: ", status_indicator(session["status"]), session["status"], sep="")
    console.print(f"  Task: {truncate(session['task'], 80)}")
    console.print(f"  Progress: {format_progress(body['progress'])}")
    console.print("  Health: ", status_indicator(health["overall"]), health["overall"], sep="")

    rows = []
    for st in body["subtasks"]:
        duration = st.get("actual_duration")
        rows.append([
            st["id"],
            status_indicator(st["status"]),
            st["assigned_agent_id"] or "-",
            st["attempts"],
            format_duration(duration / 1000) if duration is not None else "-",
            truncate(st["result"] if st["status"] == "completed" else st.get("error") or "", 40),
        ])
    console.print(build_table(
        "Subtasks", ["ID", "", "Agent", "Attempts", "Duration", "Result / Error"], rows
    ))

    for issue in health["issues"]:
        console.print(f"  [red]{issue['severity']}[/red] {issue['description']}")
    for recommendation in health["recommendations"]:
        console.print(f"  [dim]- {recommendation}[/dim]")


def _render_list(ctx: click.Context, body: dict) -> None:
    console = get_console(no_color=ctx.obj.get("no_color", False))
    if not body["swarms"]:
        console.print("No swarms.")
        return
    rows = [
        [s["session_id"], status_indicator(s["status"]), s["status"], f"{s['progress']}%",
         truncate(s["task"], 50)]
        for s in body["swarms"]
    ]
    console.print(build_table("Swarms", ["Session", "", "Status", "Progress", "Task"], rows))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.command("create")
@click.argument("description")
@_task_options
@click.pass_context
@async_cmd
async def create_cmd(
    ctx: click.Context,
    description: str,
    task_type: str,
    priority: str,
    requirements: tuple[str, ...],
    constraints: tuple[str, ...],
    output_format: str,
    deadline_minutes: Optional[int],
) -> None:
    """Form a swarm for DESCRIPTION and dispatch its subtasks."""
    service = build_service(ctx.obj)
    request = _task_request(
        description, task_type, priority, requirements, constraints, output_format, deadline_minutes
    )
    response = await service.create_swarm(ctx.obj["user_id"], request)
    emit(ctx, response, lambda body: _render_created(ctx, body))


@click.command("status")
@click.argument("session_id")
@click.pass_context
@async_cmd
async def status_cmd(ctx: click.Context, session_id: str) -> None:
    """Show progress, health and subtasks of a swarm."""
    service = build_service(ctx.obj)
    response = await service.get_swarm_status(ctx.obj["user_id"], session_id)
    emit(ctx, response, lambda body: _render_status(ctx, body))


@click.command("update-task")
@click.argument("session_id")
@click.argument("subtask_id")
@click.option("--status", type=click.Choice(_SUBTASK_STATUSES), default=None)
@click.option("--result", default=None, help="Result text for the subtask")
@click.option("--error", default=None, help="Error text for the subtask")
@click.pass_context
@async_cmd
async def update_task_cmd(
    ctx: click.Context,
    session_id: str,
    subtask_id: str,
    status: Optional[str],
    result: Optional[str],
    error: Optional[str],
) -> None:
    """Report a subtask's status or result by hand."""
    service = build_service(ctx.obj)
    response = await service.update_subtask(
        ctx.obj["user_id"], session_id, subtask_id,
        {"status": status, "result": result, "error": error},
    )

    def render(body: dict) -> None:
        subtask = body["subtask"]
        click.echo(
            f"{subtask['id']} is {subtask['status']}; "
            f"swarm {body['session_status']} at {body['progress']}%"
        )

    emit(ctx, response, render)


@click.command("dissolve")
@click.argument("session_id")
@click.pass_context
@async_cmd
async def dissolve_cmd(ctx: click.Context, session_id: str) -> None:
    """Dissolve a swarm and tear down its channels."""
    service = build_service(ctx.obj)
    response = await service.dissolve_swarm(ctx.obj["user_id"], session_id)
    emit(ctx, response, lambda body: click.echo(f"Swarm {body['session_id']} dissolved."))


@click.command("list")
@click.pass_context
@async_cmd
async def list_cmd(ctx: click.Context) -> None:
    """List your swarms, newest first."""
    service = build_service(ctx.obj)
    response = await service.list_swarms(ctx.obj["user_id"])
    emit(ctx, response, lambda body: _render_list(ctx, body))


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

def echo_agent_pool() -> list[AgentMetadata]:
    """One public echo agent per known capability."""
    capabilities = list(CAPABILITY_PATTERNS) + [GENERAL_CAPABILITY]
    return [
        AgentMetadata(
            agent_id=f"echo-{cap.replace('_', '-')}",
            name=f"Echo {cap.replace('_', ' ')}",
            category=cap,
            tags=[cap],
            is_public=True,
        )
        for cap in capabilities
    ]


class EchoWorker:
    """In-process worker that answers every task request with its description."""

    def __init__(self, agent_id: str, communication: CommunicationManager, failing: set[str]) -> None:
        self.agent_id = agent_id
        self._communication = communication
        self._failing = failing
        self._pending: set[asyncio.Task] = set()

    def __call__(self, message: AgentMessage) -> None:
        if message.message_type != "task_request":
            return
        subtask = message.payload.subtask
        failed = subtask.id in self._failing
        reply = AgentMessage.create(
            ResultHandoffPayload(
                subtask_id=subtask.id,
                result=None if failed else f"{self.agent_id} handled: {subtask.description}",
                error=f"{self.agent_id} could not complete {subtask.id}" if failed else None,
            ),
            from_agent_id=self.agent_id,
            to_agent_id=SYSTEM_AGENT_ID,
            session_id=message.session_id,
            response_to_message_id=message.id,
        )
        task = asyncio.get_running_loop().create_task(self._reply(reply))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reply(self, reply: AgentMessage) -> None:
        try:
            await self._communication.send_message(reply)
        except CommunicationError as e:
            logger.warning("echo_worker.reply_failed", agent_id=self.agent_id, error=str(e))


async def run_simulation(
    service: SwarmService,
    directory: AgentDirectory,
    user_id: str,
    request: dict[str, Any],
    failing: set[str],
    timeout: float,
):
    """Form a swarm over echo workers and wait until it settles.

    Returns (create response, status response); status is None when
    formation failed.
    """
    orchestrator = service.orchestrator
    for agent in await directory.list_agents(user_id):
        orchestrator.communication.register_message_handler(
            agent.agent_id, EchoWorker(agent.agent_id, orchestrator.communication, failing)
        )

    created = await service.create_swarm(user_id, request)
    if not created.ok:
        return created, None

    session_id = created.body["swarm"]["session_id"]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        await asyncio.sleep(0.01)
        await orchestrator.drain_inbound()
        session = await orchestrator.get_session(session_id)
        if session.is_terminal:
            break

    status = await service.get_swarm_status(user_id, session_id)
    return created, status


@click.command("simulate")
@click.argument("description")
@_task_options
@click.option("--fail", "fail_subtasks", multiple=True,
              help="Subtask id whose worker reports an error (repeatable)")
@click.option("--timeout", type=float, default=10.0, show_default=True,
              help="Seconds to wait for the swarm to settle")
@click.option("--keep", is_flag=True, help="Do not dissolve the swarm afterwards")
@click.pass_context
@async_cmd
async def simulate_cmd(
    ctx: click.Context,
    description: str,
    task_type: str,
    priority: str,
    requirements: tuple[str, ...],
    constraints: tuple[str, ...],
    output_format: str,
    deadline_minutes: Optional[int],
    fail_subtasks: tuple[str, ...],
    timeout: float,
    keep: bool,
) -> None:
    """Run DESCRIPTION end to end against in-process echo workers."""
    config = load_config(ctx.obj)
    directory: AgentDirectory = (
        FileAgentDirectory(config.agents_file) if config.agents_file
        else InMemoryAgentDirectory(echo_agent_pool())
    )
    orchestrator = SwarmOrchestrator(config=config, directory=directory, store=InMemorySessionStore())
    service = SwarmService(orchestrator)
    user_id = ctx.obj["user_id"]
    request = _task_request(
        description, task_type, priority, requirements, constraints, output_format, deadline_minutes
    )

    try:
        created, status = await run_simulation(
            service, directory, user_id, request, set(fail_subtasks), timeout
        )
        if status is None:
            emit(ctx, created, lambda body: None)
            return
        emit(ctx, status, lambda body: _render_status(ctx, body))
        if not keep:
            await service.dissolve_swarm(user_id, created.body["swarm"]["session_id"])
    finally:
        await orchestrator.shutdown()
