"""CLI entrypoint (Typer + Rich).

- `docflow serve`    run the HTTP API
- `docflow worker`   consume the job queues (`--burst`, `--requeue`)
- `docflow cleanup`  force-fail stale runs once
- `docflow graph`    print the agent graph with levels and validation errors
- `docflow init-db`  create the tables
"""

from __future__ import annotations

import asyncio
import logging
import signal

import typer
from rich.console import Console
from rich.table import Table

from docflow.config import get_settings

app = typer.Typer(help="Docflow workflow engine CLI.")
console = Console()


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind address"),
    port: int | None = typer.Option(None, help="Bind port"),
):
    """Run the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "docflow.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
    )


@app.command()
def worker(
    burst: bool = typer.Option(False, "--burst", help="Exit once both queues are empty"),
    concurrency: int | None = typer.Option(None, help="Concurrent agent jobs"),
    requeue: bool = typer.Option(
        False, "--requeue", help="First put back jobs left unacked by a dead worker (run with no other worker up)"
    ),
):
    """Consume the agent-execution and workflow-orchestration queues."""
    _configure_logging()
    asyncio.run(_run_worker(burst, concurrency, requeue))


async def _run_worker(burst: bool, concurrency: int | None, requeue: bool = False) -> None:
    from docflow.database.session import close_db
    from docflow.jobs.factory import close_job_queue, get_job_queue
    from docflow.jobs.redis_queue import RedisJobQueue
    from docflow.llm.router import close_router
    from docflow.schemas import QueueName
    from docflow.worker import Worker

    queue = get_job_queue()
    worker = Worker(queue)
    if concurrency:
        worker.concurrency = concurrency

    try:
        if requeue and isinstance(queue, RedisJobQueue):
            for queue_name in QueueName:
                moved = await queue.requeue_unacked(queue_name)
                console.print(f"Requeued {moved} job(s) on {queue_name.value}")
        if burst:
            processed = await worker.drain(timeout=worker.poll_timeout)
            console.print(f"Processed {processed} job(s)")
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, worker.stop)
            await worker.run()
    finally:
        await close_router()
        await close_job_queue()
        await close_db()


@app.command()
def cleanup():
    """Force-fail runs that have been active longer than the stale threshold."""
    _configure_logging()
    report = asyncio.run(_cleanup())
    console.print(report.message)


async def _cleanup():
    from docflow.database.session import close_db
    from docflow.engine.cleanup import CleanupSweeper

    try:
        return await CleanupSweeper().sweep()
    finally:
        await close_db()


@app.command()
def graph():
    """Print the active agent graph."""
    asyncio.run(_print_graph())


async def _print_graph() -> None:
    from docflow.database import repository
    from docflow.database.session import close_db, session_scope
    from docflow.engine.graph import AgentGraph, compute_levels, validate_graph

    try:
        async with session_scope() as db:
            agents = await repository.list_agents(db, active_only=True)
            connections = await repository.list_connections(db, active_only=True)
    finally:
        await close_db()

    agent_graph = AgentGraph.from_records(agents, connections)
    levels = compute_levels(agent_graph)
    names = {a.id: a.name for a in agents}

    table = Table(title="Agent graph")
    table.add_column("Level", justify="right")
    table.add_column("Agent")
    table.add_column("Inputs")
    table.add_column("Outputs")
    for agent in sorted(agents, key=lambda a: (levels.get(a.id, 0), a.order, a.name)):
        table.add_row(
            str(levels.get(agent.id, 0)),
            agent.name,
            ", ".join(names[p] for p in agent_graph.predecessors(agent.id)),
            ", ".join(names[s] for s in agent_graph.successors(agent.id)),
        )
    console.print(table)

    errors = validate_graph(agent_graph)
    for error in errors:
        console.print(f"[red]{error}[/red]")
    if errors:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command():
    """Create every table."""
    from docflow.database.session import close_db, init_db

    async def _init() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_init())
    console.print("Database initialized")


if __name__ == "__main__":
    app()
