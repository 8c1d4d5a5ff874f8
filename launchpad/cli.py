"""Command line entry point: run workers, enqueue jobs, inspect state."""

import asyncio
import json as json_lib

from redis.asyncio import Redis
from rich.console import Console
from rich.table import Table
import typer

from .config import get_settings
from .contracts.jobs import BuildJobPayload, DeployJobPayload
from .queues import JobQueue, QueueConfig, build_queue_config, deploy_queue_config
from .resilience import BreakerRegistry
from .workers import build_worker, deploy_worker

app = typer.Typer(
    name="launchpad",
    help="Build & deploy orchestration workers",
    add_completion=False,
)
worker_app = typer.Typer()
enqueue_app = typer.Typer()
console = Console()

app.add_typer(worker_app, name="worker", help="Run a worker pool")
app.add_typer(enqueue_app, name="enqueue", help="Enqueue a job")


async def _enqueue(config: QueueConfig, payload) -> str:
    redis = Redis.from_url(get_settings().redis_url, decode_responses=True)
    try:
        queue = JobQueue(redis, config)
        await queue.ensure_group()
        return await queue.enqueue(payload)
    finally:
        await redis.aclose()


async def _get_job(config: QueueConfig, job_id: str):
    redis = Redis.from_url(get_settings().redis_url, decode_responses=True)
    try:
        return await JobQueue(redis, config).get_job(job_id)
    finally:
        await redis.aclose()


def _report_enqueued(job_id: str, project_id: str, json_output: bool) -> None:
    if json_output:
        typer.echo(json_lib.dumps({"job_id": job_id, "project_id": project_id, "status": "queued"}, indent=2))
        return
    console.print("[green]✓[/green] Job enqueued")
    console.print(f"Job ID: [cyan]{job_id}[/cyan]")
    console.print(f"Project ID: [cyan]{project_id}[/cyan]")


@worker_app.command("build")
def run_build_worker():
    """Consume build:queue until SIGTERM/SIGINT."""
    build_worker.main()


@worker_app.command("deploy")
def run_deploy_worker():
    """Consume deploy:queue until SIGTERM/SIGINT."""
    deploy_worker.main()


@enqueue_app.command("build")
def enqueue_build(
    project_id: str,
    conversation_id: str,
    message_id: str,
    user_id: str,
    model: str | None = typer.Option(None, help="Model override for code generation"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Enqueue a build (or iteration) for a project message."""
    payload = BuildJobPayload(
        project_id=project_id,
        conversation_id=conversation_id,
        message_id=message_id,
        user_id=user_id,
        model=model,
    )
    try:
        job_id = asyncio.run(_enqueue(build_queue_config(get_settings()), payload))
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e
    _report_enqueued(job_id, project_id, json_output)


@enqueue_app.command("deploy")
def enqueue_deploy(
    project_id: str,
    user_id: str,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Enqueue a deployment for a project."""
    try:
        job_id = asyncio.run(
            _enqueue(deploy_queue_config(get_settings()), DeployJobPayload(project_id=project_id, user_id=user_id))
        )
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e
    _report_enqueued(job_id, project_id, json_output)


@app.command()
def job(
    job_id: str,
    queue: str = typer.Option("build", help="Queue the job was enqueued on: build or deploy"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a job record."""
    settings = get_settings()
    configs = {"build": build_queue_config(settings), "deploy": deploy_queue_config(settings)}
    if queue not in configs:
        console.print(f"[red]Error:[/red] unknown queue '{queue}'")
        raise typer.Exit(code=1)

    record = asyncio.run(_get_job(configs[queue], job_id))
    if record is None:
        console.print(f"[red]Error:[/red] job {job_id} not found")
        raise typer.Exit(code=1)

    if json_output:
        typer.echo(record.model_dump_json(indent=2))
        return

    table = Table(title=f"Job {record.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Type", record.type.value)
    table.add_row("Status", record.status.value)
    table.add_row("Attempts", f"{record.attempts}/{record.max_attempts}")
    table.add_row("Project", record.project_id or "-")
    table.add_row("Last error", record.last_error or "-")
    console.print(table)


@app.command()
def breakers(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """Show circuit breaker configuration and state for this process."""
    registry = BreakerRegistry.from_settings(get_settings())
    for name in ("codegen", "railway-api", "cloudflare-api", "github-api"):
        registry.get(name)
    status = registry.status()

    if json_output:
        typer.echo(json_lib.dumps(status, indent=2))
        return

    table = Table(title="Circuit breakers")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Consecutive failures")
    table.add_column("Window calls")
    for name, snapshot in status.items():
        table.add_row(
            name,
            snapshot["state"],
            str(snapshot["consecutive_failures"]),
            str(snapshot["window_calls"]),
        )
    console.print(table)


if __name__ == "__main__":
    app()
