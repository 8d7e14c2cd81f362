"""
DataLens CLI entry point.

Usage:
    datalens worker [--concurrency N]
    datalens db init
    datalens jobs stats | failed | requeue JOB_ID | cancel JOB_ID
    datalens config show
"""

import asyncio
from uuid import UUID

import click


@click.group()
@click.version_option()
def cli():
    """DataLens - PII discovery and data subject request execution"""
    pass


@cli.command()
@click.option("--concurrency", default=None, type=int, help="Number of concurrent polling loops")
def worker(concurrency: int):
    """Start a worker process for scan and DSR jobs."""
    from datalens.jobs.worker import run_worker

    run_worker(concurrency=concurrency)


@cli.group()
def db():
    """Database management commands."""
    pass


@db.command("init")
def db_init():
    """Create all tables in the configured database."""
    from datalens.server.db import close_db, create_all, init_db

    async def _init() -> None:
        await init_db()
        try:
            await create_all()
        finally:
            await close_db()

    asyncio.run(_init())
    click.echo("Database tables created")


def _run_on_queue(operation):
    """Run ``operation(queue)`` in one committed session and return its result."""
    from datalens.jobs.queue import JobQueue
    from datalens.server.db import close_db, init_db

    async def _run():
        session_factory = await init_db()
        try:
            async with session_factory() as session:
                result = await operation(JobQueue(session))
                await session.commit()
                return result
        finally:
            await close_db()

    return asyncio.run(_run())


def _parse_job_id(job_id: str) -> UUID:
    try:
        return UUID(job_id)
    except ValueError:
        raise click.BadParameter(f"not a job id: {job_id}", param_hint="JOB_ID")


@cli.group()
def jobs():
    """Job queue and dead letter queue commands."""
    pass


@jobs.command("stats")
def jobs_stats():
    """Show pending, running and failed jobs per task type."""
    from datalens.jobs.queue import DSR_TASK, SCAN_TASK

    async def _stats(queue):
        rows = []
        for task_type in (SCAN_TASK, DSR_TASK):
            rows.append((
                task_type,
                await queue.get_pending_count(task_type),
                await queue.get_running_count(task_type),
                await queue.get_failed_count(task_type),
            ))
        return rows

    click.echo(f"{'TYPE':<8}{'PENDING':>9}{'RUNNING':>9}{'FAILED':>9}")
    for task_type, pending, running, failed in _run_on_queue(_stats):
        click.echo(f"{task_type:<8}{pending:>9}{running:>9}{failed:>9}")


@jobs.command("failed")
@click.option("--type", "task_type", type=click.Choice(["scan", "dsr"]), default=None, help="Filter by task type")
@click.option("--limit", default=50, show_default=True, help="Maximum jobs to list")
def jobs_failed(task_type: str | None, limit: int):
    """List permanently failed jobs (dead letter queue)."""
    failed = _run_on_queue(lambda queue: queue.get_failed_jobs(task_type=task_type, limit=limit))
    if not failed:
        click.echo("No failed jobs")
        return
    for job in failed:
        click.echo(f"{job.id}  {job.task_type:<5} retries={job.retry_count}  {job.error or ''}")


@jobs.command("requeue")
@click.argument("job_id")
@click.option("--keep-retries", is_flag=True, help="Keep the retry count instead of resetting it")
def jobs_requeue(job_id: str, keep_retries: bool):
    """Move a failed job back to pending."""
    parsed = _parse_job_id(job_id)
    if not _run_on_queue(lambda queue: queue.requeue_failed(parsed, reset_retries=not keep_retries)):
        raise click.ClickException(f"Job {job_id} not found or not failed")
    click.echo(f"Requeued job: {job_id}")


@jobs.command("cancel")
@click.argument("job_id")
def jobs_cancel(job_id: str):
    """Cancel a pending or running job."""
    parsed = _parse_job_id(job_id)
    if not _run_on_queue(lambda queue: queue.cancel(parsed)):
        raise click.ClickException(f"Job {job_id} not found or already finished")
    click.echo(f"Cancelled job: {job_id}")


@cli.group()
def config():
    """Configuration management."""
    pass


@config.command("show")
def config_show():
    """Display current configuration."""
    from datalens.server.config import get_settings

    settings = get_settings()
    click.echo(settings.model_dump_json(indent=2))


if __name__ == "__main__":
    cli()
