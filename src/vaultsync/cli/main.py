"""VaultSync CLI — run workers and inspect the analysis queue.

Usage:
    vaultsync worker                               # Run the worker pool
    vaultsync worker -c 10                         # ... with 10 concurrent jobs
    vaultsync enqueue A1 U1 s3://img/a1.jpg        # Queue a job directly
    vaultsync queue-stats                          # Job counts by state
    vaultsync job 3f2c...                          # Show one job

`enqueue` talks to the queue directly and does not touch the asset's
status; use the HTTP API for the normal producer path.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import dataclasses
import json
import sys
from typing import Optional

import click
import redis.asyncio as aioredis

from vaultsync import __version__
from vaultsync.config import settings
from vaultsync.errors import QueueUnavailableError, ValidationError
from vaultsync.logging_setup import configure_logging
from vaultsync.queue.jobs import JobOptions
from vaultsync.queue.redis_queue import JobQueue

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. Click's CliRunner inside an async
    test) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _open_queue() -> JobQueue:
    redis = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return JobQueue(redis, settings.queue_name, JobOptions.from_settings(settings))


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _state_color(state: str) -> str:
    colors = {
        "waiting": "white",
        "active": "yellow",
        "delayed": "cyan",
        "completed": "green",
        "failed": "red",
    }
    return colors.get(state, "white")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="vaultsync")
def main():
    """VaultSync — asset analysis queue and workers."""


@main.command()
@click.option("--concurrency", "-c", type=int, help="Jobs processed in parallel")
def worker(concurrency: Optional[int]):
    """Run the analysis worker pool until interrupted."""
    from vaultsync.worker import run

    configure_logging(settings.log_level, settings.log_json)
    _run(run(settings, concurrency=concurrency))


@main.command()
@click.argument("asset_id")
@click.argument("owner_id")
@click.argument("image_ref")
@click.option("--category", "-k", default="sneaker", show_default=True)
def enqueue(asset_id: str, owner_id: str, image_ref: str, category: str):
    """Queue an analysis job for ASSET_ID owned by OWNER_ID."""
    _run(_enqueue_impl(asset_id, owner_id, image_ref, category))


async def _enqueue_impl(asset_id: str, owner_id: str, image_ref: str, category: str):
    queue = _open_queue()
    try:
        job_id = await queue.enqueue(asset_id, owner_id, image_ref, category)
    except (ValidationError, QueueUnavailableError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    finally:
        await queue.close()
    click.echo(job_id)


@main.command("queue-stats")
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
def queue_stats(as_json: bool):
    """Show job counts by state."""
    _run(_queue_stats_impl(as_json))


async def _queue_stats_impl(as_json: bool):
    queue = _open_queue()
    try:
        counts = await queue.metrics()
    finally:
        await queue.close()

    if as_json:
        click.echo(_pretty_json({"queue": queue.name, **counts}))
        return
    click.secho(f"Queue: {queue.name}", bold=True)
    for state, count in counts.items():
        click.echo(f"  {click.style(state.ljust(10), fg=_state_color(state))} {count}")


@main.command()
@click.argument("job_id")
def job(job_id: str):
    """Show one job's record."""
    _run(_job_impl(job_id))


async def _job_impl(job_id: str):
    queue = _open_queue()
    try:
        record = await queue.get_job(job_id)
    finally:
        await queue.close()

    if record is None:
        click.secho(f"Job {job_id} not found (unknown or expired)", fg="red", err=True)
        sys.exit(1)
    click.echo(_pretty_json(dataclasses.asdict(record)))


if __name__ == "__main__":
    main()
